import base64
from datetime import datetime
from typing import List, Optional

import requests
from zeep import Client
from zeep.exceptions import Error as ZeepError
from zeep.exceptions import Fault, TransportError
from zeep.helpers import serialize_object
from zeep.transports import Transport

from cfdi import csd
from cfdi.errors import PacRejected, PacUnavailable
from cfdi.log import get_logger
from cfdi.models import CancelResponse, StampResponse, StatusResponse
from cfdi.pac.base import check_cancel_request

logger = get_logger("cfdi_pac", "pac.log")

FINKOK_URLS = {
    "demo": {
        "stamp": "https://demo-facturacion.finkok.com/servicios/soap/stamp.wsdl",
        "cancel": "https://demo-facturacion.finkok.com/servicios/soap/cancel.wsdl",
        "utilities": "https://demo-facturacion.finkok.com/servicios/soap/utilities.wsdl",
        "registration": "https://demo-facturacion.finkok.com/servicios/soap/registration.wsdl",
    },
    "production": {
        "stamp": "https://facturacion.finkok.com/servicios/soap/stamp.wsdl",
        "cancel": "https://facturacion.finkok.com/servicios/soap/cancel.wsdl",
        "utilities": "https://facturacion.finkok.com/servicios/soap/utilities.wsdl",
        "registration": "https://facturacion.finkok.com/servicios/soap/registration.wsdl",
    },
}

CANCEL_OK = ("201", "202")  # cancelled, previously cancelled
CANCEL_STATUS_TEXT = {
    "203": "No corresponde el RFC del emisor",
    "204": "No existe el certificado",
    "205": "El UUID no existe o requiere aceptacion del receptor",
}


def _parse_date(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).strip()[:19])
    except ValueError:
        logger.warning("Unparseable PAC date: %s", value)
        return None


def _incidents(response) -> List[dict]:
    incidencias = getattr(response, "Incidencias", None)
    items = getattr(incidencias, "Incidencia", None) if incidencias is not None else None
    if not items:
        return []
    if not isinstance(items, list):
        items = [items]
    return [
        {
            "code": str(getattr(item, "CodigoError", "") or ""),
            "message": str(getattr(item, "MensajeIncidencia", "") or ""),
        }
        for item in items
    ]


def _decode_xml(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class FinkokPacClient:
    """
    Finkok SOAP services (stamp, cancel, status, cancellation receipt).

    WSDL clients are created lazily and cached per service. Cancelling sends
    the emitter's CSD in PEM when a credentials provider is configured.
    """

    name = "finkok"

    def __init__(self, username: str, password: str, environment: str = "demo", timeout: int = 30,
                 credentials_provider=None):
        if environment not in FINKOK_URLS:
            raise ValueError(f"Unknown Finkok environment: {environment}")
        self.username = username
        self.password = password
        self.environment = environment
        self.urls = FINKOK_URLS[environment]
        self.timeout = timeout
        self.credentials_provider = credentials_provider
        self._clients = {}

    # --------- TRANSPORT ---------
    def _client(self, service: str) -> Client:
        if service not in self._clients:
            transport = Transport(session=requests.Session(), timeout=self.timeout,
                                  operation_timeout=self.timeout)
            try:
                self._clients[service] = Client(self.urls[service], transport=transport)
            except requests.RequestException as e:
                logger.error("Finkok %s WSDL unreachable: %s", service, e)
                raise PacUnavailable(f"No se pudo conectar con Finkok ({service}): {e}") from e
        return self._clients[service]

    def _call(self, service: str, operation: str, *args, **kwargs):
        client = self._client(service)
        logger.info("Finkok %s.%s | env=%s", service, operation, self.environment)
        try:
            return getattr(client.service, operation)(*args, **kwargs)
        except requests.Timeout as e:
            logger.error("Finkok %s.%s timed out after %ss", service, operation, self.timeout)
            raise PacUnavailable(f"Tiempo de espera agotado con Finkok ({operation})") from e
        except requests.RequestException as e:
            logger.error("Finkok %s.%s connection failed: %s", service, operation, e)
            raise PacUnavailable(f"No se pudo conectar con Finkok ({operation}): {e}") from e
        except TransportError as e:
            logger.error("Finkok %s.%s HTTP %s", service, operation, e.status_code)
            if e.status_code >= 500:
                raise PacUnavailable(f"Finkok respondio HTTP {e.status_code}") from e
            raise PacRejected(f"Finkok respondio HTTP {e.status_code}", code=str(e.status_code)) from e
        except Fault as e:
            logger.error("Finkok %s.%s SOAP fault: %s", service, operation, e.message)
            raise PacRejected(e.message or "SOAP fault", code=e.code) from e
        except ZeepError as e:
            logger.exception("Finkok %s.%s unexpected SOAP error", service, operation)
            raise PacRejected(str(e)) from e

    # --------- STAMP ---------
    def _stamp_response(self, response) -> StampResponse:
        return StampResponse(
            uuid=str(response.UUID),
            stamped_xml=_decode_xml(response.xml),
            pac_seal=getattr(response, "SatSeal", None),
            pac_certificate_number=getattr(response, "NoCertificadoSAT", None),
            stamped_at=_parse_date(getattr(response, "Fecha", None)),
        )

    def stamp(self, signed_xml: bytes) -> StampResponse:
        response = self._call("stamp", "stamp", signed_xml, self.username, self.password)
        incidents = _incidents(response)

        if getattr(response, "xml", None) and getattr(response, "UUID", None):
            logger.info("Finkok stamp OK | UUID=%s | CodEstatus=%s", response.UUID,
                        getattr(response, "CodEstatus", None))
            return self._stamp_response(response)

        first = incidents[0] if incidents else {"code": "", "message": "Respuesta vacia de Finkok"}
        message = f"[{first['code']}] {first['message']}" if first["code"] else first["message"]
        logger.error("Finkok stamp rejected | %s", message)

        recovered = None
        if first["code"] == "307":
            recovered = self._stamped(signed_xml)
        raise PacRejected(message, code=first["code"] or None, incidents=incidents, recovered=recovered)

    def _stamped(self, signed_xml: bytes) -> Optional[StampResponse]:
        """Fetches the earlier stamp of a document Finkok reports as already stamped."""
        try:
            response = self._call("stamp", "stamped", signed_xml, self.username, self.password)
        except (PacRejected, PacUnavailable):
            logger.warning("Finkok stamped lookup failed; the previous stamp was not recovered")
            return None
        if getattr(response, "xml", None) and getattr(response, "UUID", None):
            logger.info("Finkok previous stamp recovered | UUID=%s", response.UUID)
            return self._stamp_response(response)
        return None

    # --------- CANCEL ---------
    def _cancel_credentials(self, emitter_rfc: str):
        if self.credentials_provider is None:
            return None, None
        credentials = self.credentials_provider.get_active_certificate(emitter_rfc, self.environment)
        certificate = csd.load_certificate(credentials.certificate)
        key = csd.load_private_key(credentials.private_key, credentials.passphrase)
        return csd.certificate_pem(certificate), csd.private_key_pem(key)

    def cancel(self, uuid: str, emitter_rfc: str, reason: str,
               substitute_uuid: Optional[str] = None) -> CancelResponse:
        check_cancel_request(reason, substitute_uuid)

        client = self._client("cancel")
        factory = client.type_factory("apps.services.soap.core.views")
        uuid_type = factory.UUID()
        uuid_type.UUID = uuid.upper()
        uuid_type.Motivo = reason
        if reason == "01":
            uuid_type.FolioSustitucion = substitute_uuid.upper()
        docs_list = factory.UUIDArray(uuid_type)

        cer_pem, key_pem = self._cancel_credentials(emitter_rfc)
        response = self._call("cancel", "cancel", docs_list, self.username, self.password, emitter_rfc,
                              cer_pem, key_pem)

        incidents = _incidents(response)
        folios = getattr(response, "Folios", None)
        folio_list = getattr(folios, "Folio", None) if folios is not None else None
        if not folio_list:
            code = getattr(response, "CodEstatus", None)
            if incidents:
                message = f"[{incidents[0]['code']}] {incidents[0]['message']}"
                code = incidents[0]["code"] or code
            else:
                message = str(code) if code else "Finkok no devolvio el estado de la cancelacion"
            logger.error("Finkok cancel rejected | UUID=%s | %s", uuid, message)
            raise PacRejected(message, code=code, incidents=incidents)

        folio = folio_list[0] if isinstance(folio_list, list) else folio_list
        status = str(getattr(folio, "EstatusUUID", "") or "")
        if status not in CANCEL_OK:
            detail = getattr(folio, "EstatusCancelacion", None) or CANCEL_STATUS_TEXT.get(status, status)
            logger.error("Finkok cancel failed | UUID=%s | EstatusUUID=%s", uuid, status)
            raise PacRejected(f"No se pudo cancelar: {detail}", code=status or None)

        logger.info("Finkok cancel OK | UUID=%s | EstatusUUID=%s", uuid, status)
        acknowledgement = getattr(response, "Acuse", None)
        if isinstance(acknowledgement, bytes):
            acknowledgement = acknowledgement.decode("utf-8")
        return CancelResponse(
            acknowledgement=acknowledgement,
            cancelled_at=_parse_date(getattr(response, "Fecha", None)),
            status=status,
        )

    # --------- STATUS ---------
    def query_status(self, uuid: str, emitter_rfc: str, receiver_rfc: str, total: str) -> StatusResponse:
        response = self._call("cancel", "get_sat_status", username=self.username, password=self.password,
                              taxpayer_id=emitter_rfc, rtaxpayer_id=receiver_rfc, uuid=uuid.upper(),
                              total=total)
        error = getattr(response, "error", None)
        sat = getattr(response, "sat", None)
        if error or sat is None:
            raise PacRejected(str(error or "No se obtuvo respuesta del SAT"))

        estado = getattr(sat, "Estado", None)
        sat_state = estado if estado in ("Vigente", "Cancelado") else "No Encontrado"
        cancellable = str(getattr(sat, "EsCancelable", "") or "")
        return StatusResponse(
            sat_state=sat_state,
            cancellable=cancellable.startswith("Cancelable"),
            cancellation_state=getattr(sat, "EstatusCancelacion", None),
            code=getattr(sat, "CodigoEstatus", None),
        )

    # --------- RECEIPT ---------
    def get_receipt(self, uuid: str, emitter_rfc: str) -> CancelResponse:
        """Cancellation acuse (type C) Finkok keeps for a cancelled UUID."""
        response = self._call("cancel", "get_receipt", username=self.username, password=self.password,
                              taxpayer_id=emitter_rfc, uuid=uuid.upper(), type="C")
        receipt = getattr(response, "receipt", None)
        error = getattr(response, "error", None)
        if error or not receipt:
            logger.error("Finkok receipt unavailable | UUID=%s | %s", uuid, error)
            raise PacRejected(str(error or "Finkok no devolvio el acuse de cancelacion"))

        if isinstance(receipt, bytes):
            receipt = receipt.decode("utf-8")
        logger.info("Finkok receipt OK | UUID=%s", uuid)
        return CancelResponse(
            acknowledgement=receipt,
            cancelled_at=_parse_date(getattr(response, "date", None)),
        )


class FinkokRegistrationClient:
    """Reseller operations used to register an emitter's CSD with Finkok."""

    def __init__(self, reseller_username: str, reseller_password: str, environment: str = "demo",
                 timeout: int = 30):
        self._pac = FinkokPacClient(reseller_username, reseller_password, environment, timeout)

    def upload_csd(self, taxpayer_id: str, cer: bytes, key: bytes, passphrase: str) -> dict:
        response = self._pac._call(
            "registration", "edit",
            reseller_username=self._pac.username, reseller_password=self._pac.password,
            taxpayer_id=taxpayer_id.upper(), status="A",
            cer=base64.b64encode(cer).decode("ascii"), key=base64.b64encode(key).decode("ascii"),
            passphrase=passphrase,
        )
        success = bool(getattr(response, "success", False))
        message = getattr(response, "message", "") or ""
        if not success:
            logger.error("Finkok CSD upload rejected | RFC=%s | %s", taxpayer_id, message)
            raise PacRejected(message or "Finkok rechazo los CSD")
        logger.info("Finkok CSD uploaded | RFC=%s", taxpayer_id)
        return {"success": True, "message": message}

    def get_client(self, taxpayer_id: str) -> dict:
        response = self._pac._call(
            "registration", "get",
            reseller_username=self._pac.username, reseller_password=self._pac.password,
            taxpayer_id=taxpayer_id.upper(),
        )
        return serialize_object(response, dict) or {}
