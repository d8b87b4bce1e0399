"""
Test provider. No real PAC is called.

Stamps by appending a TimbreFiscalDigital with a random UUID to the signed
XML it receives. Useful for development and for exercising the lifecycle
without network access.
"""
import base64
import hashlib
import uuid
from datetime import datetime
from typing import Dict, Optional

from lxml import etree

from cfdi.cadena import parse_xml, tfd_cadena
from cfdi.catalogs import NS_CFDI, NS_TFD, NS_XSI
from cfdi.errors import PacRejected
from cfdi.log import get_logger
from cfdi.models import CancelResponse, StampResponse, StatusResponse
from cfdi.pac.base import check_cancel_request

logger = get_logger("cfdi_pac", "pac.log")

DUMMY_PAC_RFC = "AAA010101AAA"
DUMMY_PAC_CERTIFICATE = "00001000000000000000"
TFD_SCHEMA_LOCATION = ("http://www.sat.gob.mx/TimbreFiscalDigital "
                       "http://www.sat.gob.mx/sitio_internet/cfd/TimbreFiscalDigital/TimbreFiscalDigitalv11.xsd")


class DummyPacClient:
    name = "dummy"

    def __init__(self):
        self._stamped: Dict[str, StampResponse] = {}  # seal -> response
        self._cancelled: Dict[str, CancelResponse] = {}

    def stamp(self, signed_xml: bytes) -> StampResponse:
        root = parse_xml(signed_xml)
        seal = root.get("Sello")
        if not seal:
            raise PacRejected("[302] El comprobante no esta sellado", code="302")
        if seal in self._stamped:
            raise PacRejected("[307] El CFDI contiene un timbre previo", code="307",
                              recovered=self._stamped[seal])

        stamped_at = datetime.now().replace(microsecond=0)
        tfd = etree.Element("{%s}TimbreFiscalDigital" % NS_TFD, nsmap={"tfd": NS_TFD, "xsi": NS_XSI})
        tfd.set("{%s}schemaLocation" % NS_XSI, TFD_SCHEMA_LOCATION)
        tfd.set("Version", "1.1")
        tfd.set("UUID", str(uuid.uuid4()).upper())
        tfd.set("FechaTimbrado", stamped_at.strftime("%Y-%m-%dT%H:%M:%S"))
        tfd.set("RfcProvCertif", DUMMY_PAC_RFC)
        tfd.set("SelloCFD", seal)
        tfd.set("NoCertificadoSAT", DUMMY_PAC_CERTIFICATE)
        digest = hashlib.sha256(tfd_cadena(tfd).encode("utf-8")).digest()
        tfd.set("SelloSAT", base64.b64encode(digest).decode("ascii"))

        complemento = root.find("{%s}Complemento" % NS_CFDI)
        if complemento is None:
            complemento = etree.SubElement(root, "{%s}Complemento" % NS_CFDI)
        complemento.append(tfd)

        response = StampResponse(
            uuid=tfd.get("UUID"),
            stamped_xml=etree.tostring(root, encoding="UTF-8", xml_declaration=True).decode("utf-8"),
            pac_seal=tfd.get("SelloSAT"),
            pac_certificate_number=DUMMY_PAC_CERTIFICATE,
            stamped_at=stamped_at,
        )
        self._stamped[seal] = response
        logger.info("Dummy stamp | UUID=%s", response.uuid)
        return response

    def cancel(self, uuid: str, emitter_rfc: str, reason: str,
               substitute_uuid: Optional[str] = None) -> CancelResponse:
        check_cancel_request(reason, substitute_uuid)
        key = uuid.upper()
        status = "202" if key in self._cancelled else "201"
        response = CancelResponse(
            acknowledgement=f"<Acuse RfcEmisor=\"{emitter_rfc}\" UUID=\"{key}\" Motivo=\"{reason}\"/>",
            cancelled_at=datetime.now().replace(microsecond=0),
            status=status,
        )
        self._cancelled.setdefault(key, response)
        logger.info("Dummy cancel | UUID=%s | motivo=%s | EstatusUUID=%s", uuid, reason, status)
        return response

    def query_status(self, uuid: str, emitter_rfc: str, receiver_rfc: str, total: str) -> StatusResponse:
        key = uuid.upper()
        if key in self._cancelled:
            return StatusResponse(sat_state="Cancelado", cancellable=False, cancellation_state="Cancelado sin aceptacion")
        if any(response.uuid == key for response in self._stamped.values()):
            return StatusResponse(sat_state="Vigente", cancellable=True, code="S - Comprobante obtenido satisfactoriamente.")
        return StatusResponse(sat_state="No Encontrado", cancellable=False)

    def get_receipt(self, uuid: str, emitter_rfc: str) -> CancelResponse:
        response = self._cancelled.get(uuid.upper())
        if response is None:
            raise PacRejected(f"No existe acuse de cancelacion para {uuid}", code="205")
        return response
