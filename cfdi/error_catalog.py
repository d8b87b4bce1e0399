"""
Known SAT / Finkok error codes with readable titles and suggested actions.

``classify`` is total: whatever it receives (an engine error, a raw PAC
message, any exception) it returns an ErrorInfo.
"""
import re
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Optional, Tuple, Union

from cfdi.errors import CfdiError, PacRejected, ValidationError
from cfdi.models import ErrorInfo


@dataclass(frozen=True)
class CatalogEntry:
    category: str
    title: str
    description: str
    action: str
    field: Optional[str] = None


CFDI_ERROR_CATALOG = MappingProxyType({
    # XML structure and seal
    "301": CatalogEntry("xml", "XML mal formado",
                        "El documento XML no cumple con la estructura requerida por el SAT",
                        "Contactar soporte tecnico"),
    "302": CatalogEntry("certificate", "Sello invalido",
                        "La firma digital del comprobante no es valida",
                        "Verificar que los CSD esten vigentes y correctamente configurados", "Sello"),
    "303": CatalogEntry("certificate", "Sello no corresponde",
                        "El sello digital no corresponde con los datos del comprobante",
                        "Regenerar el XML y volver a intentar"),
    "305": CatalogEntry("certificate", "Certificado revocado o caducado",
                        "El Certificado de Sello Digital ha sido revocado o ya expiro",
                        "Renovar los CSD en el portal del SAT y actualizarlos en la configuracion", "Certificado"),
    "307": CatalogEntry("already_stamped", "CFDI ya timbrado",
                        "Este comprobante ya fue timbrado anteriormente con el mismo contenido",
                        "Recuperar el UUID existente del timbrado anterior"),

    # CFDI 4.0 validations
    "CFDI40102": CatalogEntry("date", "Fecha fuera de rango",
                              "La fecha del comprobante esta fuera del rango permitido (72 horas)",
                              "Verificar que la fecha del comprobante sea reciente", "Fecha"),
    "CFDI40138": CatalogEntry("receiver", "Regimen fiscal incompatible",
                              "El regimen fiscal del receptor no es compatible con el uso de CFDI seleccionado",
                              "Verificar que el uso de CFDI sea compatible con el regimen fiscal del cliente", "UsoCFDI"),
    "CFDI40161": CatalogEntry("receiver", "RFC del receptor invalido",
                              "El RFC del receptor no esta registrado en la lista del SAT (LRFC)",
                              "Verificar que el RFC del cliente sea correcto y este dado de alta en el SAT", "RFC"),

    # CFDI 3.3 validations still reported by some PACs
    "CFDI33101": CatalogEntry("certificate", "Certificado no vigente",
                              "El certificado del emisor no esta vigente para la fecha del comprobante",
                              "Renovar los CSD del emisor", "NoCertificado"),
    "CFDI33102": CatalogEntry("certificate", "RFC del emisor no corresponde",
                              "El RFC del emisor no corresponde con el certificado",
                              "Verificar que el RFC del emisor coincida con los CSD configurados", "RFC Emisor"),
    "CFDI33103": CatalogEntry("certificate", "Fecha fuera de vigencia del CSD",
                              "La fecha del comprobante no esta dentro de la vigencia del certificado",
                              "Verificar vigencia de los CSD o actualizar la fecha"),
    "CFDI33105": CatalogEntry("catalog", "Codigo postal invalido",
                              "El codigo postal del lugar de expedicion no existe en el catalogo del SAT",
                              "Corregir el codigo postal del emisor en la configuracion", "LugarExpedicion"),
    "CFDI33106": CatalogEntry("catalog", "Regimen fiscal invalido",
                              "El regimen fiscal del emisor no corresponde con su tipo de RFC",
                              "Verificar el regimen fiscal del emisor", "RegimenFiscal"),
    "CFDI33111": CatalogEntry("catalog", "Clave de producto invalida",
                              "La clave de producto/servicio no existe en el catalogo del SAT",
                              "Corregir la clave de producto (ClaveProdServ) en los conceptos", "ClaveProdServ"),
    "CFDI33112": CatalogEntry("catalog", "Clave de unidad invalida",
                              "La clave de unidad no existe en el catalogo del SAT",
                              "Corregir la clave de unidad (ClaveUnidad) en los conceptos", "ClaveUnidad"),

    # PAC account
    "705": CatalogEntry("pac_account", "Usuario no autorizado",
                        "Las credenciales del PAC no son validas o el servicio esta suspendido",
                        "Verificar las credenciales del PAC en la configuracion"),
    "720": CatalogEntry("pac_account", "CSD no registrados en el PAC",
                        "No hay Certificados de Sello Digital activos para este RFC en el PAC",
                        "Cargar los CSD del emisor en el PAC", "CSD"),

    # Payment complement
    "PAGO10101": CatalogEntry("payment", "UUID de documento invalido",
                              "El UUID del documento relacionado no corresponde a un CFDI timbrado",
                              "Verificar que la factura asociada este timbrada correctamente", "IdDocumento"),
    "PAGO10104": CatalogEntry("payment", "Monto excede saldo",
                              "El monto del pago excede el saldo pendiente del documento",
                              "Verificar el saldo pendiente de la factura", "ImpPagado"),
})

GENERIC_TITLE = "Error de timbrado"
GENERIC_ACTION = "Revisar los datos de la factura e intentar nuevamente"

# Engine errors that never reach the PAC
LOCAL_TITLES = MappingProxyType({
    "validation": ("validation", "Datos incompletos para CFDI", "Corregir los datos señalados y volver a intentar"),
    "credential": ("certificate", "Error en el certificado de sello digital",
                   "Revisar el certificado, la llave privada y su contraseña"),
    "signing": ("certificate", "No se pudo firmar el comprobante",
                "Volver a cargar la llave privada del CSD"),
    "pac_unavailable": ("network", "PAC no disponible", "Intentar nuevamente en unos minutos"),
    "state_conflict": ("state", "Operacion no permitida en el estado actual", None),
    "persistence": ("storage", "El CFDI fue timbrado pero no se pudo guardar",
                    "Conciliar manualmente el UUID reportado; no volver a timbrar desde cero"),
    "not_found": ("storage", "Registro no encontrado", None),
})

_BRACKET_CODE = re.compile(r"\[([A-Z0-9]+)\]")
_LEADING_CODE = re.compile(r"^(\d{3})\s*[-:]?\s*")


def parse_error_code(message: str) -> Tuple[Optional[str], Optional[CatalogEntry]]:
    """
    Finds the error code in a raw PAC message.

    Tries a ``[CODE]`` bracket, then a leading three digit code, then a title
    match against the catalog.
    """
    if not message:
        return None, None

    match = _BRACKET_CODE.search(message)
    if match:
        code = match.group(1)
        return code, CFDI_ERROR_CATALOG.get(code)

    match = _LEADING_CODE.match(message)
    if match:
        code = match.group(1)
        return code, CFDI_ERROR_CATALOG.get(code)

    lowered = message.lower()
    for code, entry in CFDI_ERROR_CATALOG.items():
        if entry.title.lower() in lowered:
            return code, entry
    return None, None


def classify(error: Union[CfdiError, Exception, str], now: Optional[datetime] = None) -> ErrorInfo:
    occurred_at = now or datetime.now()

    if isinstance(error, str):
        error = PacRejected(error)
    elif not isinstance(error, CfdiError):
        error = PacRejected(str(error) or error.__class__.__name__)

    detail = error.detail or error.message
    messages = list(error.messages) if isinstance(error, ValidationError) else []

    entry = CFDI_ERROR_CATALOG.get(error.code) if error.code else None
    code = error.code
    if entry is None and error.kind in ("pac_rejected", "credential"):
        parsed_code, entry = parse_error_code(error.message)
        code = code or parsed_code

    if entry is not None:
        return ErrorInfo(
            kind=error.kind, code=code, category=entry.category, title=entry.title, detail=detail,
            action=entry.action, field=entry.field, retriable=error.retriable, messages=messages,
            occurred_at=occurred_at,
        )

    if error.kind in LOCAL_TITLES:
        category, title, action = LOCAL_TITLES[error.kind]
    else:
        category, title, action = "unknown", GENERIC_TITLE, GENERIC_ACTION

    return ErrorInfo(
        kind=error.kind, code=code, category=category, title=title, detail=detail, action=action,
        retriable=error.retriable, messages=messages, occurred_at=occurred_at,
    )
