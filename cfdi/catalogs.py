"""
Static SAT lookup tables (Anexo 20) used by the validator and the builders.

Tables are read-only and built once at import time; callers receive the
shared ``CATALOGS`` instance and never mutate it.
"""
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import FrozenSet, Mapping, Tuple

CFDI_VERSION = "4.0"
PAGOS_VERSION = "2.0"

NS_CFDI = "http://www.sat.gob.mx/cfd/4"
NS_XSI = "http://www.w3.org/2001/XMLSchema-instance"
NS_PAGO20 = "http://www.sat.gob.mx/Pagos20"
NS_TFD = "http://www.sat.gob.mx/TimbreFiscalDigital"

SCHEMA_LOCATION_CFDI = "http://www.sat.gob.mx/cfd/4 http://www.sat.gob.mx/sitio_internet/cfd/4/cfdv40.xsd"
SCHEMA_LOCATION_PAGO20 = "http://www.sat.gob.mx/Pagos20 http://www.sat.gob.mx/sitio_internet/cfd/Pagos/Pagos20.xsd"

RFC_PATTERN = re.compile(r"^[A-Z&Ñ]{3,4}[0-9]{6}[A-Z0-9]{3}$")
UUID_PATTERN = re.compile(r"^[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}$")
POSTAL_CODE_PATTERN = re.compile(r"^[0-9]{5}$")

GENERIC_RFC_NATIONAL = "XAXX010101000"
GENERIC_RFC_FOREIGN = "XEXX010101000"
GENERIC_PUBLIC_NAME = "PUBLICO EN GENERAL"

DEFAULT_PRODUCT_KEY = "01010101"
DEFAULT_UNIT_KEY = "H87"
PAYMENT_PRODUCT_KEY = "84111506"
PAYMENT_UNIT_KEY = "ACT"

IVA_CODE = "002"
IVA_RATE = "0.160000"

PAYMENT_FORMS = MappingProxyType({
    "01": "Efectivo",
    "02": "Cheque nominativo",
    "03": "Transferencia electronica de fondos",
    "04": "Tarjeta de credito",
    "05": "Monedero electronico",
    "06": "Dinero electronico",
    "08": "Vales de despensa",
    "12": "Dacion en pago",
    "13": "Pago por subrogacion",
    "14": "Pago por consignacion",
    "15": "Condonacion",
    "17": "Compensacion",
    "28": "Tarjeta de debito",
    "29": "Tarjeta de servicios",
    "30": "Aplicacion de anticipos",
    "31": "Intermediario pagos",
    "99": "Por definir",
})

PAYMENT_METHODS = MappingProxyType({
    "PUE": "Pago en una sola exhibicion",
    "PPD": "Pago en parcialidades o diferido",
})

TAX_REGIMES = MappingProxyType({
    "601": "General de Ley Personas Morales",
    "603": "Personas Morales con Fines no Lucrativos",
    "605": "Sueldos y Salarios e Ingresos Asimilados a Salarios",
    "606": "Arrendamiento",
    "607": "Regimen de Enajenacion o Adquisicion de Bienes",
    "608": "Demas ingresos",
    "610": "Residentes en el Extranjero sin Establecimiento Permanente en Mexico",
    "611": "Ingresos por Dividendos (socios y accionistas)",
    "612": "Personas Fisicas con Actividades Empresariales y Profesionales",
    "614": "Ingresos por intereses",
    "615": "Regimen de los ingresos por obtencion de premios",
    "616": "Sin obligaciones fiscales",
    "620": "Sociedades Cooperativas de Produccion",
    "621": "Incorporacion Fiscal",
    "622": "Actividades Agricolas, Ganaderas, Silvicolas y Pesqueras",
    "623": "Opcional para Grupos de Sociedades",
    "624": "Coordinados",
    "625": "Actividades Empresariales con ingresos a traves de Plataformas Tecnologicas",
    "626": "Regimen Simplificado de Confianza",
    "628": "Hidrocarburos",
})

MORAL_REGIMES = frozenset({"601", "603", "620", "623", "624", "628"})
PHYSICAL_REGIMES = frozenset({"605", "606", "607", "608", "611", "612", "614", "615", "616"})

CFDI_USES = MappingProxyType({
    "G01": "Adquisicion de mercancias",
    "G02": "Devoluciones, descuentos o bonificaciones",
    "G03": "Gastos en general",
    "I01": "Construcciones",
    "I02": "Mobiliario y equipo de oficina",
    "I03": "Equipo de transporte",
    "I04": "Equipo de computo y accesorios",
    "I05": "Dados, troqueles, moldes, matrices y herramental",
    "I06": "Comunicaciones telefonicas",
    "I07": "Comunicaciones satelitales",
    "I08": "Otra maquinaria y equipo",
    "D01": "Honorarios medicos, dentales y gastos hospitalarios",
    "D02": "Gastos medicos por incapacidad o discapacidad",
    "D03": "Gastos funerales",
    "D04": "Donativos",
    "D05": "Intereses reales efectivamente pagados por creditos hipotecarios",
    "D06": "Aportaciones voluntarias al SAR",
    "D07": "Primas por seguros de gastos medicos",
    "D08": "Gastos de transportacion escolar obligatoria",
    "D09": "Depositos en cuentas para el ahorro, primas de pensiones",
    "D10": "Pagos por servicios educativos (colegiaturas)",
    "S01": "Sin efectos fiscales",
    "CP01": "Pagos",
    "CN01": "Nomina",
})

_BASE_USES = ("G01", "G02", "G03", "I01", "I02", "I03", "I04", "I05", "I06", "I07", "I08")
_DEDUCTION_USES = ("D01", "D02", "D03", "D04", "D05", "D06", "D07", "D08", "D09", "D10")


def _uses(*groups: Tuple[str, ...]) -> FrozenSet[str]:
    return frozenset(code for group in groups for code in group) | {"S01", "CP01"}


_WITH_DEDUCTIONS = _uses(_BASE_USES, _DEDUCTION_USES)
_WITHOUT_DEDUCTIONS = _uses(_BASE_USES)

USES_BY_REGIME = MappingProxyType({
    regime: (_WITH_DEDUCTIONS if regime in {"601", "607", "611", "612", "614", "625", "626"} else _WITHOUT_DEDUCTIONS)
    for regime in ("601", "603", "605", "606", "607", "608", "610", "611", "612", "614",
                   "616", "620", "621", "622", "623", "624", "625", "626")
})

CANCELLATION_REASONS = MappingProxyType({
    "01": "Comprobante emitido con errores con relacion",
    "02": "Comprobante emitido con errores sin relacion",
    "03": "No se llevo a cabo la operacion",
    "04": "Operacion nominativa relacionada en una factura global",
})

CURRENCIES = frozenset({"MXN", "USD", "EUR", "XXX"})


@dataclass(frozen=True)
class SatCatalogs:
    payment_forms: Mapping[str, str]
    payment_methods: Mapping[str, str]
    tax_regimes: Mapping[str, str]
    cfdi_uses: Mapping[str, str]
    uses_by_regime: Mapping[str, FrozenSet[str]]
    cancellation_reasons: Mapping[str, str]
    currencies: FrozenSet[str]
    moral_regimes: FrozenSet[str] = MORAL_REGIMES
    physical_regimes: FrozenSet[str] = PHYSICAL_REGIMES

    def uses_for_regime(self, regime: str) -> FrozenSet[str]:
        return self.uses_by_regime.get(regime, frozenset({"G03", "S01", "CP01"}))


CATALOGS = SatCatalogs(
    payment_forms=PAYMENT_FORMS,
    payment_methods=PAYMENT_METHODS,
    tax_regimes=TAX_REGIMES,
    cfdi_uses=CFDI_USES,
    uses_by_regime=USES_BY_REGIME,
    cancellation_reasons=CANCELLATION_REASONS,
    currencies=CURRENCIES,
)


def is_moral_rfc(rfc: str) -> bool:
    """A 12 character RFC belongs to a persona moral; generic RFCs never do."""
    rfc = (rfc or "").strip().upper()
    if rfc in (GENERIC_RFC_NATIONAL, GENERIC_RFC_FOREIGN):
        return False
    return len(rfc) == 12


def is_valid_rfc(rfc: str) -> bool:
    return bool(RFC_PATTERN.match((rfc or "").strip().upper()))


def is_valid_uuid(value: str) -> bool:
    return bool(UUID_PATTERN.match((value or "").strip()))
