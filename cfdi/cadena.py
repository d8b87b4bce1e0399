"""
Cadena original (canonical digest string) for CFDI 4.0 documents.

The rule table mirrors SAT's ``cadenaoriginal_4_0`` transformation: each rule
is an ordered list of steps, either ``"@Attribute"`` (emit the attribute value)
or ``(path, rule)`` (visit every node matching ``path`` with ``rule``).
Values are whitespace-normalized and absent values are skipped, so the result
is the same for the unsigned, signed and stamped forms of a document.
"""
from typing import Dict, List, Optional, Union

from lxml import etree

from cfdi.catalogs import NS_CFDI, NS_PAGO20, NS_TFD

NS = {"cfdi": NS_CFDI, "pago20": NS_PAGO20, "tfd": NS_TFD}

_TAX_DETAIL = ["@Base", "@Impuesto", "@TipoFactor", "@TasaOCuota", "@Importe"]

RULES = {
    "Comprobante": [
        "@Version", "@Serie", "@Folio", "@Fecha", "@FormaPago", "@NoCertificado", "@CondicionesDePago",
        "@SubTotal", "@Descuento", "@Moneda", "@TipoCambio", "@Total", "@TipoDeComprobante",
        "@Exportacion", "@MetodoPago", "@LugarExpedicion", "@Confirmacion",
        ("cfdi:InformacionGlobal", "InformacionGlobal"),
        ("cfdi:CfdiRelacionados", "CfdiRelacionados"),
        ("cfdi:Emisor", "Emisor"),
        ("cfdi:Receptor", "Receptor"),
        ("cfdi:Conceptos/cfdi:Concepto", "Concepto"),
        ("cfdi:Impuestos", "Impuestos"),
        ("cfdi:Complemento/pago20:Pagos", "Pagos"),
    ],
    "InformacionGlobal": ["@Periodicidad", "@Meses", "@Año"],
    "CfdiRelacionados": ["@TipoRelacion", ("cfdi:CfdiRelacionado", "CfdiRelacionado")],
    "CfdiRelacionado": ["@UUID"],
    "Emisor": ["@Rfc", "@Nombre", "@RegimenFiscal", "@FacAtrAdquirente"],
    "Receptor": [
        "@Rfc", "@Nombre", "@DomicilioFiscalReceptor", "@ResidenciaFiscal", "@NumRegIdTrib",
        "@RegimenFiscalReceptor", "@UsoCFDI",
    ],
    "Concepto": [
        "@ClaveProdServ", "@NoIdentificacion", "@Cantidad", "@ClaveUnidad", "@Unidad", "@Descripcion",
        "@ValorUnitario", "@Importe", "@Descuento", "@ObjetoImp",
        ("cfdi:Impuestos/cfdi:Traslados/cfdi:Traslado", "TaxDetail"),
        ("cfdi:Impuestos/cfdi:Retenciones/cfdi:Retencion", "TaxDetail"),
    ],
    "TaxDetail": _TAX_DETAIL,
    "Impuestos": [
        ("cfdi:Retenciones/cfdi:Retencion", "Retencion"),
        "@TotalImpuestosRetenidos",
        ("cfdi:Traslados/cfdi:Traslado", "TaxDetail"),
        "@TotalImpuestosTrasladados",
    ],
    "Retencion": ["@Impuesto", "@Importe"],

    # Complemento de pagos 2.0
    "Pagos": ["@Version", ("pago20:Totales", "Totales"), ("pago20:Pago", "Pago")],
    "Totales": [
        "@TotalRetencionesIVA", "@TotalRetencionesISR", "@TotalRetencionesIEPS",
        "@TotalTrasladosBaseIVA16", "@TotalTrasladosImpuestoIVA16",
        "@TotalTrasladosBaseIVA8", "@TotalTrasladosImpuestoIVA8",
        "@TotalTrasladosBaseIVA0", "@TotalTrasladosImpuestoIVA0",
        "@TotalTrasladosBaseIVAExento", "@MontoTotalPagos",
    ],
    "Pago": [
        "@FechaPago", "@FormaDePagoP", "@MonedaP", "@TipoCambioP", "@Monto", "@NumOperacion",
        "@RfcEmisorCtaOrd", "@NomBancoOrdExt", "@CtaOrdenante", "@RfcEmisorCtaBen", "@CtaBeneficiario",
        "@TipoCadPago", "@CertPago", "@CadPago", "@SelloPago",
        ("pago20:DoctoRelacionado", "DoctoRelacionado"),
        ("pago20:ImpuestosP", "ImpuestosP"),
    ],
    "DoctoRelacionado": [
        "@IdDocumento", "@Serie", "@Folio", "@MonedaDR", "@EquivalenciaDR", "@NumParcialidad",
        "@ImpSaldoAnt", "@ImpPagado", "@ImpSaldoInsoluto", "@ObjetoImpDR",
        ("pago20:ImpuestosDR/pago20:RetencionesDR/pago20:RetencionDR", "RetencionDR"),
        ("pago20:ImpuestosDR/pago20:TrasladosDR/pago20:TrasladoDR", "TrasladoDR"),
    ],
    "RetencionDR": ["@BaseDR", "@ImpuestoDR", "@TipoFactorDR", "@TasaOCuotaDR", "@ImporteDR"],
    "TrasladoDR": ["@BaseDR", "@ImpuestoDR", "@TipoFactorDR", "@TasaOCuotaDR", "@ImporteDR"],
    "ImpuestosP": [
        ("pago20:RetencionesP/pago20:RetencionP", "RetencionP"),
        ("pago20:TrasladosP/pago20:TrasladoP", "TrasladoP"),
    ],
    "RetencionP": ["@ImpuestoP", "@ImporteP"],
    "TrasladoP": ["@BaseP", "@ImpuestoP", "@TipoFactorP", "@TasaOCuotaP", "@ImporteP"],
}

TFD_RULE = ["@Version", "@UUID", "@FechaTimbrado", "@RfcProvCertif", "@Leyenda", "@SelloCFD", "@NoCertificadoSAT"]

XmlInput = Union[bytes, str, etree._Element, etree._ElementTree]


def parse_xml(xml: XmlInput) -> etree._Element:
    if isinstance(xml, etree._ElementTree):
        return xml.getroot()
    if isinstance(xml, etree._Element):
        return xml
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    parser = etree.XMLParser(remove_blank_text=True)
    return etree.fromstring(xml, parser)


def _normalize(value: Optional[str]) -> str:
    return " ".join((value or "").split())


def _walk(node: etree._Element, rule: str, parts: List[str]) -> None:
    for step in RULES[rule]:
        if isinstance(step, str):
            value = _normalize(node.get(step[1:]))
            if value:
                parts.append(value)
        else:
            path, child_rule = step
            for child in node.iterfind(path, NS):
                _walk(child, child_rule, parts)


def _frame(parts: List[str]) -> str:
    return "||" + "|".join(parts) + "||"


def cadena_original(xml: XmlInput) -> str:
    """
    Returns the cadena original of a CFDI 4.0 Comprobante.

    Args:
        xml: the document as bytes, str or an lxml element.

    Returns:
        str: ``||v1|v2|...||``
    """
    root = parse_xml(xml)
    if root.tag != "{%s}Comprobante" % NS_CFDI:
        raise ValueError(f"Expected a CFDI 4.0 Comprobante, got {root.tag}")
    parts: List[str] = []
    _walk(root, "Comprobante", parts)
    return _frame(parts)


def tfd_cadena(tfd: etree._Element) -> str:
    parts = [_normalize(tfd.get(step[1:])) for step in TFD_RULE]
    return _frame([part for part in parts if part])


def find_timbre(xml: XmlInput) -> Optional[etree._Element]:
    root = parse_xml(xml)
    return root.find("cfdi:Complemento/tfd:TimbreFiscalDigital", NS)


def read_timbre(xml: XmlInput) -> Dict[str, Optional[str]]:
    """Reads the TimbreFiscalDigital fields from a stamped document (empty dict if not stamped)."""
    tfd = find_timbre(xml)
    if tfd is None:
        return {}
    return {
        "uuid": tfd.get("UUID"),
        "stamped_at": tfd.get("FechaTimbrado"),
        "pac_rfc": tfd.get("RfcProvCertif"),
        "seal": tfd.get("SelloCFD"),
        "pac_seal": tfd.get("SelloSAT"),
        "pac_certificate_number": tfd.get("NoCertificadoSAT"),
    }
