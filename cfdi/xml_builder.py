from decimal import Decimal
from typing import List, Optional, Tuple

from lxml import etree

from cfdi.catalogs import (
    CATALOGS, CFDI_VERSION, GENERIC_PUBLIC_NAME, GENERIC_RFC_NATIONAL, IVA_CODE, IVA_RATE, NS_CFDI, NS_XSI,
    SCHEMA_LOCATION_CFDI, SatCatalogs,
)
from cfdi.models import InvoiceData, InvoiceTotals, LineItem, ZERO, round2

IVA_FACTOR = Decimal("0.16")


# ========== FORMATTING ==========
def fmt2(value: Decimal) -> str:
    return f"{Decimal(value):.2f}"


def fmt6(value: Decimal) -> str:
    return f"{Decimal(value):.6f}"


def fmt_date(value) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S")


def sat_name(name: str) -> str:
    """Upper case with collapsed whitespace, the way SAT registers names."""
    return " ".join((name or "").split()).upper()


def cfdi_tag(name: str) -> str:
    return "{%s}%s" % (NS_CFDI, name)


# ========== TOTALS ==========
def line_tax(item: LineItem) -> Decimal:
    return round2(item.subtotal * IVA_FACTOR)


def calculate_totals(items: List[LineItem]) -> InvoiceTotals:
    """
    Recomputes document totals from the lines.

    The document tax is the sum of the per line taxes, which is what SAT checks
    the global Traslado against.
    """
    subtotal = sum((item.amount for item in items), ZERO)
    discount = sum((item.discount for item in items), ZERO)
    tax = sum((line_tax(item) for item in items), ZERO)
    tax_base = subtotal - discount

    return InvoiceTotals(
        subtotal=subtotal,
        discount=discount,
        tax_base=tax_base,
        tax=tax,
        total=tax_base + tax,
    )


# ========== BUILDER ==========
class CfdiInvoiceBuilder:
    """Builds an unsigned CFDI 4.0 ingreso document from validated invoice data."""

    def __init__(self, catalogs: SatCatalogs = CATALOGS):
        self.catalogs = catalogs
        self.nsmap = {"cfdi": NS_CFDI, "xsi": NS_XSI}

    def build(self, data: InvoiceData, certificate_number: Optional[str] = None,
              certificate: Optional[str] = None) -> etree._Element:
        """
        Returns the Comprobante element.

        Without a certificate the document is built in "omit signature" mode:
        NoCertificado, Certificado and Sello are left out.
        """
        totals = calculate_totals(data.items)
        root = self._comprobante(data, totals, certificate_number, certificate)

        global_info = self._global_information(data)
        if global_info is not None:
            root.append(global_info)

        self._emisor(root, data)
        self._receptor(root, data)

        conceptos = etree.SubElement(root, cfdi_tag("Conceptos"))
        for item in data.items:
            self._concepto(conceptos, item)

        self._impuestos(root, totals)
        return root

    def build_bytes(self, data: InvoiceData, certificate_number: Optional[str] = None,
                    certificate: Optional[str] = None) -> bytes:
        return self.to_bytes(self.build(data, certificate_number, certificate))

    @staticmethod
    def to_bytes(root: etree._Element) -> bytes:
        return etree.tostring(root, encoding="UTF-8", xml_declaration=True)

    # --------- NODES ---------
    def _comprobante(self, data: InvoiceData, totals: InvoiceTotals, certificate_number: Optional[str],
                     certificate: Optional[str]) -> etree._Element:
        root = etree.Element(cfdi_tag("Comprobante"), nsmap=self.nsmap)
        root.set("{%s}schemaLocation" % NS_XSI, SCHEMA_LOCATION_CFDI)

        attrs: List[Tuple[str, Optional[str]]] = [
            ("Version", CFDI_VERSION),
            ("Serie", data.series or None),
            ("Folio", data.folio or None),
            ("Fecha", fmt_date(data.issued_at)),
            ("FormaPago", data.payment_form),
            ("NoCertificado", certificate_number),
            ("Certificado", certificate),
            ("SubTotal", fmt2(totals.subtotal)),
            ("Descuento", fmt2(totals.discount) if totals.discount > 0 else None),
            ("Moneda", data.currency),
            ("TipoCambio", self._exchange_rate(data.currency, data.exchange_rate)),
            ("Total", fmt2(totals.total)),
            ("TipoDeComprobante", "I"),
            ("Exportacion", "01"),
            ("MetodoPago", data.payment_method),
            ("LugarExpedicion", data.emitter.postal_code),
        ]
        for name, value in attrs:
            if value is not None:
                root.set(name, value)
        return root

    @staticmethod
    def _exchange_rate(currency: str, rate: Optional[Decimal]) -> Optional[str]:
        if currency in ("MXN", "XXX") or rate is None:
            return None
        return f"{Decimal(rate):.4f}"

    def _global_information(self, data: InvoiceData) -> Optional[etree._Element]:
        receiver = data.receiver
        if receiver.rfc != GENERIC_RFC_NATIONAL or sat_name(receiver.name) != GENERIC_PUBLIC_NAME:
            return None
        node = etree.Element(cfdi_tag("InformacionGlobal"))
        node.set("Periodicidad", "04")
        node.set("Meses", f"{data.issued_at.month:02d}")
        node.set("Año", str(data.issued_at.year))
        return node

    def _emisor(self, root: etree._Element, data: InvoiceData) -> None:
        emisor = etree.SubElement(root, cfdi_tag("Emisor"))
        emisor.set("Rfc", data.emitter.rfc)
        emisor.set("Nombre", sat_name(data.emitter.name))
        emisor.set("RegimenFiscal", data.emitter.regime)

    def _receptor(self, root: etree._Element, data: InvoiceData) -> None:
        receptor = etree.SubElement(root, cfdi_tag("Receptor"))
        receptor.set("Rfc", data.receiver.rfc)
        receptor.set("Nombre", sat_name(data.receiver.name))
        receptor.set("DomicilioFiscalReceptor", data.receiver.postal_code)
        receptor.set("RegimenFiscalReceptor", data.receiver.regime)
        receptor.set("UsoCFDI", data.receiver.cfdi_use)

    def _concepto(self, parent: etree._Element, item: LineItem) -> None:
        concepto = etree.SubElement(parent, cfdi_tag("Concepto"))
        concepto.set("ClaveProdServ", item.product_key)
        if item.sku:
            concepto.set("NoIdentificacion", item.sku)
        concepto.set("Cantidad", fmt6(item.quantity))
        concepto.set("ClaveUnidad", item.unit_key)
        if item.unit_name:
            concepto.set("Unidad", item.unit_name)
        concepto.set("Descripcion", item.description)
        concepto.set("ValorUnitario", fmt6(item.unit_price))
        concepto.set("Importe", fmt2(item.amount))
        if item.discount > 0:
            concepto.set("Descuento", fmt2(item.discount))
        concepto.set("ObjetoImp", "02")

        impuestos = etree.SubElement(concepto, cfdi_tag("Impuestos"))
        traslados = etree.SubElement(impuestos, cfdi_tag("Traslados"))
        self._traslado(traslados, item.subtotal, line_tax(item))

    def _impuestos(self, root: etree._Element, totals: InvoiceTotals) -> None:
        impuestos = etree.SubElement(root, cfdi_tag("Impuestos"))
        impuestos.set("TotalImpuestosTrasladados", fmt2(totals.tax))
        traslados = etree.SubElement(impuestos, cfdi_tag("Traslados"))
        self._traslado(traslados, totals.tax_base, totals.tax)

    @staticmethod
    def _traslado(parent: etree._Element, base: Decimal, amount: Decimal) -> None:
        traslado = etree.SubElement(parent, cfdi_tag("Traslado"))
        traslado.set("Base", fmt2(base))
        traslado.set("Impuesto", IVA_CODE)
        traslado.set("TipoFactor", "Tasa")
        traslado.set("TasaOCuota", IVA_RATE)
        traslado.set("Importe", fmt2(amount))
