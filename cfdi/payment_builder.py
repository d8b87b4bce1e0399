from decimal import Decimal
from typing import Iterable, List, Optional

from lxml import etree

from cfdi.catalogs import (
    CATALOGS, CFDI_VERSION, IVA_CODE, IVA_RATE, NS_CFDI, NS_PAGO20, NS_XSI, PAGOS_VERSION, PAYMENT_PRODUCT_KEY,
    PAYMENT_UNIT_KEY, SCHEMA_LOCATION_CFDI, SCHEMA_LOCATION_PAGO20, SatCatalogs, is_valid_uuid,
)
from cfdi.models import PaymentComplementData, PaymentDetails, ZERO, round2
from cfdi.xml_builder import cfdi_tag, fmt2, fmt6, fmt_date, sat_name

IVA_DIVISOR = Decimal("1.16")
IVA_FACTOR = Decimal("0.16")


def pago_tag(name: str) -> str:
    return "{%s}%s" % (NS_PAGO20, name)


def compute_payment_details(invoice_total: Decimal, prior_amounts: Iterable[Decimal],
                            amount: Decimal) -> PaymentDetails:
    """
    Balances and proportional IVA of one payment against a PPD invoice.

    The tax is taken from the invoice's rate applied to this payment:
    ``(total / 1.16) * (amount / total) * 0.16``.
    """
    prior_amounts = list(prior_amounts)
    prior_balance = Decimal(invoice_total) - sum(prior_amounts, ZERO)
    remaining = prior_balance - Decimal(amount)

    if invoice_total:
        tax_base = (Decimal(invoice_total) / IVA_DIVISOR) * (Decimal(amount) / Decimal(invoice_total))
    else:
        tax_base = ZERO
    tax_amount = tax_base * IVA_FACTOR

    return PaymentDetails(
        partiality=len(prior_amounts) + 1,
        prior_balance=round2(prior_balance),
        amount=round2(Decimal(amount)),
        remaining_balance=round2(remaining),
        tax_base=tax_base.quantize(Decimal("0.000001")),
        tax_amount=tax_amount.quantize(Decimal("0.000001")),
    )


def validate_payment_complement(data: PaymentComplementData, catalogs: SatCatalogs = CATALOGS) -> List[str]:
    messages: List[str] = []
    details = data.details

    if not is_valid_uuid(data.invoice_uuid):
        messages.append(f"UUID de la factura relacionada invalido: {data.invoice_uuid}")
    if data.invoice_payment_method != "PPD":
        messages.append("Solo las facturas PPD requieren complemento de pago")
    if details.amount <= 0:
        messages.append("El monto del pago debe ser mayor a cero")
    if details.amount > details.prior_balance:
        messages.append(
            f"El monto del pago ({details.amount:.2f}) excede el saldo pendiente ({details.prior_balance:.2f})"
        )
    if details.remaining_balance < 0:
        messages.append("El saldo insoluto no puede ser negativo")
    if data.payment_form not in catalogs.payment_forms or data.payment_form == "99":
        messages.append(f"Forma de pago invalida para un complemento: {data.payment_form}")
    if data.currency != "MXN" and (data.exchange_rate is None or data.exchange_rate <= 0):
        messages.append(f"Falta el tipo de cambio para la moneda {data.currency}")
    if not data.emitter.postal_code:
        messages.append("El codigo postal del emisor (LugarExpedicion) es requerido")
    if not data.receiver.postal_code or not data.receiver.regime:
        messages.append("Faltan el codigo postal o el regimen fiscal del receptor")
    return messages


class PaymentComplementBuilder:
    """Builds a CFDI 4.0 type P document carrying a Pagos 2.0 complement."""

    def __init__(self, catalogs: SatCatalogs = CATALOGS):
        self.catalogs = catalogs
        self.nsmap = {"cfdi": NS_CFDI, "xsi": NS_XSI, "pago20": NS_PAGO20}

    def build(self, data: PaymentComplementData, certificate_number: Optional[str] = None,
              certificate: Optional[str] = None) -> etree._Element:
        root = etree.Element(cfdi_tag("Comprobante"), nsmap=self.nsmap)
        root.set("{%s}schemaLocation" % NS_XSI, f"{SCHEMA_LOCATION_CFDI} {SCHEMA_LOCATION_PAGO20}")

        root.set("Version", CFDI_VERSION)
        if data.series:
            root.set("Serie", data.series)
        if data.folio:
            root.set("Folio", data.folio)
        root.set("Fecha", fmt_date(data.issued_at))
        if certificate_number:
            root.set("NoCertificado", certificate_number)
        if certificate:
            root.set("Certificado", certificate)
        root.set("SubTotal", "0")
        root.set("Moneda", "XXX")
        root.set("Total", "0")
        root.set("TipoDeComprobante", "P")
        root.set("Exportacion", "01")
        root.set("LugarExpedicion", data.emitter.postal_code)

        emisor = etree.SubElement(root, cfdi_tag("Emisor"))
        emisor.set("Rfc", data.emitter.rfc)
        emisor.set("Nombre", sat_name(data.emitter.name))
        emisor.set("RegimenFiscal", data.emitter.regime)

        receptor = etree.SubElement(root, cfdi_tag("Receptor"))
        receptor.set("Rfc", data.receiver.rfc)
        receptor.set("Nombre", sat_name(data.receiver.name))
        receptor.set("DomicilioFiscalReceptor", data.receiver.postal_code)
        receptor.set("RegimenFiscalReceptor", data.receiver.regime)
        receptor.set("UsoCFDI", "CP01")

        conceptos = etree.SubElement(root, cfdi_tag("Conceptos"))
        concepto = etree.SubElement(conceptos, cfdi_tag("Concepto"))
        concepto.set("ClaveProdServ", PAYMENT_PRODUCT_KEY)
        concepto.set("Cantidad", "1")
        concepto.set("ClaveUnidad", PAYMENT_UNIT_KEY)
        concepto.set("Descripcion", "Pago")
        concepto.set("ValorUnitario", "0")
        concepto.set("Importe", "0")
        concepto.set("ObjetoImp", "01")

        complemento = etree.SubElement(root, cfdi_tag("Complemento"))
        complemento.append(self._pagos(data))
        return root

    # --------- PAGOS 2.0 ---------
    def _pagos(self, data: PaymentComplementData) -> etree._Element:
        details = data.details
        rate = Decimal(data.exchange_rate) if data.currency != "MXN" and data.exchange_rate else Decimal("1")

        pagos = etree.Element(pago_tag("Pagos"))
        pagos.set("Version", PAGOS_VERSION)

        totales = etree.SubElement(pagos, pago_tag("Totales"))
        totales.set("TotalTrasladosBaseIVA16", fmt2(details.tax_base * rate))
        totales.set("TotalTrasladosImpuestoIVA16", fmt2(details.tax_amount * rate))
        totales.set("MontoTotalPagos", fmt2(details.amount * rate))

        pago = etree.SubElement(pagos, pago_tag("Pago"))
        pago.set("FechaPago", fmt_date(data.paid_at))
        pago.set("FormaDePagoP", data.payment_form)
        pago.set("MonedaP", data.currency)
        pago.set("TipoCambioP", "1" if data.currency == "MXN" else f"{rate:.6f}")
        pago.set("Monto", fmt2(details.amount))

        docto = etree.SubElement(pago, pago_tag("DoctoRelacionado"))
        docto.set("IdDocumento", data.invoice_uuid.upper())
        if data.invoice_series:
            docto.set("Serie", data.invoice_series)
        if data.invoice_folio:
            docto.set("Folio", data.invoice_folio)
        docto.set("MonedaDR", data.invoice_currency)
        docto.set("EquivalenciaDR", "1")
        docto.set("NumParcialidad", str(details.partiality))
        docto.set("ImpSaldoAnt", fmt2(details.prior_balance))
        docto.set("ImpPagado", fmt2(details.amount))
        docto.set("ImpSaldoInsoluto", fmt2(details.remaining_balance))
        docto.set("ObjetoImpDR", "02")

        impuestos_dr = etree.SubElement(docto, pago_tag("ImpuestosDR"))
        traslados_dr = etree.SubElement(impuestos_dr, pago_tag("TrasladosDR"))
        traslado_dr = etree.SubElement(traslados_dr, pago_tag("TrasladoDR"))
        traslado_dr.set("BaseDR", fmt6(details.tax_base))
        traslado_dr.set("ImpuestoDR", IVA_CODE)
        traslado_dr.set("TipoFactorDR", "Tasa")
        traslado_dr.set("TasaOCuotaDR", IVA_RATE)
        traslado_dr.set("ImporteDR", fmt6(details.tax_amount))

        impuestos_p = etree.SubElement(pago, pago_tag("ImpuestosP"))
        traslados_p = etree.SubElement(impuestos_p, pago_tag("TrasladosP"))
        traslado_p = etree.SubElement(traslados_p, pago_tag("TrasladoP"))
        traslado_p.set("BaseP", fmt6(details.tax_base))
        traslado_p.set("ImpuestoP", IVA_CODE)
        traslado_p.set("TipoFactorP", "Tasa")
        traslado_p.set("TasaOCuotaP", IVA_RATE)
        traslado_p.set("ImporteP", fmt6(details.tax_amount))
        return pagos
