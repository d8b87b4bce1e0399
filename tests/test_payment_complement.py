from datetime import datetime
from decimal import Decimal

import pytest

from cfdi.cadena import cadena_original
from cfdi.catalogs import NS_CFDI, NS_PAGO20
from cfdi.models import PaymentComplementData
from cfdi.payment_builder import PaymentComplementBuilder, compute_payment_details, validate_payment_complement

NS = {"cfdi": NS_CFDI, "pago20": NS_PAGO20}
INVOICE_UUID = "5FB2822E-396C-4725-8D1C-B9F7E0C2B3A1"


def test_first_partiality():
    """Test: 400 paid against 1160: IVA (1160 / 1.16) * (400 / 1160) * 0.16"""
    details = compute_payment_details(Decimal("1160.00"), [], Decimal("400.00"))

    assert details.partiality == 1
    assert details.prior_balance == Decimal("1160.00")
    assert details.remaining_balance == Decimal("760.00")
    assert details.tax_base == Decimal("344.827586")
    assert details.tax_amount == Decimal("55.172414")


def test_later_partiality():
    details = compute_payment_details(Decimal("1160.00"), [Decimal("400.00"), Decimal("300.00")],
                                      Decimal("460.00"))

    assert details.partiality == 3
    assert details.prior_balance == Decimal("460.00")
    assert details.remaining_balance == Decimal("0.00")
    assert details.tax_base + details.tax_amount == Decimal("460.000000")


@pytest.fixture
def complement(emitter, receiver):
    return PaymentComplementData(
        payment_id="PAY-1", series="P", folio="1", issued_at=datetime(2025, 2, 1, 12, 5),
        paid_at=datetime(2025, 2, 1, 12, 0), emitter=emitter, receiver=receiver, payment_form="03",
        invoice_uuid=INVOICE_UUID, invoice_series="A", invoice_folio="1002",
        details=compute_payment_details(Decimal("1160.00"), [], Decimal("400.00")),
    )


def test_valid_complement(complement):
    assert validate_payment_complement(complement) == []


def test_complement_checks(complement):
    broken = complement.model_copy(update={
        "invoice_uuid": "not-a-uuid",
        "payment_form": "99",
        "invoice_payment_method": "PUE",
    })

    messages = validate_payment_complement(broken)

    assert messages == [
        "UUID de la factura relacionada invalido: not-a-uuid",
        "Solo las facturas PPD requieren complemento de pago",
        "Forma de pago invalida para un complemento: 99",
    ]


def test_complement_document(complement):
    root = PaymentComplementBuilder().build(complement, "30001000000500003416")

    assert root.get("TipoDeComprobante") == "P"
    assert root.get("Moneda") == "XXX"
    assert root.get("Total") == "0"
    assert root.find("cfdi:Receptor", NS).get("UsoCFDI") == "CP01"

    totales = root.find("cfdi:Complemento/pago20:Pagos/pago20:Totales", NS)
    assert totales.get("MontoTotalPagos") == "400.00"
    assert totales.get("TotalTrasladosImpuestoIVA16") == "55.17"

    pago = root.find("cfdi:Complemento/pago20:Pagos/pago20:Pago", NS)
    assert pago.get("FechaPago") == "2025-02-01T12:00:00"
    assert pago.find("pago20:ImpuestosP/pago20:TrasladosP/pago20:TrasladoP", NS).get("ImporteP") == "55.172414"

    cadena = cadena_original(root)
    assert "|2.0|344.83|55.17|400.00|2025-02-01T12:00:00|03|MXN|1|400.00|" in cadena
    assert f"|{INVOICE_UUID}|A|1002|MXN|1|1|1160.00|400.00|760.00|02|" in cadena
