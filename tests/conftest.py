"""
Shared fixtures: a test CSD generated at session start, sample parties and
invoices, and a scripted PAC that counts every call it receives.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from cfdi.cadena import parse_xml
from cfdi.catalogs import NS_CFDI
from cfdi.credentials import CsdCredentials
from cfdi.models import FiscalParty, InvoiceRecord, LineItem, PaymentRecord
from cfdi.orchestrator import CfdiLifecycle
from cfdi.pac.dummy import DummyPacClient
from cfdi.storage import InMemoryStorage

CSD_NUMBER = "30001000000500003416"
CSD_RFC = "EKU9003173C9"
CSD_PASSPHRASE = "12345678a"
ISSUED_AT = datetime(2025, 1, 15, 10, 30, 0)


def make_csd(rfc: str = CSD_RFC, number: str = CSD_NUMBER, not_before=None, not_after=None):
    """Self-signed certificate shaped like a SAT CSD, plus its encrypted PKCS#8 DER key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, "ESCUELA KEMPER URGATE SA DE CV"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ESCUELA KEMPER URGATE SA DE CV"),
        x509.NameAttribute(NameOID.X500_UNIQUE_IDENTIFIER, f"{rfc} / VADA800927DJ3"),
    ])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(int.from_bytes(number.encode("ascii"), "big"))
        .not_valid_before(not_before or datetime(2020, 1, 1, tzinfo=timezone.utc))
        .not_valid_after(not_after or datetime(2035, 1, 1, tzinfo=timezone.utc))
        .sign(key, hashes.SHA256())
    )
    cer = certificate.public_bytes(serialization.Encoding.DER)
    key_der = key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(CSD_PASSPHRASE.encode("ascii")),
    )
    return cer, key_der


@pytest.fixture(scope="session")
def csd_pair():
    return make_csd()


@pytest.fixture(scope="session")
def credentials(csd_pair):
    cer, key = csd_pair
    return CsdCredentials(certificate=cer, private_key=key, passphrase=CSD_PASSPHRASE)


class StaticCredentials:
    def __init__(self, credentials):
        self.credentials = credentials
        self.calls = []

    def get_active_certificate(self, emitter_rfc, environment):
        self.calls.append((emitter_rfc, environment))
        return self.credentials


class ScriptedPac:
    """
    DummyPacClient with a queue of scripted failures. Each queued exception is
    raised by the next call of that operation; when the queue is empty the
    dummy answers.
    """

    name = "scripted"

    def __init__(self):
        self.dummy = DummyPacClient()
        self.failures = {"stamp": [], "cancel": [], "query_status": [], "get_receipt": []}
        self.calls = {"stamp": 0, "cancel": 0, "query_status": 0, "get_receipt": 0}
        self.rejected_receivers = {}
        self.status_queries = []

    def fail_next(self, operation, error):
        self.failures[operation].append(error)

    def reject_receiver(self, rfc, error):
        """Every stamp whose Receptor carries this RFC is rejected with error."""
        self.rejected_receivers[rfc] = error

    def _next(self, operation):
        self.calls[operation] += 1
        if self.failures[operation]:
            raise self.failures[operation].pop(0)

    def stamp(self, signed_xml):
        self._next("stamp")
        receiver = parse_xml(signed_xml).find("{%s}Receptor" % NS_CFDI)
        if receiver is not None and receiver.get("Rfc") in self.rejected_receivers:
            raise self.rejected_receivers[receiver.get("Rfc")]
        return self.dummy.stamp(signed_xml)

    def cancel(self, uuid, emitter_rfc, reason, substitute_uuid=None):
        self._next("cancel")
        return self.dummy.cancel(uuid, emitter_rfc, reason, substitute_uuid)

    def query_status(self, uuid, emitter_rfc, receiver_rfc, total):
        self._next("query_status")
        self.status_queries.append((uuid, emitter_rfc, receiver_rfc, total))
        return self.dummy.query_status(uuid, emitter_rfc, receiver_rfc, total)

    def get_receipt(self, uuid, emitter_rfc):
        self._next("get_receipt")
        return self.dummy.get_receipt(uuid, emitter_rfc)


@pytest.fixture
def emitter():
    return FiscalParty(rfc=CSD_RFC, name="Escuela Kemper Urgate SA de CV", regime="601", postal_code="42501")


@pytest.fixture
def receiver():
    return FiscalParty(rfc="URE180429TM6", name="Universidad Robotica Española", regime="601",
                       postal_code="86991", cfdi_use="G03")


@pytest.fixture
def line_items():
    return [LineItem(description="Servicio de consultoria", quantity=Decimal("1"), unit_price=Decimal("1000.00"),
                     product_key="80101500", unit_key="E48", unit_name="Servicio")]


def make_invoice(invoice_id="INV-1", folio="1001", payment_method="PUE", payment_form="03", **kwargs):
    values = dict(
        invoice_id=invoice_id, series="A", folio=folio, issued_at=ISSUED_AT,
        emitter_id="emitter", receiver_id="receiver",
        payment_form=payment_form, payment_method=payment_method,
        subtotal=Decimal("1000.00"), tax=Decimal("160.00"), total=Decimal("1160.00"),
    )
    values.update(kwargs)
    return InvoiceRecord(**values)


def make_payment(payment_id, amount, invoice_id="INV-PPD", **kwargs):
    values = dict(
        payment_id=payment_id, invoice_id=invoice_id, paid_at=datetime(2025, 2, 1, 12, 0, 0),
        issued_at=datetime(2025, 2, 1, 12, 5, 0), amount=Decimal(amount), payment_form="03",
        folio=payment_id,
    )
    values.update(kwargs)
    return PaymentRecord(**values)


@pytest.fixture
def storage(emitter, receiver, line_items):
    storage = InMemoryStorage()
    storage.add_party("emitter", emitter)
    storage.add_party("receiver", receiver)
    storage.add_invoice(make_invoice(), line_items)
    storage.add_invoice(make_invoice("INV-PPD", "1002", payment_method="PPD", payment_form="99"), line_items)
    return storage


@pytest.fixture
def pac():
    return ScriptedPac()


@pytest.fixture
def csd_provider(credentials):
    return StaticCredentials(credentials)


@pytest.fixture
def lifecycle(storage, csd_provider, pac):
    return CfdiLifecycle(storage, csd_provider, pac, environment="demo")
