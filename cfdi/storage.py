import json
import os
import tempfile
import threading
from typing import Dict, List, Protocol

from cfdi.errors import NotFound
from cfdi.models import (
    CancellationRecord, ErrorInfo, FiscalParty, FiscalState, InvoiceRecord, LineItem, PaymentRecord, StampingResult,
)


class FiscalStorage(Protocol):
    """Read/write contract the lifecycle needs from the surrounding application."""

    def get_invoice(self, invoice_id: str) -> InvoiceRecord: ...

    def get_line_items(self, invoice_id: str) -> List[LineItem]: ...

    def get_party(self, party_id: str) -> FiscalParty: ...

    def persist_stamping_result(self, invoice_id: str, result: StampingResult, unsigned_xml: str) -> None: ...

    def persist_cancellation(self, invoice_id: str, record: CancellationRecord) -> None: ...

    def persist_error(self, invoice_id: str, error: ErrorInfo) -> None: ...

    def get_payment(self, payment_id: str) -> PaymentRecord: ...

    def get_payments(self, invoice_id: str) -> List[PaymentRecord]: ...

    def persist_payment_complement(self, payment_id: str, result: StampingResult) -> None: ...

    def persist_payment_error(self, payment_id: str, error: ErrorInfo) -> None: ...


class InMemoryStorage:
    """
    Dict backed storage. Payments are kept in registration order, which is
    the order partialities are numbered in.

    Writes and the snapshot taken by ``_changed`` hold one re-entrant lock,
    so a single instance can be shared by worker threads.
    """

    def __init__(self):
        self.parties: Dict[str, FiscalParty] = {}
        self.invoices: Dict[str, InvoiceRecord] = {}
        self.items: Dict[str, List[LineItem]] = {}
        self.payments: Dict[str, PaymentRecord] = {}
        self._lock = threading.RLock()

    # --------- LOADING ---------
    def add_party(self, party_id: str, party: FiscalParty) -> None:
        with self._lock:
            self.parties[party_id] = party
            self._changed()

    def add_invoice(self, record: InvoiceRecord, items: List[LineItem]) -> None:
        with self._lock:
            self.invoices[record.invoice_id] = record
            self.items[record.invoice_id] = list(items)
            self._changed()

    def add_payment(self, payment: PaymentRecord) -> None:
        with self._lock:
            self.payments[payment.payment_id] = payment
            self._changed()

    def _changed(self) -> None:
        pass

    # --------- READS ---------
    def get_invoice(self, invoice_id: str) -> InvoiceRecord:
        try:
            return self.invoices[invoice_id]
        except KeyError:
            raise NotFound(f"Factura no encontrada: {invoice_id}") from None

    def get_line_items(self, invoice_id: str) -> List[LineItem]:
        return list(self.items.get(invoice_id, []))

    def get_party(self, party_id: str) -> FiscalParty:
        try:
            return self.parties[party_id]
        except KeyError:
            raise NotFound(f"Contribuyente no encontrado: {party_id}") from None

    def get_payment(self, payment_id: str) -> PaymentRecord:
        try:
            return self.payments[payment_id]
        except KeyError:
            raise NotFound(f"Pago no encontrado: {payment_id}") from None

    def get_payments(self, invoice_id: str) -> List[PaymentRecord]:
        with self._lock:
            return [payment for payment in self.payments.values() if payment.invoice_id == invoice_id]

    # --------- WRITES ---------
    def _update_invoice(self, invoice_id: str, update: dict) -> None:
        with self._lock:
            record = self.get_invoice(invoice_id)
            self.invoices[invoice_id] = record.model_copy(update=update)
            self._changed()

    def _update_payment(self, payment_id: str, update: dict) -> None:
        with self._lock:
            payment = self.get_payment(payment_id)
            self.payments[payment_id] = payment.model_copy(update=update)
            self._changed()

    def persist_stamping_result(self, invoice_id: str, result: StampingResult, unsigned_xml: str) -> None:
        self._update_invoice(invoice_id, {
            "state": FiscalState.STAMPED,
            "stamping": result,
            "unsigned_xml": unsigned_xml,
            "last_error": None,
        })

    def persist_cancellation(self, invoice_id: str, record: CancellationRecord) -> None:
        self._update_invoice(invoice_id, {
            "state": FiscalState.CANCELLED,
            "cancellation": record,
        })

    def persist_error(self, invoice_id: str, error: ErrorInfo) -> None:
        self._update_invoice(invoice_id, {
            "state": FiscalState.ERROR,
            "last_error": error,
        })

    def persist_payment_complement(self, payment_id: str, result: StampingResult) -> None:
        self._update_payment(payment_id, {"complement": result, "last_error": None})

    def persist_payment_error(self, payment_id: str, error: ErrorInfo) -> None:
        self._update_payment(payment_id, {"last_error": error})


class JsonFileStorage(InMemoryStorage):
    """InMemoryStorage persisted to a single JSON file after every change (CLI / development use)."""

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        if os.path.exists(path):
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as inf:
            data = json.load(inf)
        self.parties = {k: FiscalParty.model_validate(v) for k, v in data.get("parties", {}).items()}
        self.invoices = {k: InvoiceRecord.model_validate(v) for k, v in data.get("invoices", {}).items()}
        self.items = {
            k: [LineItem.model_validate(item) for item in v] for k, v in data.get("items", {}).items()
        }
        self.payments = {k: PaymentRecord.model_validate(v) for k, v in data.get("payments", {}).items()}

    def _changed(self) -> None:
        with self._lock:
            data = {
                "parties": {k: v.model_dump(mode="json") for k, v in self.parties.items()},
                "invoices": {k: v.model_dump(mode="json") for k, v in self.invoices.items()},
                "items": {k: [item.model_dump(mode="json") for item in v] for k, v in self.items.items()},
                "payments": {k: v.model_dump(mode="json") for k, v in self.payments.items()},
            }
            directory = os.path.dirname(os.path.abspath(self.path))
            with tempfile.NamedTemporaryFile("w", encoding="utf-8", dir=directory, suffix=".tmp",
                                             delete=False) as outf:
                outf.write(json.dumps(data, indent=4, ensure_ascii=False))
            try:
                os.replace(outf.name, self.path)
            except OSError:
                os.unlink(outf.name)
                raise


def load_fixture(storage: InMemoryStorage, path: str) -> None:
    """
    Loads parties, invoices (with their ``items``) and payments from a JSON
    file into a storage.
    """
    with open(path, "r", encoding="utf-8") as inf:
        data = json.load(inf)
    for party_id, party in data.get("parties", {}).items():
        storage.add_party(party_id, FiscalParty.model_validate(party))
    for invoice in data.get("invoices", []):
        items = [LineItem.model_validate(item) for item in invoice.pop("items", [])]
        storage.add_invoice(InvoiceRecord.model_validate(invoice), items)
    for payment in data.get("payments", []):
        storage.add_payment(PaymentRecord.model_validate(payment))
