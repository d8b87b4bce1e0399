"""
Fiscal lifecycle of invoices and payment complements.

Every operation is one synchronous chain:
storage -> validator -> builder -> cadena -> signer -> PAC -> storage.
State guards run before anything touches the signer or the PAC, so a
stamped invoice can never be stamped twice and a cancelled one is final.
"""
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from lxml import etree

from cfdi.cadena import cadena_original, parse_xml, read_timbre
from cfdi.catalogs import CATALOGS, SatCatalogs
from cfdi.error_catalog import classify
from cfdi.errors import CfdiError, PacRejected, PersistenceError, StateConflict, ValidationError
from cfdi.log import get_logger
from cfdi.models import (
    CancellationRecord, FiscalParty, FiscalState, InvoiceData, InvoiceRecord, LineItem, OperationResult,
    PaymentComplementData, PaymentRecord, PreviewResult, StampingResult, StampResponse, StatusResult,
)
from cfdi.pac.base import check_cancel_request
from cfdi.payment_builder import PaymentComplementBuilder, compute_payment_details, validate_payment_complement
from cfdi.signer import CsdSigner
from cfdi.validator import InvoiceValidator, assemble_invoice
from cfdi.xml_builder import CfdiInvoiceBuilder, calculate_totals

logger = get_logger("cfdi_lifecycle", "lifecycle.log")


class CfdiLifecycle:
    def __init__(self, storage, credentials, pac, environment: str = "demo", catalogs: SatCatalogs = CATALOGS,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.credentials = credentials
        self.pac = pac
        self.environment = environment
        self.catalogs = catalogs
        self.validator = InvoiceValidator(catalogs)
        self.builder = CfdiInvoiceBuilder(catalogs)
        self.payment_builder = PaymentComplementBuilder(catalogs)
        self.clock = clock or datetime.now

    # ========== LOADING ==========
    def _parties(self, emitter_id: str, receiver_id: str) -> Tuple[FiscalParty, FiscalParty]:
        return self.storage.get_party(emitter_id), self.storage.get_party(receiver_id)

    def _load_invoice(self, record: InvoiceRecord) -> Tuple[List[LineItem], FiscalParty, FiscalParty]:
        items = self.storage.get_line_items(record.invoice_id)
        emitter, receiver = self._parties(record.emitter_id, record.receiver_id)
        return items, emitter, receiver

    # ========== PREVIEW ==========
    def preview(self, invoice_id: str) -> PreviewResult:
        """Unsigned XML, totals and validator messages. Never signs and never calls the PAC."""
        record = self.storage.get_invoice(invoice_id)
        items, emitter, receiver = self._load_invoice(record)
        data = assemble_invoice(record, items, emitter, receiver)

        messages = self.validator.validate(data)
        root = self.builder.build(data)
        logger.info("Preview | invoice=%s | messages=%d", invoice_id, len(messages))
        return PreviewResult(
            invoice_id=invoice_id,
            xml=self.builder.to_bytes(root).decode("utf-8"),
            cadena=cadena_original(root),
            totals=calculate_totals(items),
            messages=messages,
        )

    # ========== STAMP ==========
    def stamp(self, invoice_id: str) -> OperationResult:
        record = self.storage.get_invoice(invoice_id)
        if record.state != FiscalState.DRAFT:
            logger.warning("Stamp refused | invoice=%s | state=%s", invoice_id, record.state.value)
            raise StateConflict(f"La factura {invoice_id} esta en estado {record.state.value}; solo se timbran borradores")
        return self._stamp_invoice(record)

    def retry(self, invoice_id: str) -> OperationResult:
        """Re-runs the whole pipeline against the current data of a failed (or never stamped) invoice."""
        record = self.storage.get_invoice(invoice_id)
        if record.state in (FiscalState.STAMPED, FiscalState.CANCELLED):
            logger.warning("Retry refused | invoice=%s | state=%s", invoice_id, record.state.value)
            raise StateConflict(f"La factura {invoice_id} ya esta {record.state.value}; no se puede reintentar")
        return self._stamp_invoice(record)

    def _stamp_invoice(self, record: InvoiceRecord) -> OperationResult:
        invoice_id = record.invoice_id
        items, emitter, receiver = self._load_invoice(record)
        logger.info("Stamping | invoice=%s | %s-%s | env=%s", invoice_id, record.series, record.folio,
                    self.environment)

        try:
            data = assemble_invoice(record, items, emitter, receiver)
            result, unsigned_xml = self._run_pipeline(data)
        except CfdiError as e:
            error = classify(e, self.clock())
            logger.error("Stamp failed | invoice=%s | kind=%s | code=%s | %s", invoice_id, error.kind, error.code,
                         error.detail)
            try:
                self.storage.persist_error(invoice_id, error)
            except Exception as save_error:
                logger.exception("Stamp error not saved | invoice=%s | code=%s", invoice_id, error.code)
                return OperationResult(success=False, record_id=invoice_id, state=record.state, error=error,
                                       warning=self._save_warning(invoice_id, save_error))
            return OperationResult(success=False, record_id=invoice_id, state=FiscalState.ERROR, error=error)

        logger.info("Stamped | invoice=%s | UUID=%s", invoice_id, result.uuid)
        try:
            self.storage.persist_stamping_result(invoice_id, result, unsigned_xml)
        except Exception as e:
            logger.exception("Stamped but not saved | invoice=%s | UUID=%s", invoice_id, result.uuid)
            warning = self._persistence_warning(result.uuid, e)
            return OperationResult(success=True, record_id=invoice_id, state=FiscalState.STAMPED, uuid=result.uuid,
                                   stamped_at=result.stamped_at, warning=warning)

        return OperationResult(success=True, record_id=invoice_id, state=FiscalState.STAMPED, uuid=result.uuid,
                               stamped_at=result.stamped_at)

    def _run_pipeline(self, data: InvoiceData) -> Tuple[StampingResult, str]:
        self.validator.ensure_valid(data)
        unsigned_xml = self.builder.to_bytes(self.builder.build(data)).decode("utf-8")

        signer = self._signer(data.emitter.rfc, data.issued_at)
        root = self.builder.build(data, signer.certificate_number, signer.certificate_b64)
        cadena = signer.seal(root)
        response = self._submit(self.builder.to_bytes(root))
        return self._stamping_result(response, root, cadena), unsigned_xml

    # ========== SHARED STEPS ==========
    def _signer(self, emitter_rfc: str, issued_at: datetime) -> CsdSigner:
        credentials = self.credentials.get_active_certificate(emitter_rfc, self.environment)
        signer = CsdSigner.from_credentials(credentials)
        signer.ensure_emitter(emitter_rfc)
        signer.ensure_valid_at(issued_at)
        return signer

    def _submit(self, signed_xml: bytes) -> StampResponse:
        try:
            return self.pac.stamp(signed_xml)
        except PacRejected as e:
            if e.already_stamped and e.recovered is not None:
                logger.warning("PAC reports a previous stamp of this document; keeping UUID=%s", e.recovered.uuid)
                return e.recovered
            raise

    def _stamping_result(self, response: StampResponse, root: etree._Element, cadena: str) -> StampingResult:
        timbre = read_timbre(response.stamped_xml)
        stamped_at = response.stamped_at
        if stamped_at is None and timbre.get("stamped_at"):
            stamped_at = datetime.fromisoformat(timbre["stamped_at"])
        return StampingResult(
            uuid=(response.uuid or timbre.get("uuid") or "").upper(),
            stamped_xml=response.stamped_xml,
            seal=root.get("Sello"),
            certificate_number=root.get("NoCertificado"),
            pac_seal=response.pac_seal or timbre.get("pac_seal"),
            pac_certificate_number=response.pac_certificate_number or timbre.get("pac_certificate_number"),
            cadena=cadena,
            stamped_at=stamped_at or self.clock(),
        )

    def _persistence_warning(self, uuid: str, cause: Exception):
        error = PersistenceError(
            f"El PAC proceso el CFDI {uuid} pero no se pudo guardar el resultado",
            detail=f"UUID {uuid}: {cause}",
        )
        return classify(error, self.clock())

    def _save_warning(self, record_id: str, cause: Exception):
        error = PersistenceError(f"No se pudo guardar el error de {record_id}", detail=str(cause))
        return classify(error, self.clock())

    # ========== CANCEL ==========
    def cancel(self, invoice_id: str, reason: str, substitute_uuid: Optional[str] = None) -> OperationResult:
        record = self.storage.get_invoice(invoice_id)
        if record.state != FiscalState.STAMPED:
            logger.warning("Cancel refused | invoice=%s | state=%s", invoice_id, record.state.value)
            raise StateConflict(f"Solo se pueden cancelar facturas timbradas; {invoice_id} esta {record.state.value}")
        check_cancel_request(reason, substitute_uuid)
        if substitute_uuid and substitute_uuid.upper() == record.uuid:
            raise ValidationError(["El CFDI no puede sustituirse a si mismo"])

        emitter = self.storage.get_party(record.emitter_id)
        logger.info("Cancelling | invoice=%s | UUID=%s | motivo=%s", invoice_id, record.uuid, reason)
        try:
            response = self.pac.cancel(record.uuid, emitter.rfc, reason, substitute_uuid)
        except CfdiError as e:
            error = classify(e, self.clock())
            logger.error("Cancel failed | invoice=%s | kind=%s | code=%s | %s", invoice_id, error.kind, error.code,
                         error.detail)
            return OperationResult(success=False, record_id=invoice_id, state=FiscalState.STAMPED, uuid=record.uuid,
                                   error=error)

        cancellation = CancellationRecord(
            reason=reason,
            substitute_uuid=substitute_uuid.upper() if substitute_uuid else None,
            acknowledgement=response.acknowledgement,
            status=response.status,
            cancelled_at=response.cancelled_at or self.clock(),
        )
        logger.info("Cancelled | invoice=%s | UUID=%s | status=%s", invoice_id, record.uuid, response.status)

        result = OperationResult(success=True, record_id=invoice_id, state=FiscalState.CANCELLED, uuid=record.uuid,
                                 acknowledgement=cancellation.acknowledgement,
                                 cancelled_at=cancellation.cancelled_at)
        try:
            self.storage.persist_cancellation(invoice_id, cancellation)
        except Exception as e:
            logger.exception("Cancelled but not saved | invoice=%s | UUID=%s", invoice_id, record.uuid)
            result.warning = self._persistence_warning(record.uuid, e)
        return result

    def cancellation_receipt(self, invoice_id: str) -> OperationResult:
        """
        Cancellation acuse of an invoice. A cancelled record that lost its acuse
        gets it back from the PAC and saved. A record still stamped locally can
        be checked too (the cancel went through but was not saved); nothing is
        written for it, cancelling again records the cancellation.
        """
        record = self.storage.get_invoice(invoice_id)
        if record.state not in (FiscalState.STAMPED, FiscalState.CANCELLED) or not record.uuid:
            raise StateConflict(f"La factura {invoice_id} esta {record.state.value}; no tiene acuse de cancelacion")
        cancellation = record.cancellation
        if cancellation is not None and cancellation.acknowledgement:
            return OperationResult(success=True, record_id=invoice_id, state=record.state, uuid=record.uuid,
                                   acknowledgement=cancellation.acknowledgement,
                                   cancelled_at=cancellation.cancelled_at)

        emitter = self.storage.get_party(record.emitter_id)
        try:
            response = self.pac.get_receipt(record.uuid, emitter.rfc)
        except CfdiError as e:
            error = classify(e, self.clock())
            logger.error("Receipt failed | invoice=%s | kind=%s | code=%s | %s", invoice_id, error.kind, error.code,
                         error.detail)
            return OperationResult(success=False, record_id=invoice_id, state=record.state, uuid=record.uuid,
                                   error=error)

        cancelled_at = response.cancelled_at or (cancellation.cancelled_at if cancellation else None)
        result = OperationResult(success=True, record_id=invoice_id, state=record.state, uuid=record.uuid,
                                 acknowledgement=response.acknowledgement, cancelled_at=cancelled_at)
        if record.state == FiscalState.STAMPED or cancellation is None:
            logger.warning("PAC holds a cancellation receipt for stamped invoice %s | UUID=%s", invoice_id,
                           record.uuid)
            return result

        logger.info("Receipt recovered | invoice=%s | UUID=%s", invoice_id, record.uuid)
        try:
            self.storage.persist_cancellation(invoice_id, cancellation.model_copy(
                update={"acknowledgement": response.acknowledgement}))
        except Exception as e:
            logger.exception("Receipt recovered but not saved | invoice=%s | UUID=%s", invoice_id, record.uuid)
            result.warning = self._persistence_warning(record.uuid, e)
        return result

    # ========== STATUS ==========
    def query_status(self, invoice_id: str) -> StatusResult:
        """Local state plus, for stamped documents, the live SAT state. Read only."""
        record = self.storage.get_invoice(invoice_id)
        result = StatusResult(invoice_id=invoice_id, state=record.state, uuid=record.uuid)
        if record.state not in (FiscalState.STAMPED, FiscalState.CANCELLED) or not record.uuid:
            return result

        emitter, receiver = self._parties(record.emitter_id, record.receiver_id)
        try:
            status = self.pac.query_status(record.uuid, emitter.rfc, receiver.rfc, self._stamped_total(record))
        except CfdiError as e:
            logger.warning("SAT status unavailable | invoice=%s | %s", invoice_id, e.message)
            result.pac_error = classify(e, self.clock())
            return result

        result.sat_state = status.sat_state
        result.cancellable = status.cancellable
        result.cancellation_state = status.cancellation_state
        return result

    @staticmethod
    def _stamped_total(record: InvoiceRecord) -> str:
        """Total exactly as it was stamped; SAT matches it character by character."""
        if record.stamping and record.stamping.stamped_xml:
            total = parse_xml(record.stamping.stamped_xml).get("Total")
            if total:
                return total
        return f"{record.total:.2f}"

    # ========== PAYMENT COMPLEMENT ==========
    def issue_payment_complement(self, payment_id: str) -> OperationResult:
        payment = self.storage.get_payment(payment_id)
        if payment.complement_uuid:
            raise StateConflict(f"El pago {payment_id} ya tiene complemento {payment.complement_uuid}")
        invoice = self.storage.get_invoice(payment.invoice_id)
        if invoice.state != FiscalState.STAMPED:
            raise StateConflict(
                f"La factura {invoice.invoice_id} esta {invoice.state.value}; el complemento requiere una factura timbrada"
            )
        emitter, receiver = self._parties(invoice.emitter_id, invoice.receiver_id)
        logger.info("Payment complement | payment=%s | invoice=%s | amount=%s", payment_id, invoice.invoice_id,
                    payment.amount)

        try:
            data = self._payment_data(payment, invoice, emitter, receiver)
            messages = validate_payment_complement(data, self.catalogs)
            if messages:
                raise ValidationError(messages)
            signer = self._signer(emitter.rfc, data.issued_at)
            root = self.payment_builder.build(data, signer.certificate_number, signer.certificate_b64)
            cadena = signer.seal(root)
            response = self._submit(etree.tostring(root, encoding="UTF-8", xml_declaration=True))
            result = self._stamping_result(response, root, cadena)
        except CfdiError as e:
            error = classify(e, self.clock())
            logger.error("Payment complement failed | payment=%s | kind=%s | code=%s | %s", payment_id, error.kind,
                         error.code, error.detail)
            try:
                self.storage.persist_payment_error(payment_id, error)
            except Exception as save_error:
                logger.exception("Payment complement error not saved | payment=%s | code=%s", payment_id, error.code)
                return OperationResult(success=False, record_id=payment_id, error=error,
                                       warning=self._save_warning(payment_id, save_error))
            return OperationResult(success=False, record_id=payment_id, error=error)

        logger.info("Payment complement stamped | payment=%s | UUID=%s | parcialidad=%d", payment_id, result.uuid,
                    data.details.partiality)
        try:
            self.storage.persist_payment_complement(payment_id, result)
        except Exception as e:
            logger.exception("Complement stamped but not saved | payment=%s | UUID=%s", payment_id, result.uuid)
            return OperationResult(success=True, record_id=payment_id, uuid=result.uuid, stamped_at=result.stamped_at,
                                   warning=self._persistence_warning(result.uuid, e))
        return OperationResult(success=True, record_id=payment_id, uuid=result.uuid, stamped_at=result.stamped_at)

    def _payment_data(self, payment: PaymentRecord, invoice: InvoiceRecord, emitter: FiscalParty,
                      receiver: FiscalParty) -> PaymentComplementData:
        # every payment registered before this one is a prior partiality
        payments = self.storage.get_payments(invoice.invoice_id)
        position = [p.payment_id for p in payments].index(payment.payment_id)
        prior = [p.amount for p in payments[:position]]
        details = compute_payment_details(invoice.total, prior, payment.amount)
        return PaymentComplementData(
            payment_id=payment.payment_id,
            series=payment.series,
            folio=payment.folio or payment.payment_id,
            issued_at=payment.issued_at or self.clock().replace(microsecond=0),
            paid_at=payment.paid_at,
            emitter=emitter,
            receiver=receiver,
            payment_form=payment.payment_form,
            currency=payment.currency,
            exchange_rate=payment.exchange_rate,
            invoice_uuid=invoice.uuid,
            invoice_series=invoice.series,
            invoice_folio=invoice.folio,
            invoice_currency=invoice.currency,
            invoice_payment_method=invoice.payment_method,
            details=details,
        )
