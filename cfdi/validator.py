from decimal import Decimal
from typing import List

from pydantic import ValidationError as ShapeError

from cfdi.catalogs import CATALOGS, POSTAL_CODE_PATTERN, SatCatalogs, is_moral_rfc, is_valid_rfc
from cfdi.errors import ValidationError
from cfdi.models import FiscalParty, InvoiceData, InvoiceRecord, LineItem
from cfdi.xml_builder import calculate_totals

TOLERANCE = Decimal("0.01")


def assemble_invoice(record: InvoiceRecord, items: List[LineItem], emitter: FiscalParty,
                     receiver: FiscalParty) -> InvoiceData:
    """Typed boundary: turns the stored pieces into the InvoiceData value object."""
    try:
        return InvoiceData(
            invoice_id=record.invoice_id,
            series=record.series,
            folio=record.folio,
            issued_at=record.issued_at,
            emitter=emitter,
            receiver=receiver,
            items=list(items),
            payment_form=record.payment_form,
            payment_method=record.payment_method,
            currency=record.currency,
            exchange_rate=record.exchange_rate,
            subtotal=record.subtotal,
            discount=record.discount,
            tax=record.tax,
            total=record.total,
        )
    except ShapeError as e:
        raise ValidationError([f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]) from e


class InvoiceValidator:
    """
    Checks that an invoice is complete and consistent before any XML is built.
    ``validate`` has no side effects; an empty list means ready to build.
    """

    def __init__(self, catalogs: SatCatalogs = CATALOGS):
        self.catalogs = catalogs

    def validate(self, data: InvoiceData) -> List[str]:
        messages: List[str] = []
        self._check_emitter(data.emitter, messages)
        self._check_receiver(data.receiver, messages)
        self._check_items(data.items, messages)
        if data.items and not any(m.startswith("Concepto") for m in messages):
            self._check_totals(data, messages)
        self._check_payment(data, messages)
        self._check_currency(data, messages)
        return messages

    def ensure_valid(self, data: InvoiceData) -> None:
        messages = self.validate(data)
        if messages:
            raise ValidationError(messages)

    # --------- CHECKS ---------
    def _check_emitter(self, emitter: FiscalParty, messages: List[str]) -> None:
        if not emitter.rfc:
            messages.append("Falta el RFC del emisor")
        elif not is_valid_rfc(emitter.rfc):
            messages.append(f"RFC del emisor invalido: {emitter.rfc}")

        if not emitter.regime:
            messages.append("Falta el regimen fiscal del emisor")
        elif emitter.regime not in self.catalogs.tax_regimes:
            messages.append(f"Regimen fiscal del emisor no existe en el catalogo: {emitter.regime}")
        elif emitter.rfc:
            moral = is_moral_rfc(emitter.rfc)
            if moral and emitter.regime in self.catalogs.physical_regimes:
                messages.append(f"El RFC {emitter.rfc} es de persona moral pero el regimen {emitter.regime} es de persona fisica")
            if not moral and emitter.regime in self.catalogs.moral_regimes:
                messages.append(f"El RFC {emitter.rfc} es de persona fisica pero el regimen {emitter.regime} es de persona moral")

        if not emitter.name.strip():
            messages.append("Falta la razon social del emisor")
        if not POSTAL_CODE_PATTERN.match(emitter.postal_code or ""):
            messages.append("El codigo postal del emisor (LugarExpedicion) debe tener 5 digitos")

    def _check_receiver(self, receiver: FiscalParty, messages: List[str]) -> None:
        if not receiver.rfc:
            messages.append("Falta el RFC del receptor")
        elif not is_valid_rfc(receiver.rfc):
            messages.append(f"RFC del receptor invalido: {receiver.rfc}")

        if not receiver.name.strip():
            messages.append("Falta el nombre o razon social del receptor")
        if not receiver.postal_code:
            messages.append("Falta el codigo postal del receptor")
        elif not POSTAL_CODE_PATTERN.match(receiver.postal_code):
            messages.append("El codigo postal del receptor debe tener 5 digitos")

        if not receiver.regime:
            messages.append("Falta el regimen fiscal del receptor")
        elif receiver.regime not in self.catalogs.tax_regimes:
            messages.append(f"Regimen fiscal del receptor no existe en el catalogo: {receiver.regime}")

        if not receiver.cfdi_use:
            messages.append("Falta el uso de CFDI del receptor")
        elif receiver.cfdi_use not in self.catalogs.cfdi_uses:
            messages.append(f"Uso de CFDI no existe en el catalogo: {receiver.cfdi_use}")
        elif receiver.regime and receiver.cfdi_use not in self.catalogs.uses_for_regime(receiver.regime):
            messages.append(
                f"El uso de CFDI {receiver.cfdi_use} no es compatible con el regimen {receiver.regime} del receptor"
            )

    def _check_items(self, items: List[LineItem], messages: List[str]) -> None:
        if not items:
            messages.append("La factura no tiene conceptos")
            return
        for index, item in enumerate(items, start=1):
            if item.quantity <= 0:
                messages.append(f"Concepto {index}: la cantidad debe ser mayor a cero")
            if item.unit_price < 0:
                messages.append(f"Concepto {index}: el precio unitario no puede ser negativo")
            if not (0 <= item.discount_pct <= 100):
                messages.append(f"Concepto {index}: el descuento debe estar entre 0 y 100%")
            if not item.description.strip():
                messages.append(f"Concepto {index}: falta la descripcion")
            if not item.product_key:
                messages.append(f"Concepto {index}: falta la clave de producto (ClaveProdServ)")
            if not item.unit_key:
                messages.append(f"Concepto {index}: falta la clave de unidad (ClaveUnidad)")

    def _check_totals(self, data: InvoiceData, messages: List[str]) -> None:
        totals = calculate_totals(data.items)
        for label, declared, computed in (
            ("subtotal", data.subtotal, totals.subtotal),
            ("descuento", data.discount, totals.discount),
            ("IVA", data.tax, totals.tax),
            ("total", data.total, totals.total),
        ):
            if abs(Decimal(declared) - computed) > TOLERANCE:
                messages.append(f"El {label} declarado ({declared:.2f}) no coincide con los conceptos ({computed:.2f})")

    def _check_payment(self, data: InvoiceData, messages: List[str]) -> None:
        if not data.payment_form:
            messages.append("Falta la forma de pago")
        elif data.payment_form not in self.catalogs.payment_forms:
            messages.append(f"Forma de pago no existe en el catalogo: {data.payment_form}")

        if not data.payment_method:
            messages.append("Falta el metodo de pago")
        elif data.payment_method not in self.catalogs.payment_methods:
            messages.append(f"Metodo de pago no existe en el catalogo: {data.payment_method}")
        elif data.payment_method == "PPD" and data.payment_form and data.payment_form != "99":
            messages.append("Una factura PPD debe usar la forma de pago 99 (Por definir)")

    def _check_currency(self, data: InvoiceData, messages: List[str]) -> None:
        if data.currency not in self.catalogs.currencies or data.currency == "XXX":
            messages.append(f"Moneda no soportada: {data.currency}")
        elif data.currency != "MXN" and (data.exchange_rate is None or data.exchange_rate <= 0):
            messages.append(f"Falta el tipo de cambio para la moneda {data.currency}")
