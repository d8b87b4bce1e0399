from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cfdi.catalogs import DEFAULT_PRODUCT_KEY, DEFAULT_UNIT_KEY

CENT = Decimal("0.01")
ZERO = Decimal("0")


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class FiscalState(str, Enum):
    DRAFT = "draft"
    STAMPED = "stamped"
    CANCELLED = "cancelled"
    ERROR = "error"


# ========== PARTIES & LINES ==========
class FiscalParty(BaseModel):
    model_config = ConfigDict(frozen=True)

    rfc: str
    name: str
    regime: str = ""
    postal_code: str = ""
    cfdi_use: str = ""  # receiver only

    @field_validator("rfc")
    @classmethod
    def _upper_rfc(cls, value: str) -> str:
        return value.strip().upper()


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_pct: Decimal = ZERO
    product_key: str = DEFAULT_PRODUCT_KEY
    unit_key: str = DEFAULT_UNIT_KEY
    unit_name: str = "Pieza"
    sku: str = ""

    @property
    def amount(self) -> Decimal:
        return round2(self.quantity * self.unit_price)

    @property
    def discount(self) -> Decimal:
        return round2(self.amount * self.discount_pct / Decimal("100"))

    @property
    def subtotal(self) -> Decimal:
        return self.amount - self.discount


# ========== RESULTS ==========
class ErrorInfo(BaseModel):
    kind: str
    code: Optional[str] = None
    category: str = "unknown"
    title: str
    detail: str
    action: Optional[str] = None
    field: Optional[str] = None
    retriable: bool = False
    messages: List[str] = Field(default_factory=list)
    occurred_at: datetime


class StampingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    uuid: str
    stamped_xml: str
    seal: str
    certificate_number: str
    pac_seal: Optional[str] = None
    pac_certificate_number: Optional[str] = None
    cadena: str
    stamped_at: datetime


class CancellationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    reason: str
    substitute_uuid: Optional[str] = None
    acknowledgement: Optional[str] = None
    status: Optional[str] = None
    cancelled_at: datetime


class StampResponse(BaseModel):
    uuid: str
    stamped_xml: str
    pac_seal: Optional[str] = None
    pac_certificate_number: Optional[str] = None
    stamped_at: Optional[datetime] = None


class CancelResponse(BaseModel):
    acknowledgement: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    status: Optional[str] = None


class StatusResponse(BaseModel):
    sat_state: str
    cancellable: bool = False
    cancellation_state: Optional[str] = None
    code: Optional[str] = None


# ========== RECORDS ==========
class InvoiceRecord(BaseModel):
    invoice_id: str
    series: str = "A"
    folio: str
    issued_at: datetime
    emitter_id: str
    receiver_id: str
    payment_form: str = "99"
    payment_method: str = "PUE"
    currency: str = "MXN"
    exchange_rate: Optional[Decimal] = None
    subtotal: Decimal
    discount: Decimal = ZERO
    tax: Decimal
    total: Decimal

    state: FiscalState = FiscalState.DRAFT
    unsigned_xml: Optional[str] = None
    stamping: Optional[StampingResult] = None
    cancellation: Optional[CancellationRecord] = None
    last_error: Optional[ErrorInfo] = None

    @property
    def uuid(self) -> Optional[str]:
        return self.stamping.uuid if self.stamping else None


class PaymentRecord(BaseModel):
    payment_id: str
    invoice_id: str
    paid_at: datetime
    issued_at: Optional[datetime] = None
    amount: Decimal
    payment_form: str = "03"
    currency: str = "MXN"
    exchange_rate: Optional[Decimal] = None
    series: str = "P"
    folio: str = ""

    complement: Optional[StampingResult] = None
    last_error: Optional[ErrorInfo] = None

    @property
    def complement_uuid(self) -> Optional[str]:
        return self.complement.uuid if self.complement else None


# ========== VALUE OBJECTS ==========
class InvoiceData(BaseModel):
    """Typed invoice built once at the validator boundary; downstream code trusts its shape."""

    model_config = ConfigDict(frozen=True)

    invoice_id: str
    series: str
    folio: str
    issued_at: datetime
    emitter: FiscalParty
    receiver: FiscalParty
    items: List[LineItem]
    payment_form: str
    payment_method: str
    currency: str = "MXN"
    exchange_rate: Optional[Decimal] = None
    subtotal: Decimal
    discount: Decimal = ZERO
    tax: Decimal
    total: Decimal


class InvoiceTotals(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: Decimal
    discount: Decimal
    tax_base: Decimal
    tax: Decimal
    total: Decimal


class PaymentDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    partiality: int
    prior_balance: Decimal
    amount: Decimal
    remaining_balance: Decimal
    tax_base: Decimal
    tax_amount: Decimal


class PaymentComplementData(BaseModel):
    model_config = ConfigDict(frozen=True)

    payment_id: str
    series: str
    folio: str
    issued_at: datetime
    paid_at: datetime
    emitter: FiscalParty
    receiver: FiscalParty
    payment_form: str
    currency: str = "MXN"
    exchange_rate: Optional[Decimal] = None
    invoice_uuid: str
    invoice_series: str
    invoice_folio: str
    invoice_currency: str = "MXN"
    invoice_payment_method: str = "PPD"
    details: PaymentDetails


# ========== OPERATION RESULTS ==========
class OperationResult(BaseModel):
    success: bool
    record_id: str
    state: Optional[FiscalState] = None
    uuid: Optional[str] = None
    stamped_at: Optional[datetime] = None
    acknowledgement: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    error: Optional[ErrorInfo] = None
    warning: Optional[ErrorInfo] = None


class PreviewResult(BaseModel):
    invoice_id: str
    xml: str
    cadena: str
    totals: InvoiceTotals
    messages: List[str]


class StatusResult(BaseModel):
    invoice_id: str
    state: FiscalState
    uuid: Optional[str] = None
    sat_state: Optional[str] = None
    cancellable: Optional[bool] = None
    cancellation_state: Optional[str] = None
    pac_error: Optional[ErrorInfo] = None
