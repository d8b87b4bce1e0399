from typing import Optional, Protocol

from cfdi.catalogs import CANCELLATION_REASONS, is_valid_uuid
from cfdi.errors import ValidationError
from cfdi.models import CancelResponse, StampResponse, StatusResponse


class PacClient(Protocol):
    """
    What the engine needs from a certification provider.

    Every call is a single bounded attempt. Implementations raise
    PacUnavailable when the service could not be reached and PacRejected when
    it answered with a refusal.
    """

    name: str

    def stamp(self, signed_xml: bytes) -> StampResponse:
        ...

    def cancel(self, uuid: str, emitter_rfc: str, reason: str,
               substitute_uuid: Optional[str] = None) -> CancelResponse:
        ...

    def query_status(self, uuid: str, emitter_rfc: str, receiver_rfc: str, total: str) -> StatusResponse:
        ...

    def get_receipt(self, uuid: str, emitter_rfc: str) -> CancelResponse:
        ...


def check_cancel_request(reason: str, substitute_uuid: Optional[str] = None) -> None:
    """Rejects a cancellation locally before any PAC call."""
    messages = []
    if reason not in CANCELLATION_REASONS:
        messages.append(f"Motivo de cancelacion invalido: {reason}")
    elif reason == "01" and not substitute_uuid:
        messages.append("El motivo 01 requiere el UUID del CFDI que sustituye")
    if substitute_uuid and not is_valid_uuid(substitute_uuid):
        messages.append(f"UUID de sustitucion invalido: {substitute_uuid}")
    if messages:
        raise ValidationError(messages)
