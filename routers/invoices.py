from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from cfdi.errors import CfdiError, NotFound, StateConflict, ValidationError
from cfdi.log import get_logger
from cfdi.models import OperationResult, PreviewResult, StatusResult
from cfdi.orchestrator import CfdiLifecycle
from dependencies import get_lifecycle

logger = get_logger("invoices_router", "invoices.log")

router = APIRouter()

FAILED_STATUS = {"validation": 422, "pac_unavailable": 503}


class CancelReq(BaseModel):
    reason: str                            # SAT motivo: 01, 02, 03 or 04
    substitute_uuid: Optional[str] = None  # required with motivo 01


def failed_result(result: OperationResult) -> HTTPException:
    """HTTP error for an operation that ran but did not succeed (persisted as error)."""
    status = FAILED_STATUS.get(result.error.kind, 502)
    return HTTPException(status_code=status, detail=result.model_dump(mode="json"))


def engine_error(e: CfdiError) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, StateConflict):
        return HTTPException(status_code=409, detail=e.message)
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail={"message": e.message, "messages": e.messages})
    return HTTPException(status_code=503 if e.retriable else 502, detail=e.message)


@router.get("/{invoice_id}/preview", summary="Unsigned CFDI XML, totals and validation messages",
            response_model=PreviewResult)
async def preview_invoice(invoice_id: str, lifecycle: CfdiLifecycle = Depends(get_lifecycle)):
    """
    Builds the invoice XML without signing it or calling the PAC. `messages`
    lists everything that would block stamping; empty means ready.
    """
    try:
        return lifecycle.preview(invoice_id)
    except CfdiError as e:
        logger.error("Preview failed for %s: %s", invoice_id, e.message)
        raise engine_error(e)
    except Exception:
        logger.exception("Unexpected error previewing %s", invoice_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/{invoice_id}/stamp", summary="Sign and stamp a draft invoice", response_model=OperationResult)
def stamp_invoice(invoice_id: str, lifecycle: CfdiLifecycle = Depends(get_lifecycle)):
    try:
        logger.info("Stamp request for invoice %s", invoice_id)
        result = lifecycle.stamp(invoice_id)
    except CfdiError as e:
        logger.error("Stamp refused for %s: %s", invoice_id, e.message)
        raise engine_error(e)
    except Exception:
        logger.exception("Unexpected error stamping %s", invoice_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    if not result.success:
        raise failed_result(result)
    return result


@router.post("/{invoice_id}/retry", summary="Retry stamping an invoice in error", response_model=OperationResult)
def retry_invoice(invoice_id: str, lifecycle: CfdiLifecycle = Depends(get_lifecycle)):
    try:
        logger.info("Retry request for invoice %s", invoice_id)
        result = lifecycle.retry(invoice_id)
    except CfdiError as e:
        logger.error("Retry refused for %s: %s", invoice_id, e.message)
        raise engine_error(e)
    except Exception:
        logger.exception("Unexpected error retrying %s", invoice_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    if not result.success:
        raise failed_result(result)
    return result


@router.post("/{invoice_id}/cancel", summary="Cancel a stamped invoice before the SAT",
             response_model=OperationResult)
def cancel_invoice(invoice_id: str, data: CancelReq, lifecycle: CfdiLifecycle = Depends(get_lifecycle)):
    """
    Cancels with one of the SAT motivos:
    - 01: issued with errors, related (requires `substitute_uuid`)
    - 02: issued with errors, not related
    - 03: operation did not take place
    - 04: nominative operation related to a global invoice
    """
    try:
        logger.info("Cancel request for invoice %s, motivo %s", invoice_id, data.reason)
        result = lifecycle.cancel(invoice_id, data.reason, data.substitute_uuid)
    except CfdiError as e:
        logger.error("Cancel refused for %s: %s", invoice_id, e.message)
        raise engine_error(e)
    except Exception:
        logger.exception("Unexpected error cancelling %s", invoice_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    if not result.success:
        raise failed_result(result)
    return result


@router.get("/{invoice_id}/status", summary="Local fiscal state and live SAT status", response_model=StatusResult)
def invoice_status(invoice_id: str, lifecycle: CfdiLifecycle = Depends(get_lifecycle)):
    try:
        return lifecycle.query_status(invoice_id)
    except CfdiError as e:
        logger.error("Status query failed for %s: %s", invoice_id, e.message)
        raise engine_error(e)
    except Exception:
        logger.exception("Unexpected error querying status of %s", invoice_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{invoice_id}/cancellation-receipt", summary="SAT cancellation acuse of an invoice",
            response_model=OperationResult)
def cancellation_receipt(invoice_id: str, lifecycle: CfdiLifecycle = Depends(get_lifecycle)):
    """Returns the saved acuse, or fetches it from the PAC when it was never saved."""
    try:
        result = lifecycle.cancellation_receipt(invoice_id)
    except CfdiError as e:
        logger.error("Receipt refused for %s: %s", invoice_id, e.message)
        raise engine_error(e)
    except Exception:
        logger.exception("Unexpected error fetching the receipt of %s", invoice_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    if not result.success:
        raise failed_result(result)
    return result
