from fastapi import APIRouter, Depends, HTTPException

from cfdi.errors import CfdiError
from cfdi.log import get_logger
from cfdi.models import OperationResult
from cfdi.orchestrator import CfdiLifecycle
from dependencies import get_lifecycle
from routers.invoices import engine_error, failed_result

logger = get_logger("payments_router", "payments.log")

router = APIRouter()


@router.post("/{payment_id}/complement", summary="Issue the payment complement (REP) of a PPD payment",
             response_model=OperationResult)
def issue_complement(payment_id: str, lifecycle: CfdiLifecycle = Depends(get_lifecycle)):
    """
    Builds, signs and stamps a Pagos 2.0 complement for a payment registered
    against a stamped PPD invoice. Each payment gets at most one complement.
    """
    try:
        logger.info("Complement request for payment %s", payment_id)
        result = lifecycle.issue_payment_complement(payment_id)
    except CfdiError as e:
        logger.error("Complement refused for %s: %s", payment_id, e.message)
        raise engine_error(e)
    except Exception:
        logger.exception("Unexpected error issuing complement for %s", payment_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    if not result.success:
        raise failed_result(result)
    return result
