import base64
import binascii
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from cfdi import csd
from cfdi.errors import CfdiError
from cfdi.log import get_logger
from config import ENV
from dependencies import get_credentials_provider, get_registration_client
from routers.invoices import engine_error

logger = get_logger("csd_logger", "csd_onboarding.log")


router = APIRouter()


class InspectCSDReq(BaseModel):
    cer_base64: str                   # .cer file (DER) in base64
    key_base64: Optional[str] = None  # .key file (PKCS#8 DER) in base64
    passphrase: Optional[str] = None


class UploadCSDReq(BaseModel):
    rfc: str
    cer_base64: str
    key_base64: str
    passphrase: str
    save_locally: bool = True         # also keep the pair for signing in this environment


def _decode(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=422, detail=f"{field} is not valid base64")


@router.post("/csd/inspect", summary="Read certificate number, RFC and validity of a CSD")
async def inspect_csd_endpoint(data: InspectCSDReq):
    """
    Returns NoCertificado, RFC, subject name and validity of the certificate.
    When the key and passphrase are sent it also checks that both files are
    a pair. Nothing is stored.
    """
    cer = _decode(data.cer_base64, "cer_base64")
    key = _decode(data.key_base64, "key_base64") if data.key_base64 else None
    try:
        result = csd.inspect_csd(cer, key, data.passphrase)
        logger.info("CSD inspected: NoCertificado %s, RFC %s", result["certificate_number"], result["rfc"])
        return result
    except CfdiError as e:
        logger.error("CSD inspection failed: %s", e.message)
        raise HTTPException(status_code=422, detail=e.message)
    except Exception:
        logger.exception("Unexpected error inspecting CSD")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/csd/upload", summary="Register an emitter CSD with Finkok")
def upload_csd_endpoint(data: UploadCSDReq):
    """
    Validates the pair locally, registers it with the Finkok reseller
    account and, unless `save_locally` is false, stores it for signing.
    """
    cer = _decode(data.cer_base64, "cer_base64")
    key = _decode(data.key_base64, "key_base64")
    rfc = data.rfc.upper()
    try:
        info = csd.inspect_csd(cer, key, data.passphrase)
        if not info["pair_matches"]:
            raise HTTPException(status_code=422, detail="The certificate and the private key are not a pair")
        if info["rfc"] and info["rfc"] != rfc:
            raise HTTPException(status_code=422, detail=f"The certificate belongs to {info['rfc']}, not {rfc}")

        logger.info("Uploading CSD %s for RFC %s", info["certificate_number"], rfc)
        result = get_registration_client().upload_csd(rfc, cer, key, data.passphrase)
        if data.save_locally:
            get_credentials_provider().save(rfc, ENV, cer, key, data.passphrase)
        return {"status": "success", "certificate_number": info["certificate_number"], "pac": result}

    except HTTPException:
        raise
    except CfdiError as e:
        logger.error("CSD upload failed for %s: %s", rfc, e.message)
        if e.kind in ("credential", "signing"):
            raise HTTPException(status_code=422, detail=e.message)
        raise engine_error(e)
    except Exception:
        logger.exception("Unexpected error uploading CSD for %s", rfc)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/csd/{rfc}", summary="Registration status of an emitter at Finkok")
def get_csd_endpoint(rfc: str):
    try:
        return get_registration_client().get_client(rfc)
    except CfdiError as e:
        logger.error("Finkok client lookup failed for %s: %s", rfc, e.message)
        raise engine_error(e)
    except Exception:
        logger.exception("Unexpected error looking up %s", rfc)
        raise HTTPException(status_code=500, detail="Internal server error")
