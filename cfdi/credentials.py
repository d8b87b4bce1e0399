import os
from typing import Optional, Protocol

from pydantic import BaseModel, ConfigDict

from cfdi.errors import CredentialError
from cfdi.log import get_logger

logger = get_logger("cfdi_credentials", "credentials.log")


class CsdCredentials(BaseModel):
    """CSD pair of one emitter in one environment. Never persisted or logged."""

    model_config = ConfigDict(frozen=True)

    certificate: bytes
    private_key: bytes
    passphrase: Optional[str] = None

    def __repr__(self) -> str:
        return f"CsdCredentials(certificate=<{len(self.certificate)} bytes>, private_key=<hidden>)"

    __str__ = __repr__


class CredentialsProvider(Protocol):
    def get_active_certificate(self, emitter_rfc: str, environment: str) -> CsdCredentials: ...


class DirectoryCredentialsProvider:
    """
    Reads CSD files laid out as ``<base_dir>/<environment>/<RFC>.cer``,
    ``<RFC>.key`` and an optional ``<RFC>.pass`` holding the passphrase.
    """

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    def _path(self, emitter_rfc: str, environment: str, extension: str) -> str:
        return os.path.join(self.base_dir, environment, f"{emitter_rfc.upper()}.{extension}")

    def get_active_certificate(self, emitter_rfc: str, environment: str) -> CsdCredentials:
        cer_path = self._path(emitter_rfc, environment, "cer")
        key_path = self._path(emitter_rfc, environment, "key")
        pass_path = self._path(emitter_rfc, environment, "pass")

        if not os.path.exists(cer_path) or not os.path.exists(key_path):
            logger.error("No CSD configured | RFC=%s | env=%s", emitter_rfc, environment)
            raise CredentialError(
                f"No hay CSD configurados para el RFC {emitter_rfc} en el ambiente {environment}"
            )

        with open(cer_path, "rb") as inf:
            certificate = inf.read()
        with open(key_path, "rb") as inf:
            private_key = inf.read()
        passphrase = None
        if os.path.exists(pass_path):
            with open(pass_path, "r", encoding="utf-8") as inf:
                passphrase = inf.read().strip()

        logger.info("CSD files read | RFC=%s | env=%s", emitter_rfc, environment)
        return CsdCredentials(certificate=certificate, private_key=private_key, passphrase=passphrase)

    def save(self, emitter_rfc: str, environment: str, certificate: bytes, private_key: bytes,
             passphrase: str) -> None:
        """Stores a CSD pair where ``get_active_certificate`` will find it."""
        os.makedirs(os.path.join(self.base_dir, environment), exist_ok=True)
        with open(self._path(emitter_rfc, environment, "cer"), "wb") as outf:
            outf.write(certificate)
        with open(self._path(emitter_rfc, environment, "key"), "wb") as outf:
            outf.write(private_key)
        with open(self._path(emitter_rfc, environment, "pass"), "w", encoding="utf-8") as outf:
            outf.write(passphrase)
        logger.info("CSD files saved | RFC=%s | env=%s", emitter_rfc, environment)
