import base64
from datetime import datetime, timezone
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from lxml import etree

from cfdi import csd
from cfdi.cadena import XmlInput, cadena_original, parse_xml
from cfdi.errors import CredentialError, SigningError
from cfdi.log import get_logger

logger = get_logger("cfdi_signer", "signer.log")


class CsdSigner:
    """
    Signs cadenas with a taxpayer CSD.

    The private key and passphrase only live on the instance; they are never
    logged or written anywhere.
    """

    def __init__(self, certificate: bytes, private_key: bytes, passphrase: Optional[str]):
        self.certificate = csd.load_certificate(certificate)
        self._key = csd.load_private_key(private_key, passphrase)
        csd.ensure_pair(self.certificate, self._key)

        self.certificate_number = csd.certificate_number(self.certificate)
        self.certificate_b64 = csd.certificate_base64(self.certificate)
        self.rfc = csd.certificate_rfc(self.certificate)
        self.valid_from, self.valid_to = csd.validity(self.certificate)
        logger.info("CSD loaded | NoCertificado=%s | RFC=%s | valid_to=%s",
                    self.certificate_number, self.rfc, self.valid_to.isoformat())

    @classmethod
    def from_credentials(cls, credentials) -> "CsdSigner":
        return cls(credentials.certificate, credentials.private_key, credentials.passphrase)

    def ensure_emitter(self, emitter_rfc: str) -> None:
        if self.rfc and self.rfc != emitter_rfc.upper():
            raise CredentialError(
                f"El RFC del certificado ({self.rfc}) no corresponde al emisor ({emitter_rfc})",
                code="CFDI33102",
            )

    def ensure_valid_at(self, when: datetime) -> None:
        if when.tzinfo is not None:
            when = when.astimezone(timezone.utc).replace(tzinfo=None)
        if not (self.valid_from <= when <= self.valid_to):
            raise CredentialError(
                f"La fecha {when.isoformat()} no esta dentro de la vigencia del CSD "
                f"({self.valid_from.date()} a {self.valid_to.date()})",
                code="CFDI33103",
            )

    def sign(self, cadena: str) -> str:
        """RSA PKCS#1 v1.5 over SHA-256 of the UTF-8 cadena, base64 encoded (Sello)."""
        try:
            signature = self._key.sign(cadena.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        except ValueError as e:
            raise SigningError(f"No se pudo generar el sello: {e}") from e
        return base64.b64encode(signature).decode("ascii")

    def seal(self, root: etree._Element) -> str:
        """
        Completes the signature attributes of a built Comprobante and returns
        the cadena that was signed.
        """
        root.set("NoCertificado", self.certificate_number)
        root.set("Certificado", self.certificate_b64)
        cadena = cadena_original(root)
        root.set("Sello", self.sign(cadena))
        return cadena

    def verify(self, cadena: str, sello: str) -> bool:
        return verify_signature(self.certificate, cadena, sello)

    def private_key_pem(self) -> str:
        return csd.private_key_pem(self._key)

    def certificate_pem(self) -> str:
        return csd.certificate_pem(self.certificate)


def verify_signature(certificate, cadena: str, sello: str) -> bool:
    try:
        certificate.public_key().verify(
            base64.b64decode(sello), cadena.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256()
        )
    except (InvalidSignature, ValueError):
        return False
    return True


def verify_document(xml: XmlInput) -> bool:
    """
    Audits a signed or stamped CFDI: recomputes the cadena and checks Sello
    against the embedded Certificado.
    """
    root = parse_xml(xml)
    sello = root.get("Sello")
    certificate = root.get("Certificado")
    if not sello or not certificate:
        return False
    cert = csd.load_certificate(base64.b64decode(certificate))
    return verify_signature(cert, cadena_original(root), sello)
