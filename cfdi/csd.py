import base64
from datetime import datetime, timezone
from typing import Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from pyasn1.codec.der.decoder import decode as der_decode
from pyasn1.error import PyAsn1Error
from pyasn1.type import namedtype, univ

from cfdi.errors import CredentialError, SigningError


# ASN.1 structures (RFC 5958)
class AlgorithmIdentifier(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType('algorithm', univ.ObjectIdentifier()),
        namedtype.OptionalNamedType('parameters', univ.Any())
    )


class EncryptedPrivateKeyInfo(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType('encryptionAlgorithm', AlgorithmIdentifier()),
        namedtype.NamedType('encryptedData', univ.OctetString())
    )


def _is_pem(data: bytes) -> bool:
    return data.lstrip().startswith(b"-----BEGIN")


def is_encrypted_pkcs8(key_der: bytes) -> bool:
    """True when the DER blob is a well formed EncryptedPrivateKeyInfo (SAT .key files are)."""
    try:
        _, rest = der_decode(key_der, asn1Spec=EncryptedPrivateKeyInfo())
    except PyAsn1Error:
        return False
    return not rest


def load_certificate(data: bytes) -> x509.Certificate:
    """Loads a CSD certificate, DER (.cer as issued by SAT) or PEM."""
    try:
        if _is_pem(data):
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise SigningError(f"Certificado invalido: {e}") from e


def load_private_key(data: bytes, passphrase: Optional[str]) -> rsa.RSAPrivateKey:
    """
    Loads the CSD private key.

    A wrong or missing passphrase on a well formed encrypted key raises
    CredentialError; anything that is not a readable key raises SigningError.
    """
    pem = _is_pem(data)
    encrypted = b"ENCRYPTED" in data.lstrip()[:100] if pem else is_encrypted_pkcs8(data)

    if encrypted and not passphrase:
        raise CredentialError("Falta la contraseña de la llave privada")

    password = passphrase.encode("utf-8") if encrypted else None
    loader = serialization.load_pem_private_key if pem else serialization.load_der_private_key
    try:
        key = loader(data, password=password)
    except ValueError as e:
        if encrypted:
            raise CredentialError("La contraseña de la llave privada es incorrecta") from e
        raise SigningError("Llave privada invalida o dañada") from e
    except (TypeError, UnsupportedAlgorithm) as e:
        raise SigningError(f"Llave privada no soportada: {e}") from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise SigningError("La llave privada del CSD debe ser RSA")
    return key


def ensure_pair(certificate: x509.Certificate, key: rsa.RSAPrivateKey) -> None:
    if certificate.public_key().public_numbers() != key.public_key().public_numbers():
        raise CredentialError("El certificado y la llave privada no corresponden")


def certificate_number(certificate: x509.Certificate) -> str:
    """
    SAT serial number (NoCertificado).

    SAT encodes the 20 digit number as ASCII in the serial, so the hex pairs
    decode to digits; other certificates fall back to the decimal serial.
    """
    serial_hex = format(certificate.serial_number, "x")
    if len(serial_hex) % 2:
        serial_hex = "0" + serial_hex
    try:
        decoded = bytes.fromhex(serial_hex).decode("ascii")
    except UnicodeDecodeError:
        return str(certificate.serial_number)
    if decoded.isdigit():
        return decoded
    return str(certificate.serial_number)


def certificate_rfc(certificate: x509.Certificate) -> Optional[str]:
    """RFC stored in x500UniqueIdentifier, e.g. 'EKU9003173C9 / VADA800927DJ3'."""
    attrs = certificate.subject.get_attributes_for_oid(NameOID.X500_UNIQUE_IDENTIFIER)
    if not attrs:
        return None
    value = attrs[0].value
    if isinstance(value, bytes):
        value = value.decode("utf-8", "ignore")
    return value.split("/")[0].strip().upper() or None


def certificate_name(certificate: x509.Certificate) -> Optional[str]:
    attrs = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return attrs[0].value if attrs else None


def certificate_base64(certificate: x509.Certificate) -> str:
    der = certificate.public_bytes(serialization.Encoding.DER)
    return base64.b64encode(der).decode("ascii")


def certificate_pem(certificate: x509.Certificate) -> str:
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


def private_key_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode("ascii")


def validity(certificate: x509.Certificate):
    """(valid_from, valid_to) as naive UTC datetimes."""
    return (certificate.not_valid_before_utc.replace(tzinfo=None),
            certificate.not_valid_after_utc.replace(tzinfo=None))


def inspect_csd(cer: bytes, key: Optional[bytes] = None, passphrase: Optional[str] = None) -> dict:
    """
    Summary of a CSD for onboarding screens. When the key is given it is
    loaded and checked against the certificate.
    """
    certificate = load_certificate(cer)
    valid_from, valid_to = validity(certificate)
    info = {
        "certificate_number": certificate_number(certificate),
        "rfc": certificate_rfc(certificate),
        "name": certificate_name(certificate),
        "valid_from": valid_from,
        "valid_to": valid_to,
        "expired": valid_to < datetime.now(timezone.utc).replace(tzinfo=None),
        "pair_matches": None,
    }
    if key is not None:
        ensure_pair(certificate, load_private_key(key, passphrase))
        info["pair_matches"] = True
    return info
