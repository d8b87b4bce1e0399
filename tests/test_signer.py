from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives import serialization

from cfdi import csd
from cfdi.errors import CredentialError, SigningError
from cfdi.signer import CsdSigner, verify_document
from cfdi.validator import assemble_invoice
from cfdi.xml_builder import CfdiInvoiceBuilder
from conftest import CSD_PASSPHRASE, make_csd, make_invoice


@pytest.fixture(scope="module")
def signer(csd_pair):
    cer, key = csd_pair
    return CsdSigner(cer, key, CSD_PASSPHRASE)


def test_certificate_number_and_rfc(signer):
    assert signer.certificate_number == "30001000000500003416"
    assert signer.rfc == "EKU9003173C9"
    assert signer.valid_from == datetime(2020, 1, 1)


def test_encrypted_key_detection(csd_pair):
    _, key = csd_pair
    assert csd.is_encrypted_pkcs8(key)
    assert not csd.is_encrypted_pkcs8(b"not a key")


def test_wrong_passphrase_is_a_credential_error(csd_pair):
    cer, key = csd_pair
    with pytest.raises(CredentialError):
        CsdSigner(cer, key, "wrong-pass")
    with pytest.raises(CredentialError):
        CsdSigner(cer, key, None)


def test_garbage_key_is_a_signing_error(csd_pair):
    cer, _ = csd_pair
    with pytest.raises(SigningError):
        CsdSigner(cer, b"\x30\x03\x02\x01\x00", None)
    with pytest.raises(SigningError):
        csd.load_certificate(b"not a certificate")


def test_mismatched_pair(csd_pair):
    cer, _ = csd_pair
    _, other_key = make_csd()
    with pytest.raises(CredentialError):
        CsdSigner(cer, other_key, CSD_PASSPHRASE)


def test_pem_key_is_accepted(csd_pair):
    cer, key = csd_pair
    loaded = csd.load_private_key(key, CSD_PASSPHRASE)
    pem = loaded.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8,
                               serialization.BestAvailableEncryption(CSD_PASSPHRASE.encode("ascii")))
    assert CsdSigner(cer, pem, CSD_PASSPHRASE).rfc == "EKU9003173C9"


def test_sign_and_verify(signer):
    cadena = "||4.0|A|1001||"
    sello = signer.sign(cadena)

    assert signer.sign(cadena) == sello
    assert signer.verify(cadena, sello)
    assert not signer.verify("||4.0|A|1002||", sello)


def test_seal_and_verify_document(signer, emitter, receiver, line_items):
    builder = CfdiInvoiceBuilder()
    root = builder.build(assemble_invoice(make_invoice(), line_items, emitter, receiver))

    cadena = signer.seal(root)

    assert root.get("NoCertificado") == signer.certificate_number
    assert "|30001000000500003416|" in cadena
    xml = builder.to_bytes(root)
    assert verify_document(xml)
    assert not verify_document(xml.replace(b'Total="1160.00"', b'Total="1160.01"'))


def test_emitter_and_validity_guards(signer):
    signer.ensure_emitter("eku9003173c9")
    with pytest.raises(CredentialError) as excinfo:
        signer.ensure_emitter("AAA010101AAA")
    assert excinfo.value.code == "CFDI33102"

    signer.ensure_valid_at(datetime(2025, 1, 15))
    with pytest.raises(CredentialError) as excinfo:
        signer.ensure_valid_at(datetime(2019, 12, 31))
    assert excinfo.value.code == "CFDI33103"


def test_validity_window_uses_utc(signer):
    """Test: Mexico City times are compared in UTC against the CSD vigencia"""
    cdmx = timezone(timedelta(hours=-6))

    signer.ensure_valid_at(datetime(2019, 12, 31, 20, 0, tzinfo=cdmx))
    with pytest.raises(CredentialError):
        signer.ensure_valid_at(datetime(2034, 12, 31, 20, 0, tzinfo=cdmx))


def test_inspect_csd(csd_pair):
    cer, key = csd_pair

    info = csd.inspect_csd(cer, key, CSD_PASSPHRASE)

    assert info["certificate_number"] == "30001000000500003416"
    assert info["rfc"] == "EKU9003173C9"
    assert info["name"] == "ESCUELA KEMPER URGATE SA DE CV"
    assert info["pair_matches"] is True
    assert info["expired"] is False
    assert csd.inspect_csd(cer)["pair_matches"] is None


def test_expired_certificate_is_reported():
    cer, _ = make_csd(not_before=datetime(2015, 1, 1, tzinfo=timezone.utc),
                      not_after=datetime(2019, 1, 1, tzinfo=timezone.utc))
    assert csd.inspect_csd(cer)["expired"] is True
