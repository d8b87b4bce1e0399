import pytest

from cfdi.cadena import read_timbre
from cfdi.errors import PacRejected, ValidationError
from cfdi.pac.dummy import DummyPacClient
from cfdi.signer import CsdSigner
from cfdi.validator import assemble_invoice
from cfdi.xml_builder import CfdiInvoiceBuilder
from conftest import CSD_PASSPHRASE, make_invoice


@pytest.fixture
def signed_xml(csd_pair, emitter, receiver, line_items):
    cer, key = csd_pair
    signer = CsdSigner(cer, key, CSD_PASSPHRASE)
    builder = CfdiInvoiceBuilder()
    root = builder.build(assemble_invoice(make_invoice(), line_items, emitter, receiver),
                         signer.certificate_number, signer.certificate_b64)
    signer.seal(root)
    return builder.to_bytes(root)


def test_stamp_appends_timbre(signed_xml):
    response = DummyPacClient().stamp(signed_xml)

    timbre = read_timbre(response.stamped_xml)
    assert timbre["uuid"] == response.uuid
    assert timbre["pac_certificate_number"] == response.pac_certificate_number
    assert timbre["seal"] in signed_xml.decode("utf-8")


def test_second_stamp_of_same_document_returns_previous(signed_xml):
    pac = DummyPacClient()
    first = pac.stamp(signed_xml)

    with pytest.raises(PacRejected) as excinfo:
        pac.stamp(signed_xml)

    assert excinfo.value.code == "307"
    assert excinfo.value.recovered.uuid == first.uuid


def test_unsealed_document_is_rejected():
    with pytest.raises(PacRejected) as excinfo:
        DummyPacClient().stamp(b'<cfdi:Comprobante xmlns:cfdi="http://www.sat.gob.mx/cfd/4" Version="4.0"/>')
    assert excinfo.value.code == "302"


def test_cancel_and_status(signed_xml):
    pac = DummyPacClient()
    uuid = pac.stamp(signed_xml).uuid

    assert pac.query_status(uuid, "EKU9003173C9", "URE180429TM6", "1160.00").sat_state == "Vigente"
    with pytest.raises(PacRejected):
        pac.get_receipt(uuid, "EKU9003173C9")
    assert pac.cancel(uuid, "EKU9003173C9", "02").status == "201"
    assert pac.cancel(uuid, "EKU9003173C9", "02").status == "202"
    assert f"UUID=\"{uuid}\"" in pac.get_receipt(uuid.lower(), "EKU9003173C9").acknowledgement
    assert pac.query_status(uuid, "EKU9003173C9", "URE180429TM6", "1160.00").sat_state == "Cancelado"
    assert pac.query_status("00000000-0000-0000-0000-000000000000", "EKU9003173C9", "URE180429TM6",
                            "1.00").sat_state == "No Encontrado"

    with pytest.raises(ValidationError):
        pac.cancel(uuid, "EKU9003173C9", "01")
