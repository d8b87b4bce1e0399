"""Finkok client response handling with the SOAP layer replaced by canned responses."""
from types import SimpleNamespace

import pytest
import requests

from cfdi.errors import PacRejected, PacUnavailable, ValidationError
from cfdi.pac.finkok import FINKOK_URLS, FinkokPacClient, FinkokRegistrationClient
from dependencies import build_pac, get_registration_client

UUID = "5FB2822E-396C-4725-8D1C-B9F7E0C2B3A1"
STAMPED_XML = "<cfdi:Comprobante xmlns:cfdi='http://www.sat.gob.mx/cfd/4'/>"


class FakeFactory:
    def UUID(self):
        return SimpleNamespace(UUID=None, Motivo=None, FolioSustitucion=None)

    def UUIDArray(self, item):
        return SimpleNamespace(UUID=[item])


class FakeSoapClient:
    def type_factory(self, namespace):
        assert namespace == "apps.services.soap.core.views"
        return FakeFactory()


@pytest.fixture
def client(monkeypatch):
    pac = FinkokPacClient("user@example.com", "secret", "demo", timeout=5)
    pac.responses = {}
    pac.sent = []

    def fake_call(service, operation, *args, **kwargs):
        pac.sent.append((service, operation, args, kwargs))
        response = pac.responses[operation]
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(pac, "_call", fake_call)
    monkeypatch.setattr(pac, "_client", lambda service: FakeSoapClient())
    return pac


def incidencias(code, message):
    return SimpleNamespace(Incidencia=[SimpleNamespace(CodigoError=code, MensajeIncidencia=message)])


def test_unknown_environment():
    with pytest.raises(ValueError):
        FinkokPacClient("u", "p", "staging")


def test_stamp_ok(client):
    client.responses["stamp"] = SimpleNamespace(
        xml=STAMPED_XML, UUID=UUID, SatSeal="SELLOSAT", NoCertificadoSAT="30001000000400002495",
        Fecha="2025-01-15T10:31:02", CodEstatus="Comprobante timbrado satisfactoriamente", Incidencias=None,
    )

    response = client.stamp(b"<xml/>")

    assert response.uuid == UUID
    assert response.stamped_xml == STAMPED_XML
    assert response.pac_seal == "SELLOSAT"
    assert response.stamped_at.year == 2025
    assert client.sent[0][2] == (b"<xml/>", "user@example.com", "secret")


def test_stamp_rejected_with_incident(client):
    client.responses["stamp"] = SimpleNamespace(
        xml=None, UUID=None, Incidencias=incidencias("CFDI40138", "El regimen no corresponde con el uso"),
    )

    with pytest.raises(PacRejected) as excinfo:
        client.stamp(b"<xml/>")

    assert excinfo.value.code == "CFDI40138"
    assert excinfo.value.message == "[CFDI40138] El regimen no corresponde con el uso"
    assert excinfo.value.recovered is None


def test_already_stamped_recovers_previous_stamp(client):
    client.responses["stamp"] = SimpleNamespace(xml=None, UUID=None,
                                                Incidencias=incidencias("307", "El CFDI contiene un timbre previo"))
    client.responses["stamped"] = SimpleNamespace(xml=STAMPED_XML, UUID=UUID, SatSeal=None,
                                                  NoCertificadoSAT=None, Fecha=None)

    with pytest.raises(PacRejected) as excinfo:
        client.stamp(b"<xml/>")

    assert excinfo.value.already_stamped
    assert excinfo.value.recovered.uuid == UUID


def test_already_stamped_without_recovery(client):
    client.responses["stamp"] = SimpleNamespace(xml=None, UUID=None,
                                                Incidencias=incidencias("307", "El CFDI contiene un timbre previo"))
    client.responses["stamped"] = PacUnavailable("timeout")

    with pytest.raises(PacRejected) as excinfo:
        client.stamp(b"<xml/>")

    assert excinfo.value.already_stamped
    assert excinfo.value.recovered is None


def test_cancel_ok(client):
    client.responses["cancel"] = SimpleNamespace(
        Folios=SimpleNamespace(Folio=[SimpleNamespace(EstatusUUID="201", EstatusCancelacion=None)]),
        Acuse=b"<Acuse/>", Fecha="2025-01-16T09:00:00", Incidencias=None,
    )

    response = client.cancel(UUID.lower(), "EKU9003173C9", "02")

    assert response.status == "201"
    assert response.acknowledgement == "<Acuse/>"
    _, operation, args, _ = client.sent[0]
    assert operation == "cancel"
    docs, user, password, rfc, cer, key = args
    assert docs.UUID[0].UUID == UUID
    assert docs.UUID[0].Motivo == "02"
    assert (user, rfc, cer, key) == ("user@example.com", "EKU9003173C9", None, None)


def test_cancel_with_substitute(client):
    client.responses["cancel"] = SimpleNamespace(
        Folios=SimpleNamespace(Folio=SimpleNamespace(EstatusUUID="202", EstatusCancelacion=None)),
        Acuse=None, Fecha=None, Incidencias=None,
    )
    substitute = "11111111-2222-3333-4444-555555555555"

    client.cancel(UUID, "EKU9003173C9", "01", substitute)

    docs = client.sent[0][2][0]
    assert docs.UUID[0].FolioSustitucion == substitute


def test_cancel_validates_before_calling(client):
    with pytest.raises(ValidationError):
        client.cancel(UUID, "EKU9003173C9", "01")
    assert client.sent == []


def test_cancel_refused_status(client):
    client.responses["cancel"] = SimpleNamespace(
        Folios=SimpleNamespace(Folio=[SimpleNamespace(EstatusUUID="205", EstatusCancelacion=None)]),
        Acuse=None, Fecha=None, Incidencias=None,
    )

    with pytest.raises(PacRejected) as excinfo:
        client.cancel(UUID, "EKU9003173C9", "02")

    assert excinfo.value.code == "205"


def test_query_status(client):
    client.responses["get_sat_status"] = SimpleNamespace(
        error=None,
        sat=SimpleNamespace(Estado="Vigente", EsCancelable="Cancelable sin aceptación",
                            EstatusCancelacion=None, CodigoEstatus="S - Comprobante obtenido satisfactoriamente."),
    )

    status = client.query_status(UUID, "EKU9003173C9", "URE180429TM6", "1160.00")

    assert status.sat_state == "Vigente"
    assert status.cancellable
    assert client.sent[0][3]["total"] == "1160.00"


def test_query_status_error(client):
    client.responses["get_sat_status"] = SimpleNamespace(error="UUID no encontrado", sat=None)

    with pytest.raises(PacRejected):
        client.query_status(UUID, "EKU9003173C9", "URE180429TM6", "1160.00")


def test_transport_failures_are_unavailable(monkeypatch):
    pac = FinkokPacClient("u", "p", "demo", timeout=1)

    class Service:
        def stamp(self, *args):
            raise requests.Timeout("read timed out")

    monkeypatch.setattr(pac, "_client", lambda service: SimpleNamespace(service=Service()))

    with pytest.raises(PacUnavailable):
        pac.stamp(b"<xml/>")


def test_registration_upload(monkeypatch):
    registration = FinkokRegistrationClient("reseller", "pw", "demo")
    sent = {}

    def fake_call(service, operation, **kwargs):
        sent.update(kwargs, service=service, operation=operation)
        return SimpleNamespace(success=True, message="Account Updated successfully")

    monkeypatch.setattr(registration._pac, "_call", fake_call)

    result = registration.upload_csd("eku9003173c9", b"cer", b"key", "12345678a")

    assert result["success"]
    assert sent["operation"] == "edit"
    assert sent["taxpayer_id"] == "EKU9003173C9"
    assert sent["cer"] == "Y2Vy"


def test_get_receipt(client):
    client.responses["get_receipt"] = SimpleNamespace(
        success=True, receipt="<Acuse UUID='%s'/>" % UUID, date="2025-01-16T09:00:00", error=None,
    )

    response = client.get_receipt(UUID.lower(), "EKU9003173C9")

    assert response.acknowledgement == "<Acuse UUID='%s'/>" % UUID
    assert response.cancelled_at.isoformat() == "2025-01-16T09:00:00"
    service, operation, _, kwargs = client.sent[0]
    assert (service, operation) == ("cancel", "get_receipt")
    assert kwargs["uuid"] == UUID
    assert kwargs["taxpayer_id"] == "EKU9003173C9"
    assert kwargs["type"] == "C"


def test_get_receipt_missing(client):
    client.responses["get_receipt"] = SimpleNamespace(success=False, receipt=None, date=None,
                                                      error="No se encontro el acuse")

    with pytest.raises(PacRejected) as excinfo:
        client.get_receipt(UUID, "EKU9003173C9")
    assert "acuse" in excinfo.value.message


def test_environment_selects_finkok_endpoints():
    """Test: production signing goes with production Finkok, for stamping and for CSD registration"""
    assert build_pac("finkok", environment="production").urls == FINKOK_URLS["production"]
    assert build_pac("finkok", environment="demo").urls == FINKOK_URLS["demo"]
    assert get_registration_client("production")._pac.urls == FINKOK_URLS["production"]
