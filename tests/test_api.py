"""
HTTP surface tests. The lifecycle dependency is replaced by one wired to the
in-memory store and the scripted PAC.
"""
import base64

import pytest
from fastapi.testclient import TestClient

from cfdi.errors import PacRejected, PacUnavailable
from dependencies import get_lifecycle
from main import app
from conftest import make_payment


@pytest.fixture
def client(lifecycle):
    app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200


def test_preview(client):
    response = client.get("/invoices/INV-1/preview")

    assert response.status_code == 200
    body = response.json()
    assert body["messages"] == []
    assert body["totals"]["total"] == "1160.00"
    assert body["xml"].startswith("<?xml")


def test_unknown_invoice_is_404(client):
    assert client.get("/invoices/NOPE/preview").status_code == 404
    assert client.post("/invoices/NOPE/stamp").status_code == 404


def test_stamp_then_conflict(client):
    response = client.post("/invoices/INV-1/stamp")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["state"] == "stamped"
    assert body["uuid"]

    assert client.post("/invoices/INV-1/stamp").status_code == 409
    assert client.post("/invoices/INV-1/retry").status_code == 409


def test_stamp_failures(client, pac):
    pac.fail_next("stamp", PacUnavailable("Tiempo de espera agotado"))
    outage = client.post("/invoices/INV-1/stamp")
    assert outage.status_code == 503
    assert outage.json()["detail"]["error"]["retriable"] is True

    pac.fail_next("stamp", PacRejected("[CFDI40138] Regimen incompatible"))
    rejected = client.post("/invoices/INV-1/retry")
    assert rejected.status_code == 502
    assert rejected.json()["detail"]["error"]["code"] == "CFDI40138"

    assert client.post("/invoices/INV-1/retry").status_code == 200


def test_cancel(client):
    assert client.post("/invoices/INV-1/cancel", json={"reason": "02"}).status_code == 409

    client.post("/invoices/INV-1/stamp")
    assert client.post("/invoices/INV-1/cancel", json={"reason": "01"}).status_code == 422

    response = client.post("/invoices/INV-1/cancel", json={"reason": "02"})
    assert response.status_code == 200
    assert response.json()["state"] == "cancelled"

    assert client.post("/invoices/INV-1/cancel", json={"reason": "02"}).status_code == 409


def test_cancellation_receipt(client):
    assert client.get("/invoices/INV-1/cancellation-receipt").status_code == 409

    client.post("/invoices/INV-1/stamp")
    assert client.get("/invoices/INV-1/cancellation-receipt").status_code == 502

    cancelled = client.post("/invoices/INV-1/cancel", json={"reason": "03"}).json()
    response = client.get("/invoices/INV-1/cancellation-receipt")

    assert response.status_code == 200
    assert response.json()["acknowledgement"] == cancelled["acknowledgement"]


def test_status(client):
    client.post("/invoices/INV-1/stamp")

    response = client.get("/invoices/INV-1/status")

    assert response.status_code == 200
    assert response.json()["sat_state"] == "Vigente"


def test_payment_complement(client, storage):
    client.post("/invoices/INV-PPD/stamp")
    storage.add_payment(make_payment("PAY-1", "400.00"))

    response = client.post("/payments/PAY-1/complement")

    assert response.status_code == 200
    assert response.json()["uuid"]
    assert client.post("/payments/PAY-1/complement").status_code == 409
    assert client.post("/payments/NOPE/complement").status_code == 404


def test_inspect_csd(client, csd_pair):
    cer, _ = csd_pair

    response = client.post("/onboarding/csd/inspect", json={"cer_base64": base64.b64encode(cer).decode()})

    assert response.status_code == 200
    assert response.json()["certificate_number"] == "30001000000500003416"
    assert response.json()["rfc"] == "EKU9003173C9"


def test_inspect_csd_rejects_bad_input(client, csd_pair):
    cer, key = csd_pair
    assert client.post("/onboarding/csd/inspect", json={"cer_base64": "%%%"}).status_code == 422

    response = client.post("/onboarding/csd/inspect", json={
        "cer_base64": base64.b64encode(cer).decode(),
        "key_base64": base64.b64encode(key).decode(),
        "passphrase": "wrong",
    })
    assert response.status_code == 422
