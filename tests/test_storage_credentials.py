import json
import threading
from decimal import Decimal

import pytest

from cfdi.credentials import DirectoryCredentialsProvider
from cfdi.errors import CredentialError, NotFound
from cfdi.models import FiscalState
from cfdi.orchestrator import CfdiLifecycle
from cfdi.storage import JsonFileStorage, load_fixture
from conftest import CSD_PASSPHRASE, CSD_RFC, ScriptedPac


def test_json_storage_survives_reload(tmp_path, storage):
    path = str(tmp_path / "store.json")
    saved = JsonFileStorage(path)
    saved.add_party("emitter", storage.get_party("emitter"))
    saved.add_party("receiver", storage.get_party("receiver"))
    saved.add_invoice(storage.get_invoice("INV-1"), storage.get_line_items("INV-1"))

    reloaded = JsonFileStorage(path)

    invoice = reloaded.get_invoice("INV-1")
    assert invoice.total == Decimal("1160.00")
    assert invoice.state == FiscalState.DRAFT
    assert reloaded.get_line_items("INV-1")[0].unit_price == Decimal("1000.00")
    with pytest.raises(NotFound):
        reloaded.get_payment("PAY-1")


def test_json_storage_shared_by_threads(tmp_path, emitter):
    """Test: four threads writing to one store leave a complete file and no temp files behind"""
    path = str(tmp_path / "store.json")
    store = JsonFileStorage(path)
    errors = []

    def writer(n):
        try:
            for i in range(50):
                store.add_party(f"party-{n}-{i}", emitter)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(JsonFileStorage(path).parties) == 200
    assert list(tmp_path.glob("*.tmp")) == []


def test_load_fixture(tmp_path):
    fixture = tmp_path / "fixture.json"
    fixture.write_text(json.dumps({
        "parties": {
            "emitter": {"rfc": CSD_RFC, "name": "Escuela Kemper Urgate", "regime": "601", "postal_code": "42501"},
        },
        "invoices": [{
            "invoice_id": "F-1", "folio": "1", "issued_at": "2025-01-15T10:30:00",
            "emitter_id": "emitter", "receiver_id": "emitter",
            "subtotal": "100.00", "tax": "16.00", "total": "116.00",
            "items": [{"description": "Pieza", "quantity": "1", "unit_price": "100.00"}],
        }],
        "payments": [{"payment_id": "P-1", "invoice_id": "F-1", "paid_at": "2025-02-01T12:00:00", "amount": "50"}],
    }), encoding="utf-8")
    storage = JsonFileStorage(str(tmp_path / "store.json"))

    load_fixture(storage, str(fixture))

    assert storage.get_invoice("F-1").total == Decimal("116.00")
    assert storage.get_line_items("F-1")[0].product_key == "01010101"
    assert [p.payment_id for p in storage.get_payments("F-1")] == ["P-1"]


def test_directory_credentials(tmp_path, csd_pair):
    cer, key = csd_pair
    provider = DirectoryCredentialsProvider(str(tmp_path))
    provider.save(CSD_RFC.lower(), "demo", cer, key, CSD_PASSPHRASE)

    credentials = provider.get_active_certificate(CSD_RFC, "demo")

    assert credentials.certificate == cer
    assert credentials.passphrase == CSD_PASSPHRASE
    assert CSD_PASSPHRASE not in repr(credentials)
    with pytest.raises(CredentialError):
        provider.get_active_certificate(CSD_RFC, "production")


def test_lifecycle_with_files(tmp_path, storage, csd_pair):
    """Test: stamping end to end with CSD files on disk and a JSON store"""
    cer, key = csd_pair
    provider = DirectoryCredentialsProvider(str(tmp_path / "csd"))
    provider.save(CSD_RFC, "demo", cer, key, CSD_PASSPHRASE)
    store = JsonFileStorage(str(tmp_path / "store.json"))
    store.add_party("emitter", storage.get_party("emitter"))
    store.add_party("receiver", storage.get_party("receiver"))
    store.add_invoice(storage.get_invoice("INV-1"), storage.get_line_items("INV-1"))

    result = CfdiLifecycle(store, provider, ScriptedPac(), environment="demo").stamp("INV-1")

    assert result.success
    assert JsonFileStorage(str(tmp_path / "store.json")).get_invoice("INV-1").uuid == result.uuid
