from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from api import server
from db.config import DatabaseSettings
from db.session import create_db_engine
from honest_broker.backup import CrosswalkBackupManager
from honest_broker.config import BrokerConfig, RegistryConfig
from honest_broker.registry import BrokerRegistry
from honest_broker.store import CrosswalkStore


def _setup_registry(monkeypatch, tmp_path: Path, *brokers: dict) -> BrokerRegistry:
    engine = create_db_engine(DatabaseSettings(url=f"sqlite+pysqlite:///{tmp_path / 'crosswalk.db'}"))
    config = RegistryConfig(brokers=tuple(BrokerConfig(**broker) for broker in brokers))
    registry = BrokerRegistry(CrosswalkStore(engine), config, uid_hash_key="api-test-key")

    # Patch server-level startup functions
    monkeypatch.setattr(server, "build_registry", lambda: registry)
    return registry


def _client(monkeypatch, tmp_path: Path, *brokers: dict) -> TestClient:
    _setup_registry(monkeypatch, tmp_path, *brokers)
    return TestClient(server.create_app())


def test_health_and_listing(monkeypatch, tmp_path):
    client = _client(monkeypatch, tmp_path, {"name": "demo", "naming_scheme": "sequential"})

    assert client.get("/api/health").json() == {"status": "healthy", "brokers": 1}

    response = client.get("/api/brokers")
    assert response.status_code == 200
    data = response.json()
    assert [item["name"] for item in data] == ["demo"]
    assert data[0]["naming_scheme"] == "sequential"
    assert data[0]["mapping_count"] == 0


def test_lookup_and_reverse(monkeypatch, tmp_path):
    client = _client(monkeypatch, tmp_path, {"name": "demo", "naming_scheme": "sequential"})

    response = client.post("/api/brokers/demo/lookup", json={"id_in": "P001"})
    assert response.status_code == 200
    assert response.json() == {"broker_name": "demo", "id_in": "P001", "id_type": "patient_id", "id_out": "SUBJ-0001"}

    repeat = client.post("/api/brokers/demo/test-lookup", json={"id_in": "P001"})
    assert repeat.json()["id_out"] == "SUBJ-0001"

    reverse = client.post("/api/brokers/demo/reverse", json={"id_out": "SUBJ-0001"})
    assert reverse.status_code == 200
    assert reverse.json()["id_in"] == "P001"
    assert reverse.json()["source"] == "store"

    missing = client.post("/api/brokers/demo/reverse", json={"id_out": "SUBJ-9999"})
    assert missing.status_code == 404
    assert missing.json()["detail"]["error"] == "MappingNotFound"


def test_lookup_errors_map_to_status_codes(monkeypatch, tmp_path):
    client = _client(monkeypatch, tmp_path, {"name": "demo"}, {"name": "off", "enabled": False})

    unknown = client.post("/api/brokers/missing/lookup", json={"id_in": "P001"})
    assert unknown.status_code == 404
    assert unknown.json()["detail"]["error"] == "BrokerNotFoundError"

    disabled = client.post("/api/brokers/off/lookup", json={"id_in": "P001"})
    assert disabled.status_code == 409
    assert disabled.json()["detail"]["error"] == "BrokerDisabledError"

    blank = client.post("/api/brokers/demo/lookup", json={"id_in": "   "})
    assert blank.status_code == 400
    assert blank.json()["detail"]["error"] == "InvalidInputError"

    assert client.post("/api/brokers/demo/lookup", json={}).status_code == 422


def test_broker_crud(monkeypatch, tmp_path):
    client = _client(monkeypatch, tmp_path)
    payload = {
        "name": "mda",
        "broker_type": "remote",
        "remote": {"api_host": "hb.example.org", "sts_host": "sts.example.org", "username": "svc", "password": "pw"},
    }

    created = client.post("/api/brokers", json=payload)
    assert created.status_code == 201
    assert created.json()["remote"]["password"] == "********"
    assert client.post("/api/brokers", json=payload).status_code == 409
    assert client.post("/api/brokers", json={"name": "Bad Name"}).status_code == 400

    edited = dict(payload, description="MD Anderson", remote=dict(created.json()["remote"]))
    updated = client.put("/api/brokers/mda", json=edited)
    assert updated.status_code == 200
    assert updated.json()["description"] == "MD Anderson"

    registry = server.build_registry()
    assert registry.get_broker_config("mda").remote.password.get_secret_value() == "pw"
    assert client.get("/api/brokers/mda/config").json()["remote"]["password"] == "********"

    refused = client.delete("/api/brokers/mda")
    assert refused.status_code == 400
    assert refused.json()["detail"]["error"] == "ConfirmationRequiredError"

    deleted = client.delete("/api/brokers/mda", params={"confirm": "true"})
    assert deleted.status_code == 200
    assert deleted.json() == {"broker_name": "mda", "mappings_deleted": 0}
    assert client.get("/api/brokers/mda").status_code == 404


def test_deidentify_date_shift_and_uid_hash(monkeypatch, tmp_path):
    client = _client(
        monkeypatch,
        tmp_path,
        {
            "name": "demo",
            "naming_scheme": "sequential",
            "replace_patient_name": False,
            "date_shift": {"enabled": True, "min_days": 10, "max_days": 10},
            "hash_uids_enabled": True,
        },
    )

    patient = client.post("/api/brokers/demo/deidentify", json={"patient_id": "P001", "patient_name": "Doe^Jane"})
    assert patient.json() == {"patient_id": "SUBJ-0001", "patient_name": "Doe^Jane", "date_shift_days": 10}

    shift = client.get("/api/brokers/demo/date-shift", params={"patient_key": "P001", "value": "20240101"})
    assert shift.json() == {"broker_name": "demo", "days": 10, "shifted": "20240111"}

    hashed = client.post("/api/brokers/demo/hash-uid", json={"uid": "1.2.3.4"})
    assert hashed.status_code == 200
    assert hashed.json()["hashed_uid"].startswith("2.25.")


def test_crosswalk_listing_export_and_stats(monkeypatch, tmp_path):
    client = _client(monkeypatch, tmp_path, {"name": "demo", "naming_scheme": "sequential"})
    client.post("/api/brokers/demo/lookup", json={"id_in": "P001"})
    client.post("/api/brokers/demo/lookup", json={"id_in": "Doe^Jane", "id_type": "patient_name"})

    entries = client.get("/api/brokers/demo/crosswalk").json()
    assert [entry["id_out"] for entry in entries] == ["SUBJ-0001", "NAME-0002"]

    export = client.get("/api/brokers/demo/crosswalk/export")
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    lines = export.text.strip().splitlines()
    assert lines[0] == "idIn,idOut,idType,createdAt"
    assert lines[1].startswith("P001,SUBJ-0001,patient_id,")

    all_lines = client.get("/api/crosswalk/export").text.strip().splitlines()
    assert all_lines[0] == "brokerName,idIn,idOut,idType,createdAt"

    stats = client.get("/api/crosswalk/stats").json()
    assert stats["total_mappings"] == 2
    assert stats["brokers"]["demo"]["by_type"] == {"patient_id": 1, "patient_name": 1}

    logs = client.get("/api/crosswalk/logs", params={"broker": "demo"}).json()
    assert {log["action"] for log in logs} == {"create"}


def test_purge_and_cache_clear(monkeypatch, tmp_path):
    client = _client(monkeypatch, tmp_path, {"name": "demo", "naming_scheme": "sequential"})
    client.post("/api/brokers/demo/lookup", json={"id_in": "P001"})

    assert client.post("/api/brokers/demo/cache/clear").json() == {"caches_cleared": 1}
    assert client.post("/api/brokers/cache/clear").json() == {"caches_cleared": 1}
    assert client.post("/api/brokers/demo/purge").status_code == 400

    purged = client.post("/api/brokers/demo/purge", params={"confirm": "true"})
    assert purged.json() == {"broker_name": "demo", "id_type": None, "mappings_deleted": 1}
    assert client.get("/api/brokers/demo").json()["mapping_count"] == 0


def test_local_connection_test(monkeypatch, tmp_path):
    client = _client(monkeypatch, tmp_path, {"name": "demo"})

    result = client.post("/api/brokers/demo/test-connection").json()
    assert result["success"] is True


def test_backup_routes(monkeypatch, tmp_path):
    registry = _setup_registry(monkeypatch, tmp_path, {"name": "demo", "naming_scheme": "sequential"})
    manager = CrosswalkBackupManager(registry.store.engine, tmp_path / "backups")
    client = TestClient(server.create_app(backup_manager=manager))
    client.post("/api/brokers/demo/lookup", json={"id_in": "P001"})

    created = client.post("/api/crosswalk/backups", json={"note": "nightly"})
    assert created.status_code == 201
    filename = created.json()["filename"]
    assert created.json()["note"] == "nightly"

    client.post("/api/brokers/demo/lookup", json={"id_in": "P002"})
    restored = client.post(f"/api/crosswalk/backups/{filename}/restore")
    assert restored.status_code == 200
    assert client.post("/api/brokers/demo/lookup", json={"id_in": "P002"}).json()["id_out"] == "SUBJ-0002"
    assert registry.store.count("demo") == 2

    listed = client.get("/api/crosswalk/backups").json()
    assert len(listed) == 2

    assert client.post("/api/crosswalk/backups/missing.db/restore").status_code == 400
    assert client.delete(f"/api/crosswalk/backups/{filename}").status_code == 204
    assert client.post("/api/crosswalk/backups/cleanup").json() == {"removed": []}
