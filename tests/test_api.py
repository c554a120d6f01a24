"""Tests for the REST API status codes and payload shapes."""

import pytest
from fastapi.testclient import TestClient

from nodesync.config import Settings, configure
from nodesync.db import reset_database
from nodesync.sync.hasher import digest
from nodesync.sync.snapshot import Snapshot
from web.backend.app.main import app
from web.backend.app.services import get_puller, reset_services

from seed import add_domain


@pytest.fixture
def client(database):
    configure(Settings())
    reset_database(database)
    reset_services()
    yield TestClient(app)
    reset_services()
    reset_database(None)


@pytest.fixture
def secured_client(database):
    configure(Settings(admin_token="s3cret"))
    reset_database(database)
    reset_services()
    yield TestClient(app)
    configure(Settings())
    reset_services()
    reset_database(None)


def _register(client, name="edge-1", **extra):
    body = {"name": name, "host": "10.0.0.5", **extra}
    return client.post("/api/slave/nodes", json=body)


# ---------------------------------------------------------------------------
# Meta
# ---------------------------------------------------------------------------


def test_health_check(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy"}


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


def test_register_node(client):
    resp = _register(client, port=3002, syncInterval=30)
    assert resp.status_code == 201
    data = resp.json()
    assert len(data["apiKey"]) == 64
    assert data["status"] == "offline"
    assert data["port"] == 3002

    listed = client.get("/api/slave/nodes").json()
    assert len(listed) == 1
    assert listed[0]["syncInterval"] == 30
    assert "apiKey" not in listed[0]
    assert listed[0]["apiKeyPrefix"] == data["apiKey"][:8]


def test_register_duplicate_is_conflict(client):
    assert _register(client).status_code == 201
    resp = _register(client)
    assert resp.status_code == 409
    assert "already exists" in resp.json()["detail"]


def test_register_bad_port_is_400(client):
    assert _register(client, port=0).status_code == 400


def test_register_short_interval_is_400(client):
    assert _register(client, syncInterval=5).status_code == 400
    assert client.get("/api/slave/nodes").json() == []


def test_register_while_follower_is_conflict(client):
    client.put("/api/system/node-mode", json={"nodeMode": "slave"})
    assert _register(client).status_code == 409


def test_node_crud(client):
    node_id = _register(client).json()["id"]

    resp = client.patch(f"/api/slave/nodes/{node_id}", json={"syncEnabled": False, "host": "10.0.0.9"})
    assert resp.status_code == 200
    assert resp.json()["syncEnabled"] is False
    assert resp.json()["host"] == "10.0.0.9"

    assert client.get(f"/api/slave/nodes/{node_id}").status_code == 200
    assert client.delete(f"/api/slave/nodes/{node_id}").status_code == 200
    assert client.get(f"/api/slave/nodes/{node_id}").status_code == 404
    assert client.delete(f"/api/slave/nodes/{node_id}").status_code == 404


def test_check_stale_endpoint(client):
    resp = client.post("/api/slave/nodes/check-stale")
    assert resp.status_code == 200
    assert resp.json() == {"markedOffline": [], "count": 0}


def test_node_health_probe(client):
    key = _register(client).json()["apiKey"]

    assert client.get("/api/slave/health").status_code == 401
    assert client.get("/api/slave/health", headers={"X-API-Key": "nope"}).status_code == 401

    resp = client.get("/api/slave/health", headers={"X-API-Key": key})
    assert resp.status_code == 200
    assert resp.json()["nodeName"] == "edge-1"
    assert resp.json()["status"] == "healthy"


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


def test_export_auth_codes(client):
    created = _register(client).json()
    key, node_id = created["apiKey"], created["id"]

    assert client.get("/api/node-sync/export").status_code == 401
    assert client.get("/api/node-sync/export", headers={"X-Slave-API-Key": "bad"}).status_code == 401

    client.patch(f"/api/slave/nodes/{node_id}", json={"syncEnabled": False})
    assert client.get("/api/node-sync/export", headers={"X-Slave-API-Key": key}).status_code == 403


def test_export_and_current_hash(client, database):
    add_domain(database, "a.com")
    key = _register(client).json()["apiKey"]

    resp = client.get("/api/node-sync/export", headers={"X-Slave-API-Key": key})
    assert resp.status_code == 200
    body = resp.json()
    assert set(body) == {"hash", "config"}
    assert body["hash"] == digest(body["config"])

    assert client.get("/api/node-sync/current-hash").json() == {"hash": body["hash"]}

    node = client.get("/api/slave/nodes").json()[0]
    assert node["status"] == "online"
    assert node["configHash"] == body["hash"]


def test_import_requires_follower(client):
    snapshot = Snapshot.from_dict({})
    resp = client.post("/api/node-sync/import", json={"hash": digest(snapshot), "config": snapshot.to_dict()})
    assert resp.status_code == 409


def test_import_on_follower(client):
    client.put("/api/system/node-mode", json={"nodeMode": "follower"})
    config = Snapshot.from_dict({"domains": [{"name": "a.com"}]}).to_dict()
    config_hash = digest(config)

    first = client.post("/api/node-sync/import", json={"hash": config_hash, "config": config})
    assert first.status_code == 200
    assert first.json()["imported"] is True
    assert first.json()["changes"] == 1

    second = client.post("/api/node-sync/import", json={"hash": config_hash, "config": config}).json()
    assert second == {"imported": False, "hash": config_hash, "changes": 0}


def test_import_during_sync_is_conflict(client):
    client.put("/api/system/node-mode", json={"nodeMode": "follower"})
    config = Snapshot.from_dict({"domains": [{"name": "a.com"}]}).to_dict()

    puller = get_puller()
    puller._lock.acquire()
    try:
        resp = client.post("/api/node-sync/import", json={"hash": digest(config), "config": config})
    finally:
        puller._lock.release()

    assert resp.status_code == 409
    assert client.get("/api/node-sync/current-hash").json()["hash"] != digest(config)


def test_import_bad_body_is_400(client):
    client.put("/api/system/node-mode", json={"nodeMode": "follower"})
    assert client.post("/api/node-sync/import", json={"config": {}}).status_code == 400
    assert client.post("/api/node-sync/import", json={"hash": "x" * 64, "config": {}}).status_code == 400


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


def test_system_config_defaults(client):
    data = client.get("/api/system/config").json()
    assert data["role"] == "leader"
    assert data["connected"] is False
    assert data["syncInterval"] == 60


def test_node_mode_switch(client):
    resp = client.put("/api/system/node-mode", json={"nodeMode": "follower"})
    assert resp.status_code == 200
    assert resp.json()["role"] == "follower"

    assert client.put("/api/system/node-mode", json={"nodeMode": "observer"}).status_code == 400


def test_node_mode_stale_version_is_conflict(client):
    version = client.get("/api/system/config").json()["version"]
    client.put("/api/system/node-mode", json={"nodeMode": "follower", "expectedVersion": version})
    resp = client.put("/api/system/node-mode", json={"nodeMode": "leader", "expectedVersion": version})
    assert resp.status_code == 409


def test_connect_validation(client):
    client.put("/api/system/node-mode", json={"nodeMode": "follower"})
    resp = client.post("/api/system/connect", json={"host": "leader", "apiKey": "k", "syncInterval": 5})
    assert resp.status_code == 400


def test_connect_while_leader_is_conflict(client):
    resp = client.post("/api/system/connect", json={"host": "leader", "apiKey": "k"})
    assert resp.status_code == 409


def test_sync_while_leader_is_conflict(client):
    assert client.post("/api/system/sync").status_code == 409


# ---------------------------------------------------------------------------
# Admin token
# ---------------------------------------------------------------------------


def test_admin_token_required_when_configured(secured_client):
    assert secured_client.get("/api/slave/nodes").status_code == 401
    assert secured_client.get("/api/system/config").status_code == 401

    headers = {"Authorization": "Bearer wrong"}
    assert secured_client.get("/api/slave/nodes", headers=headers).status_code == 401

    headers = {"Authorization": "Bearer s3cret"}
    assert secured_client.get("/api/slave/nodes", headers=headers).status_code == 200
    assert secured_client.get("/health").status_code == 200


def test_node_endpoints_do_not_need_admin_token(secured_client):
    headers = {"Authorization": "Bearer s3cret"}
    key = secured_client.post(
        "/api/slave/nodes", json={"name": "edge-1", "host": "10.0.0.5"}, headers=headers
    ).json()["apiKey"]

    assert secured_client.get("/api/slave/health", headers={"X-API-Key": key}).status_code == 200
    assert secured_client.get("/api/node-sync/export", headers={"X-Slave-API-Key": key}).status_code == 200
