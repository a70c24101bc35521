"""HTTP surface: workstation sessions, scanning and error mapping."""
import pytest
from fastapi.testclient import TestClient

from rebin import db
from rebin.main import app
from rebin.storage import registry


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    db.dispose_db()
    registry.clear()
    with TestClient(app) as c:
        yield c
    registry.clear()


@pytest.fixture
def station(client, two_grid_snapshot):
    r = client.post("/api/auth/login", json={"workstation_id": "WS-1", "snapshot": two_grid_snapshot})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json()['token']}"}


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_station_requires_token(client):
    assert client.get("/api/station").status_code == 401
    r = client.get("/api/station", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


def test_login_returns_station_summary(client, two_grid_snapshot):
    r = client.post("/api/auth/login", json={"workstation_id": " WS-2 ", "snapshot": two_grid_snapshot})
    body = r.json()
    assert body["success"] is True
    assert body["workstation_id"] == "WS-2"
    assert body["station"]["stats"] == {"empty": 1, "active": 1, "complete": 0}
    assert body["station"]["action_allowed"] is True


def test_login_with_malformed_snapshot(client):
    r = client.post("/api/auth/login", json={"workstation_id": "WS-1", "snapshot": {"errors": [{"message": "no station"}]}})
    assert r.status_code == 422
    assert r.json()["detail"]["code"] == "MALFORMED_SNAPSHOT"
    assert registry.load("WS-1") is None


def test_scan_flow_reports_completion(client, station):
    r = client.post("/api/station/source", json={"code": "c1"}, headers=station)
    assert r.status_code == 200
    assert r.json() == {"source_container": "C1", "skus": ["A"], "source_complete": False}

    client.post("/api/station/scan", json={"code": "A"}, headers=station)
    r = client.post("/api/station/scan", json={"code": "A"}, headers=station)
    assert r.status_code == 200
    body = r.json()
    assert body["grid_id"] == "GRID-01"
    assert body["events"] == ["scan", "grid_complete", "wave_complete", "container_complete"]
    assert set(body["feedback"]) == {"drop", "order", "wave"}

    history = client.get("/api/station/history", headers=station).json()
    assert history["codes"] == ["A", "A", "C1"]

    inventory = client.get("/api/station/inventory", headers=station).json()
    assert inventory["source_complete"] is True
    assert inventory["containers"][0]["skus"][0]["done"] is True


def test_rejections_map_to_status_codes(client, station):
    r = client.post("/api/station/source", json={"code": "C9"}, headers=station)
    assert r.status_code == 400
    assert r.json()["detail"] == {"code": "SCAN_REJECTED", "message": "Container is not on this station", "detail": "C9"}

    r = client.post("/api/station/scan", json={"code": "A"}, headers=station)
    assert r.status_code == 400

    client.post("/api/station/source", json={"code": "C1"}, headers=station)
    r = client.post("/api/station/scan", json={"code": "B"}, headers=station)
    assert r.status_code == 400
    assert r.json()["detail"]["detail"] == "B"


def test_clear_source(client, station):
    client.post("/api/station/source", json={"code": "C1"}, headers=station)
    r = client.delete("/api/station/source", headers=station)
    assert r.json() == {"source_container": None}
    assert client.get("/api/station", headers=station).json()["source_container"] is None


def test_autofill_and_container_change(client, station):
    r = client.post("/api/station/containers/autofill", json={"containers": ["OUT-1", "OUT-2", "OUT-3"]}, headers=station)
    assert r.json()["filled"] == 2

    r = client.put("/api/station/grids/GRID-01/container", json={"container": "OUT-2"}, headers=station)
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "DUPLICATE_CONTAINER"

    r = client.put("/api/station/grids/GRID-01/container", json={"container": "OUT-7"}, headers=station)
    assert r.status_code == 200
    assert r.json()["dest_container"] == "OUT-7"


def test_resync_blocks_until_snapshot(client, station, two_grid_snapshot):
    client.post("/api/station/source", json={"code": "C1"}, headers=station)
    r = client.post("/api/station/resync", json={"reason": "drop feedback failed"}, headers=station)
    assert r.json()["resync_required"] is True

    r = client.post("/api/station/scan", json={"code": "A"}, headers=station)
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "RESYNC_REQUIRED"

    r = client.post("/api/station/snapshot", json=two_grid_snapshot, headers=station)
    assert r.status_code == 200
    assert r.json()["generation"] == 2
    assert client.post("/api/station/scan", json={"code": "A"}, headers=station).status_code == 200


def test_read_only_station_refuses_scans(client, snapshot, order, item):
    payload = snapshot({1: [order("O1", [item("SKU-A", 1, barcode="A", totes=[("C1", 1, 0)])])]}, sorter_type="VIEWER")
    token = client.post("/api/auth/login", json={"workstation_id": "WS-3", "snapshot": payload}).json()["token"]
    headers = {"Authorization": f"Bearer {token}"}

    client.post("/api/station/source", json={"code": "C1"}, headers=headers)
    r = client.post("/api/station/scan", json={"code": "A"}, headers=headers)
    assert r.status_code == 403
    assert r.json()["detail"]["code"] == "ACCESS_DENIED"


def test_usage_ledger_records_scans(client, station):
    client.post("/api/station/source", json={"code": "C1"}, headers=station)
    client.post("/api/station/scan", json={"code": "A"}, headers=station)
    events = client.get("/api/usage/recent", headers=station).json()
    categories = [e["category"] for e in events]
    assert "SCAN_ACCEPTED" in categories
    assert "STATION_LOGIN" in categories
    assert all(e["workstation_id"] == "WS-1" for e in events)


def test_logout_drops_station(client, station):
    r = client.post("/api/auth/logout", headers=station)
    assert r.json() == {"success": True, "closed": True}
    assert client.get("/api/station", headers=station).status_code == 401


def test_usage_summary_counts_todays_scans(client, station):
    client.post("/api/station/source", json={"code": "C1"}, headers=station)
    client.post("/api/station/scan", json={"code": "A"}, headers=station)
    body = client.get("/api/usage/summary?days=3", headers=station).json()
    assert body["days"] == 3
    assert len(body["series"]) == 3
    assert body["series"][-1]["count"] == 1


def test_usage_summary_only_counts_own_workstation(client, station, two_grid_snapshot):
    token = client.post("/api/auth/login", json={"workstation_id": "WS-2", "snapshot": two_grid_snapshot}).json()["token"]
    other = {"Authorization": f"Bearer {token}"}
    client.post("/api/station/source", json={"code": "C1"}, headers=other)
    assert client.post("/api/station/scan", json={"code": "A"}, headers=other).status_code == 200

    mine = client.get("/api/usage/summary?days=1", headers=station).json()
    theirs = client.get("/api/usage/summary?days=1", headers=other).json()
    assert [day["count"] for day in mine["series"]] == [0]
    assert [day["count"] for day in theirs["series"]] == [1]


def test_login_with_unwrapped_state_field_is_rejected(client, two_grid_snapshot):
    r = client.post(
        "/api/auth/login",
        json={"workstation_id": "WS-4", "snapshot": {"fc_order_assorting_station_state": two_grid_snapshot}},
    )
    assert r.status_code == 422
    assert registry.load("WS-4") is None
