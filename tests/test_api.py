# tests/test_api.py
"""HTTP tests for the tenant-scoped API."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from types import SimpleNamespace
from fastapi.testclient import TestClient
from parksense.database import get_db
from parksense.main import app
from conftest import TENANT, OTHER_TENANT

HEADERS = {"X-Tenant-Id": TENANT, "X-User-Id": "ops@tenant-a"}


@pytest.fixture
def client(session_factory, topology):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def ids(db, topology):
    """Ids read up front; the fixture session must not hold a transaction open during requests."""
    out = SimpleNamespace(zone_id=topology.zone.id, sensor_id=topology.sensors[0].id)
    db.commit()
    return out


class TestTenantScope:
    def test_missing_tenant_is_400(self, client):
        resp = client.get("/api/v1/map")
        assert resp.status_code == 400

    def test_health_needs_no_tenant(self, client):
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["database"] == "ok"

    def test_other_tenant_sees_nothing(self, client):
        resp = client.get("/api/v1/map", headers={"X-Tenant-Id": OTHER_TENANT})
        assert resp.json()["summary"]["total"] == 0


class TestIngestion:
    def test_reading_updates_map_and_occupancy(self, client):
        resp = client.post("/api/v1/events/sensor", headers=HEADERS,
                           json={"deviceId": "SENSOR-1", "status": "occupied"})
        assert resp.status_code == 200
        assert resp.json()["transition"] == "ARRIVE"

        body = client.get("/api/v1/map", headers=HEADERS).json()
        states = {b["bay_code"]: b["state"] for b in body["bays"]}
        assert states["A-1"] == "OCCUPIED"
        assert states["A-3"] == "UNKNOWN"
        s = body["summary"]
        assert s["occupied"] + s["free"] + s["offline"] + s["unknown"] == s["total"] == 4

        zones = {z["name"]: z for z in client.get("/api/v1/occupancy", headers=HEADERS).json()}
        assert zones["Zone A"]["occupied_bays"] == 1
        assert zones["Zone A"]["total_bays"] == 3

        events = client.get("/api/v1/events", headers=HEADERS, params={"dev_eui": "SENSOR-1"}).json()
        assert len(events) == 1

    def test_invalid_reading_is_acknowledged_as_dead_letter(self, client):
        resp = client.post("/api/v1/events/sensor", headers=HEADERS, content=b"not json")
        assert resp.status_code == 200
        assert resp.json()["status"] == "invalid"

        letters = client.get("/api/v1/replay/dead-letters", headers=HEADERS).json()
        assert len(letters) == 1

    def test_unknown_bay_is_404(self, client):
        resp = client.post("/api/v1/events/sensor", headers=HEADERS,
                           json={"deviceId": "SENSOR-1", "bayId": "Z-404", "status": "occupied"})
        assert resp.status_code == 404
        assert resp.json()["entity"] == "bay"


class TestOccupancy:
    def test_reconcile_and_missing_zone(self, client, ids):
        resp = client.post(f"/api/v1/occupancy/{ids.zone_id}/reconcile", headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json()["drift"] == 0
        assert client.get("/api/v1/occupancy/9999", headers=HEADERS).status_code == 404


class TestAlertsAndHealth:
    def test_scan_list_and_acknowledge(self, client):
        scan = client.post("/api/v1/alerts/run", headers=HEADERS).json()
        # no sensor has ever reported → every bound sensor is offline
        assert scan["checked_sensors"] == 3
        assert scan["created"] == 3

        alerts = client.get("/api/v1/alerts", headers=HEADERS, params={"status": "OPEN"}).json()
        assert len(alerts) == 3
        assert all(a["severity"] == "CRITICAL" for a in alerts)

        alert_id = alerts[0]["id"]
        resp = client.patch(f"/api/v1/alerts/{alert_id}", headers=HEADERS, json={"action": "ACKNOWLEDGE"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "ACKNOWLEDGED"
        assert resp.json()["acknowledged_by"] == "ops@tenant-a"

        trail = client.get(f"/api/v1/alerts/{alert_id}/events", headers=HEADERS).json()
        assert [e["action"] for e in trail] == ["OPEN", "ACKNOWLEDGE"]

        listed = client.get("/api/v1/alerts", headers=HEADERS).json()
        assert listed[-1]["id"] == alert_id   # open alerts sort before acknowledged ones

    def test_invalid_action_is_422(self, client):
        client.post("/api/v1/alerts/run", headers=HEADERS)
        resp = client.patch("/api/v1/alerts/1", headers=HEADERS, json={"action": "SNOOZE"})
        assert resp.status_code == 422

    def test_unknown_alert_is_404(self, client):
        resp = client.patch("/api/v1/alerts/4242", headers=HEADERS, json={"action": "RESOLVE"})
        assert resp.status_code == 404

    def test_sensor_health(self, client, ids):
        items = client.get("/api/v1/sensors/health", headers=HEADERS).json()
        assert len(items) == 3
        one = client.get(f"/api/v1/sensors/{ids.sensor_id}/health", headers=HEADERS).json()
        assert 0 <= one["score"] <= 100
        assert one["band"] in ("GOOD", "FAIR", "POOR")
        assert client.get("/api/v1/sensors/9999/health", headers=HEADERS).status_code == 404


class TestReplayAndSettings:
    def test_upload_and_run(self, client):
        upload = client.post("/api/v1/replay/upload", headers=HEADERS, json={
            "filename": "day.json",
            "rows": [
                {"devEui": "SENSOR-2", "time": "2024-05-01T10:00:00Z", "decoded": {"occupied": True}},
                {"devEui": "SENSOR-2", "time": "not-a-time"},
            ],
        }).json()
        assert (upload["valid_events"], upload["invalid_events"]) == (1, 1)

        run = client.post("/api/v1/replay/run", headers=HEADERS, json={"file_id": upload["id"]}).json()
        assert run["inserted"] == 1
        assert run["transitions"] == 1

        done = client.post("/api/v1/replay/run", headers=HEADERS,
                           json={"file_id": upload["id"], "job_id": run["job"]["id"]}).json()
        assert done["job"]["status"] == "DONE"

        letters = client.get("/api/v1/replay/dead-letters", headers=HEADERS,
                             params={"file_id": upload["id"]}).json()
        assert letters[0]["reason"] == "missing/invalid time"

    def test_thresholds_roundtrip(self, client):
        initial = client.get("/api/v1/settings/thresholds", headers=HEADERS).json()
        assert initial["version"] == 0
        assert initial["thresholds"]["offlineMinutes"] == 60

        updated = client.put("/api/v1/settings/thresholds", headers=HEADERS,
                             json={"thresholds": {"offlineMinutes": 30}}).json()
        assert updated["version"] == 1
        assert updated["thresholds"]["offlineMinutes"] == 30
        assert updated["defaults"]["offlineMinutes"] == 60
        assert updated["updated_by"] == "ops@tenant-a"
