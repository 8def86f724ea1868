# tests/test_event_dispatcher.py
"""Unit tests for the live ingestion pipeline."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from unittest.mock import MagicMock, patch
from datetime import datetime
from parksense.errors import NotFoundError
from parksense.models.alert import Alert
from parksense.models.ingest import DeadLetter
from parksense.models.sensor import Sensor
from parksense.models.sensor_event import SensorEvent
from parksense.services.event_dispatcher import dispatch_reading
from conftest import TENANT

NOW = datetime(2024, 5, 1, 12, 0, 0)


class TestDispatchWithMocks:
    @pytest.mark.asyncio
    async def test_invalid_reading_becomes_dead_letter(self):
        db = MagicMock()
        result = await dispatch_reading({"status": "occupied"}, TENANT, db, now=NOW)

        assert result == {"status": "invalid", "reason": "missing devEui"}
        letter = db.add.call_args[0][0]
        assert isinstance(letter, DeadLetter)
        assert letter.file_id is None
        db.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_not_found_rolls_back_and_propagates(self):
        db = MagicMock()
        with patch("parksense.services.event_dispatcher.ensure_sensor"), \
             patch("parksense.services.event_dispatcher.ensure_gateway"), \
             patch("parksense.services.event_dispatcher.insert_event"), \
             patch("parksense.services.event_dispatcher.touch_sensor"), \
             patch("parksense.services.event_dispatcher.resolve_binding",
                   side_effect=NotFoundError("bay", "Z-1")):
            with pytest.raises(NotFoundError):
                await dispatch_reading({"deviceId": "D1", "bayId": "Z-1", "status": "occupied"}, TENANT, db, now=NOW)
        db.rollback.assert_called_once()


class TestDispatch:
    @pytest.mark.asyncio
    async def test_arrival_then_departure(self, db, topology):
        arrive = await dispatch_reading({"deviceId": "SENSOR-1", "status": "occupied",
                                         "receivedAt": "2024-05-01T10:00:00Z"}, TENANT, db, now=NOW)
        assert arrive["status"] == "ok"
        assert arrive["transition"] == "ARRIVE"
        assert arrive["bay_status"] == "OCCUPIED"

        leave = await dispatch_reading({"deviceId": "SENSOR-1", "status": "vacant",
                                        "receivedAt": "2024-05-01T10:30:00Z"}, TENANT, db, now=NOW)
        assert leave["transition"] == "LEAVE"
        assert leave["duration_minutes"] == 30
        assert leave["revenue"] == 5.0
        assert db.query(SensorEvent).count() == 2

    @pytest.mark.asyncio
    async def test_redelivery_does_not_double_count(self, db, topology):
        reading = {"deviceId": "SENSOR-2", "status": "occupied", "receivedAt": "2024-05-01T10:00:00Z"}
        first = await dispatch_reading(reading, TENANT, db, now=NOW)
        second = await dispatch_reading(reading, TENANT, db, now=NOW)
        assert first["transition"] == "ARRIVE"
        assert second["transition"] is None
        assert topology.zone.occupied_bays == 1

    @pytest.mark.asyncio
    async def test_missing_received_at_uses_server_time(self, db, topology):
        await dispatch_reading({"deviceId": "SENSOR-1", "status": "occupied"}, TENANT, db, now=NOW)
        assert db.query(SensorEvent).one().time == NOW

    @pytest.mark.asyncio
    async def test_unbound_sensor_keeps_event_but_is_not_found(self, db, topology):
        with pytest.raises(NotFoundError):
            await dispatch_reading({"deviceId": "UNSEEN", "status": "occupied", "battery": 55}, TENANT, db, now=NOW)
        sensor = db.query(Sensor).filter(Sensor.dev_eui == "UNSEEN").one()
        assert sensor.sensor_type == "UNASSIGNED"
        assert sensor.last_seen == NOW
        assert sensor.battery_pct == 55
        assert db.query(SensorEvent).filter(SensorEvent.sensor_id == sensor.id).count() == 1

    @pytest.mark.asyncio
    async def test_explicit_unknown_bay_is_not_found(self, db, topology):
        with pytest.raises(NotFoundError):
            await dispatch_reading({"deviceId": "SENSOR-1", "bayId": "NOPE", "status": "occupied"},
                                   TENANT, db, now=NOW)
        assert topology.zone.occupied_bays == 0

    @pytest.mark.asyncio
    async def test_low_battery_opens_alert_immediately(self, db, topology):
        await dispatch_reading({"deviceId": "SENSOR-1", "status": "occupied", "battery": 9}, TENANT, db, now=NOW)
        alert = db.query(Alert).one()
        assert alert.alert_type == "LOW_BATTERY"
        assert alert.severity == "CRITICAL"
