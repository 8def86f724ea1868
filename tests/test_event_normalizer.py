# tests/test_event_normalizer.py
"""Unit tests for reading validation, dedup and dead-letter routing."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from datetime import datetime
from parksense.errors import ReadingValidationError
from parksense.models.ingest import DeadLetter, IngestEvent
from parksense.models.sensor import Gateway, Sensor
from parksense.models.sensor_event import SensorEvent
from parksense.services.event_normalizer import (
    REASON_MISSING_DEVICE, REASON_MISSING_TIME, decode_payload, ensure_gateway, ensure_sensor,
    insert_event, normalize_sensor_type, reading_from_staged, stage_upload, touch_sensor, validate_reading,
)
from conftest import TENANT, OTHER_TENANT

NOW = datetime(2024, 5, 1, 12, 0, 0)


class TestValidateReading:
    def test_live_shape(self):
        r = validate_reading({
            "deviceId": "ABC", "zoneId": 7, "bayId": "A-1", "status": "occupied",
            "battery": 87, "signal": -98, "snr": 6.5, "mode": "magnetic",
            "receivedAt": "2024-05-01T10:00:00Z", "gateway": "GW-1",
        })
        assert r.dev_eui == "ABC"
        assert r.time == datetime(2024, 5, 1, 10, 0, 0)
        assert r.occupied is True
        assert r.battery_pct == 87
        assert r.rssi == -98
        assert r.snr == 6.5
        assert r.zone_ref == "7"
        assert r.bay_ref == "A-1"
        assert r.gateway_serial == "GW-1"
        assert r.mode == "magnetic"

    @pytest.mark.parametrize("key", ["deviceId", "sensorId", "devEui", "deveui", "deviceEui"])
    def test_device_id_aliases(self, key):
        assert validate_reading({key: "X1", "time": "2024-05-01T10:00:00"}).dev_eui == "X1"

    @pytest.mark.parametrize("key", ["receivedAt", "time", "timestamp", "ts"])
    def test_time_aliases(self, key):
        assert validate_reading({"devEui": "X1", key: "2024-05-01T10:00:00"}).time == datetime(2024, 5, 1, 10)

    def test_timezone_offset_normalized_to_utc(self):
        r = validate_reading({"devEui": "X1", "time": "2024-05-01T14:00:00+04:00"})
        assert r.time == datetime(2024, 5, 1, 10, 0, 0)

    def test_vacant_status(self):
        r = validate_reading({"devEui": "X1", "time": "2024-05-01T10:00:00", "status": "Vacant"})
        assert r.decoded == {"occupied": False}
        assert r.occupied is False

    def test_no_occupancy_information(self):
        r = validate_reading({"devEui": "X1", "time": "2024-05-01T10:00:00", "decoded": {"temp": 21}})
        assert r.occupied is None

    def test_missing_device_id(self):
        with pytest.raises(ReadingValidationError) as exc:
            validate_reading({"time": "2024-05-01T10:00:00"})
        assert exc.value.reason == REASON_MISSING_DEVICE

    def test_missing_time_without_default(self):
        with pytest.raises(ReadingValidationError) as exc:
            validate_reading({"devEui": "X1"})
        assert exc.value.reason == REASON_MISSING_TIME

    def test_missing_time_uses_default_on_live_path(self):
        assert validate_reading({"devEui": "X1"}, default_time=NOW).time == NOW

    def test_unparseable_time_rejected_even_with_default(self):
        with pytest.raises(ReadingValidationError) as exc:
            validate_reading({"devEui": "X1", "time": "yesterday"}, default_time=NOW)
        assert exc.value.reason == REASON_MISSING_TIME

    def test_non_dict_rejected(self):
        with pytest.raises(ReadingValidationError):
            validate_reading(["not", "an", "object"])

    def test_unknown_sensor_type(self):
        assert normalize_sensor_type("camera") == "UNASSIGNED"
        assert normalize_sensor_type("parking") == "PARKING"


class TestDecodePayload:
    def test_hex_parking_payload(self):
        decoded, warnings = decode_payload("PARKING", "0155")
        assert decoded == {"occupied": True, "batteryPct": 0x55}
        assert warnings == []

    def test_hex_battery_out_of_range_warns(self):
        decoded, warnings = decode_payload("PARKING", "00FF")
        assert decoded["occupied"] is False
        assert warnings

    def test_json_payload(self):
        decoded, _ = decode_payload("OTHER", '{"occupied": true}')
        assert decoded == {"occupied": True}

    def test_unrecognized_payload_kept_raw(self):
        decoded, warnings = decode_payload("PARKING", "hello world")
        assert decoded == {"raw": "hello world"}
        assert warnings

    def test_raw_payload_battery_used_when_not_explicit(self):
        r = validate_reading({"devEui": "X1", "time": "2024-05-01T10:00:00", "type": "PARKING",
                              "payload": "0112"})
        assert r.occupied is True
        assert r.battery_pct == 0x12


class TestPersistence:
    def test_unknown_sensor_auto_provisioned_unbound(self, db):
        sensor = ensure_sensor(db, TENANT, "NEW-1", "WEATHER")
        db.commit()
        assert sensor.id is not None
        assert sensor.bay_id is None and sensor.zone_id is None and sensor.site_id is None
        assert sensor.sensor_type == "WEATHER"
        assert ensure_sensor(db, TENANT, "NEW-1").id == sensor.id

    def test_same_dev_eui_in_two_tenants(self, db):
        a = ensure_sensor(db, TENANT, "SHARED")
        b = ensure_sensor(db, OTHER_TENANT, "SHARED")
        db.commit()
        assert a.id != b.id

    def test_gateway_resolved_once(self, db):
        g1 = ensure_gateway(db, TENANT, "GW-9")
        g2 = ensure_gateway(db, TENANT, "GW-9")
        db.commit()
        assert g1.id == g2.id
        assert db.query(Gateway).count() == 1
        assert ensure_gateway(db, TENANT, None) is None

    def test_duplicate_source_key_is_not_inserted(self, db):
        sensor = ensure_sensor(db, TENANT, "DUP-1")
        reading = validate_reading({"devEui": "DUP-1", "time": "2024-05-01T10:00:00", "status": "occupied"})
        first = insert_event(db, TENANT, sensor, reading, source_file_id="file-1", source_seq=0)
        second = insert_event(db, TENANT, sensor, reading, source_file_id="file-1", source_seq=0)
        db.commit()
        assert first is not None
        assert second is None
        assert db.query(SensorEvent).count() == 1

    def test_live_events_have_no_dedup_key(self, db):
        sensor = ensure_sensor(db, TENANT, "LIVE-1")
        reading = validate_reading({"devEui": "LIVE-1", "time": "2024-05-01T10:00:00"})
        insert_event(db, TENANT, sensor, reading)
        insert_event(db, TENANT, sensor, reading)
        db.commit()
        assert db.query(SensorEvent).count() == 2

    def test_last_seen_never_regresses(self, db):
        sensor = ensure_sensor(db, TENANT, "ORDER-1")
        late = validate_reading({"devEui": "ORDER-1", "time": "2024-05-01T10:30:00", "battery": 80})
        early = validate_reading({"devEui": "ORDER-1", "time": "2024-05-01T10:00:00"})
        touch_sensor(db, sensor, late)
        touch_sensor(db, sensor, early)
        db.commit()
        db.refresh(sensor)
        assert sensor.last_seen == datetime(2024, 5, 1, 10, 30)
        # battery only changes when the reading supplies one
        assert sensor.battery_pct == 80


class TestStageUpload:
    def test_invalid_rows_become_dead_letters(self, db):
        rows = [
            {"devEui": "S1", "time": "2024-05-01T10:00:00", "decoded": {"occupied": True}},
            {"devEui": "S1"},
            {"time": "2024-05-01T10:05:00"},
            {"devEui": "S1", "time": "2024-05-01T10:10:00", "decoded": {"occupied": False}},
        ]
        f = stage_upload(db, TENANT, rows, filename="day1.json")
        assert (f.total_events, f.valid_events, f.invalid_events) == (4, 2, 2)
        assert f.min_time == datetime(2024, 5, 1, 10, 0)
        assert f.max_time == datetime(2024, 5, 1, 10, 10)

        letters = db.query(DeadLetter).order_by(DeadLetter.row_index).all()
        assert [(d.row_index, d.reason) for d in letters] == [(1, REASON_MISSING_TIME), (2, REASON_MISSING_DEVICE)]
        assert letters[0].raw == {"devEui": "S1"}
        assert all(d.file_id == f.id for d in letters)

        staged = db.query(IngestEvent).order_by(IngestEvent.seq).all()
        assert [e.seq for e in staged] == [0, 3]
        assert reading_from_staged(staged[1]).occupied is False

    def test_empty_upload(self, db):
        f = stage_upload(db, TENANT, [])
        assert f.total_events == 0
        assert f.min_time is None
        assert db.query(Sensor).count() == 0
