# tests/test_occupancy_service.py
"""Unit tests for the bay occupancy state machine."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from unittest.mock import MagicMock
from datetime import datetime, timedelta
from parksense.errors import NotFoundError
from parksense.models.sensor_event import ParkingEvent
from parksense.models.site import Bay, Zone
from parksense.services.event_normalizer import NormalizedReading
from parksense.services.occupancy_service import (
    adjust_zone_counter, apply_reading, compute_duration_minutes, compute_revenue, reconcile_zone,
    resolve_binding,
)
from conftest import TENANT, OTHER_TENANT

T0 = datetime(2024, 5, 1, 10, 0, 0)


def make_reading(occupied=True, ts=T0, dev_eui="SENSOR-1", zone_ref=None, bay_ref=None):
    decoded = None if occupied is None else {"occupied": occupied}
    return NormalizedReading(dev_eui=dev_eui, time=ts, sensor_type="PARKING", decoded=decoded,
                             zone_ref=zone_ref, bay_ref=bay_ref)


class TestPureHelpers:
    def test_duration_rounds_half_up(self):
        assert compute_duration_minutes(T0, T0 + timedelta(minutes=30)) == 30
        assert compute_duration_minutes(T0, T0 + timedelta(minutes=30, seconds=29)) == 30
        assert compute_duration_minutes(T0, T0 + timedelta(minutes=30, seconds=30)) == 31

    def test_duration_without_arrival_is_zero(self):
        assert compute_duration_minutes(None, T0) == 0

    def test_duration_never_negative(self):
        assert compute_duration_minutes(T0, T0 - timedelta(minutes=5)) == 0

    def test_revenue(self):
        assert compute_revenue(30, 10.0) == 5.0
        assert compute_revenue(45, 7.5) == 5.63
        assert compute_revenue(0, 10.0) == 0.0

    @pytest.mark.parametrize("rate", [None, 0])
    def test_unpriced_zone_has_no_revenue(self, rate):
        assert compute_revenue(30, rate) is None


class TestStateMachineWithMocks:
    def _bay(self, status="VACANT", since=None):
        bay = MagicMock()
        bay.id, bay.code, bay.status, bay.occupied_since = 1, "A-1", status, since
        return bay

    def _zone(self):
        zone = MagicMock()
        zone.id, zone.name, zone.price_per_hour = 5, "Zone A", 10.0
        return zone

    def test_arrival_records_event_and_counter_delta(self):
        db, bay, zone = MagicMock(), self._bay(), self._zone()
        result = apply_reading(db, TENANT, bay, zone, make_reading(True))

        assert result.transition == "ARRIVE"
        assert bay.status == "OCCUPIED"
        assert bay.occupied_since == T0
        db.add.assert_called_once()
        assert db.add.call_args[0][0].event_type == "ARRIVE"
        db.execute.assert_called_once()   # atomic UPDATE on zones
        db.commit.assert_not_called()     # caller commits

    def test_repeat_occupied_is_heartbeat_only(self):
        db, bay, zone = MagicMock(), self._bay("OCCUPIED", T0), self._zone()
        result = apply_reading(db, TENANT, bay, zone, make_reading(True, T0 + timedelta(minutes=1)))

        assert not result.state_changed
        assert bay.occupied_since == T0
        assert bay.last_heartbeat == T0 + timedelta(minutes=1)
        db.add.assert_not_called()
        db.execute.assert_not_called()

    def test_reading_without_occupancy_is_heartbeat_only(self):
        db, bay, zone = MagicMock(), self._bay("OCCUPIED", T0), self._zone()
        result = apply_reading(db, TENANT, bay, zone, make_reading(None, T0 + timedelta(minutes=2)))
        assert result.status == "OCCUPIED"
        db.execute.assert_not_called()


class TestStateMachine:
    def test_arrive_then_leave_scenario(self, db, topology):
        zone, bay = topology.zone, topology.bays[0]
        before = zone.occupied_bays

        arrive = apply_reading(db, TENANT, bay, zone, make_reading(True, T0))
        db.commit()
        assert arrive.transition == "ARRIVE"
        assert db.get(Zone, zone.id).occupied_bays == before + 1

        leave = apply_reading(db, TENANT, bay, zone, make_reading(False, T0 + timedelta(minutes=30)))
        db.commit()
        assert leave.transition == "LEAVE"
        assert leave.duration_minutes == 30
        assert leave.revenue == 5.0

        db.refresh(bay)
        assert bay.status == "VACANT"
        assert bay.occupied_since is None
        assert bay.last_change == T0 + timedelta(minutes=30)
        assert db.get(Zone, zone.id).occupied_bays == before

        events = db.query(ParkingEvent).order_by(ParkingEvent.id).all()
        assert [e.event_type for e in events] == ["ARRIVE", "LEAVE"]
        assert events[1].duration_minutes == 30
        assert events[1].revenue == 5.0

    def test_free_zone_leave_has_null_revenue(self, db, topology):
        zone, bay = topology.free_zone, topology.free_bay
        apply_reading(db, TENANT, bay, zone, make_reading(True, T0, "SENSOR-F"))
        leave = apply_reading(db, TENANT, bay, zone, make_reading(False, T0 + timedelta(minutes=20), "SENSOR-F"))
        db.commit()
        assert leave.duration_minutes == 20
        assert leave.revenue is None

    def test_redelivery_is_idempotent(self, db, topology):
        zone, bay = topology.zone, topology.bays[0]
        for _ in range(3):
            apply_reading(db, TENANT, bay, zone, make_reading(True, T0))
            db.commit()
        assert db.get(Zone, zone.id).occupied_bays == 1
        assert db.query(ParkingEvent).count() == 1

    def test_occupied_since_invariant(self, db, topology):
        zone, bay = topology.zone, topology.bays[1]
        sequence = [True, True, False, None, False, True, False]
        for i, occupied in enumerate(sequence):
            apply_reading(db, TENANT, bay, zone, make_reading(occupied, T0 + timedelta(minutes=i)))
            db.commit()
            db.refresh(bay)
            assert (bay.occupied_since is not None) == (bay.status == "OCCUPIED")

    def test_counter_floored_at_zero(self, db, topology):
        zone = topology.zone
        adjust_zone_counter(db, zone, -1)
        db.commit()
        assert db.get(Zone, zone.id).occupied_bays == 0


class TestResolveBinding:
    def test_uses_sensor_binding(self, db, topology):
        bay, zone = resolve_binding(db, TENANT, make_reading(), topology.sensors[0])
        assert bay.id == topology.bays[0].id
        assert zone.id == topology.zone.id

    def test_explicit_bay_code_and_zone_name(self, db, topology):
        reading = make_reading(zone_ref="Zone A", bay_ref="A-3")
        bay, zone = resolve_binding(db, TENANT, reading, topology.unbound)
        assert bay.id == topology.bays[2].id

    def test_explicit_ids(self, db, topology):
        reading = make_reading(zone_ref=str(topology.zone.id), bay_ref=str(topology.bays[1].id))
        bay, _ = resolve_binding(db, TENANT, reading, None)
        assert bay.id == topology.bays[1].id

    def test_unknown_bay_is_not_found(self, db, topology):
        with pytest.raises(NotFoundError):
            resolve_binding(db, TENANT, make_reading(bay_ref="Z-99"), topology.sensors[0])

    def test_non_ascii_digit_ref_is_not_found(self, db, topology):
        with pytest.raises(NotFoundError):
            resolve_binding(db, TENANT, make_reading(bay_ref="²"), topology.sensors[0])
        with pytest.raises(NotFoundError):
            resolve_binding(db, TENANT, make_reading(zone_ref="٣"), topology.sensors[0])

    def test_unknown_zone_is_not_found(self, db, topology):
        with pytest.raises(NotFoundError):
            resolve_binding(db, TENANT, make_reading(zone_ref="Nowhere"), topology.sensors[0])

    def test_bay_outside_given_zone_is_not_found(self, db, topology):
        reading = make_reading(zone_ref="Zone F", bay_ref="A-1")
        with pytest.raises(NotFoundError):
            resolve_binding(db, TENANT, reading, None)

    def test_unbound_sensor_is_not_found(self, db, topology):
        with pytest.raises(NotFoundError):
            resolve_binding(db, TENANT, make_reading(dev_eui="SENSOR-FREE"), topology.unbound)

    def test_other_tenant_cannot_see_bays(self, db, topology):
        with pytest.raises(NotFoundError):
            resolve_binding(db, OTHER_TENANT, make_reading(bay_ref="A-1"), None)


class TestReconcile:
    def test_corrects_drift(self, db, topology):
        zone = topology.zone
        db.query(Bay).filter(Bay.id == topology.bays[0].id).update({"status": "OCCUPIED", "occupied_since": T0})
        zone.occupied_bays = 3
        db.commit()

        result = reconcile_zone(db, TENANT, zone.id)
        assert result == {"zone_id": zone.id, "previous": 3, "occupied_bays": 1, "drift": 2}
        assert db.get(Zone, zone.id).occupied_bays == 1

    def test_unknown_zone(self, db, topology):
        with pytest.raises(NotFoundError):
            reconcile_zone(db, TENANT, 9999)
