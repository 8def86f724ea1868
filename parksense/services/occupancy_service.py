# parksense/services/occupancy_service.py
"""
Bay Occupancy State Machine.

Stored bay states: VACANT, OCCUPIED (UNKNOWN is a display classification only,
see classification.py).

  VACANT   → OCCUPIED  on occupied=true:  occupied_since = ts, ARRIVE event, zone +1
  OCCUPIED → VACANT    on occupied=false: duration/revenue, LEAVE event, zone -1
  anything else                          : heartbeat only

Reapplying a reading that matches the stored state is a no-op transition, so
at-least-once delivery is safe. Bay status/heartbeat is last-write-wins; the
zone counter only ever moves through a single atomic SQL delta.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from sqlalchemy import case, func, update
from sqlalchemy.orm import Session

from parksense.errors import NotFoundError
from parksense.models.sensor import Sensor
from parksense.models.sensor_event import ParkingEvent
from parksense.models.site import Bay, Zone
from parksense.services.event_normalizer import NormalizedReading
from parksense.utils.json_parser import utcnow
from parksense.utils.logger import get_logger

logger = get_logger(__name__)

OCCUPIED = "OCCUPIED"
VACANT = "VACANT"


@dataclass
class TransitionResult:
    bay_id: int
    zone_id: int
    previous_status: str
    status: str
    transition: Optional[str] = None        # ARRIVE | LEAVE | None
    duration_minutes: Optional[int] = None
    revenue: Optional[float] = None

    @property
    def state_changed(self) -> bool:
        return self.transition is not None


def compute_duration_minutes(occupied_since: Optional[datetime], leave_time: datetime) -> int:
    """Whole minutes parked, rounded half-up. Zero when the arrival is unknown."""
    if occupied_since is None:
        return 0
    minutes = (leave_time - occupied_since).total_seconds() / 60
    return max(0, int(math.floor(minutes + 0.5)))


def compute_revenue(duration_minutes: int, price_per_hour: Optional[float]) -> Optional[float]:
    """duration/60 × rate rounded to 2 decimals, or None for an unpriced zone."""
    if not price_per_hour:
        return None
    amount = Decimal(duration_minutes) / Decimal(60) * Decimal(str(price_per_hour))
    return float(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _lookup_zone(db: Session, tenant_id: str, ref: str) -> Zone:
    q = db.query(Zone).filter(Zone.tenant_id == tenant_id)
    if ref.isascii() and ref.isdigit():
        zone = q.filter(Zone.id == int(ref)).first()
    else:
        zone = q.filter(Zone.name == ref).first()
    if not zone:
        raise NotFoundError("zone", ref)
    return zone


def _lookup_bay(db: Session, tenant_id: str, ref: str, zone: Optional[Zone]) -> Bay:
    q = db.query(Bay).filter(Bay.tenant_id == tenant_id)
    if zone is not None:
        q = q.filter(Bay.zone_id == zone.id)
    bay = q.filter(Bay.id == int(ref)).first() if ref.isascii() and ref.isdigit() else None
    if bay is None:
        bay = q.filter(Bay.code == ref).first()
    if not bay:
        raise NotFoundError("bay", ref)
    return bay


def resolve_binding(db: Session, tenant_id: str, reading: NormalizedReading,
                    sensor: Optional[Sensor]) -> Tuple[Bay, Zone]:
    """
    (bay, zone) a reading applies to: explicit zoneId/bayId first, else the
    sensor's stored binding. An unresolvable binding is a NotFoundError.
    """
    zone = _lookup_zone(db, tenant_id, reading.zone_ref) if reading.zone_ref else None

    if reading.bay_ref:
        bay = _lookup_bay(db, tenant_id, reading.bay_ref, zone)
    elif sensor is not None and sensor.bay_id is not None:
        bay = db.query(Bay).filter(Bay.tenant_id == tenant_id, Bay.id == sensor.bay_id).first()
        if bay is None or (zone is not None and bay.zone_id != zone.id):
            raise NotFoundError("bay", str(sensor.bay_id))
    else:
        raise NotFoundError("sensor binding", reading.dev_eui)

    if zone is None:
        if bay.zone_id is None:
            raise NotFoundError("zone", None)
        zone = db.query(Zone).filter(Zone.tenant_id == tenant_id, Zone.id == bay.zone_id).first()
        if zone is None:
            raise NotFoundError("zone", str(bay.zone_id))
    return bay, zone


def adjust_zone_counter(db: Session, zone: Zone, delta: int):
    """Atomic occupied_bays += delta (floored at 0) — never read-modify-write."""
    new_value = Zone.occupied_bays + delta
    db.execute(
        update(Zone)
        .where(Zone.id == zone.id)
        .values(occupied_bays=case((new_value < 0, 0), else_=new_value), updated_at=utcnow()),
        execution_options={"synchronize_session": False},
    )
    db.expire(zone, ["occupied_bays", "updated_at"])


def apply_reading(db: Session, tenant_id: str, bay: Bay, zone: Zone, reading: NormalizedReading,
                  sensor_id: Optional[int] = None) -> TransitionResult:
    """
    Run the state machine for one reading. Flushes but does not commit: the
    caller commits the event insert, bay write and counter delta together.
    """
    ts = reading.time
    occupied = reading.occupied
    previous = bay.status
    result = TransitionResult(bay_id=bay.id, zone_id=zone.id, previous_status=previous, status=previous)

    if occupied is True and previous != OCCUPIED:
        bay.status = OCCUPIED
        bay.occupied_since = ts
        bay.last_change = ts
        bay.last_heartbeat = ts
        db.add(ParkingEvent(tenant_id=tenant_id, zone_id=zone.id, bay_id=bay.id, sensor_id=sensor_id,
                            event_type="ARRIVE", timestamp=ts, detection_mode=reading.mode or "dual",
                            created_at=utcnow()))
        adjust_zone_counter(db, zone, +1)
        result.status, result.transition = OCCUPIED, "ARRIVE"
        logger.info(f"[OCCUPANCY] Bay {bay.code or bay.id} ({zone.name}): {previous} → OCCUPIED at {ts}")

    elif occupied is False and previous == OCCUPIED:
        duration = compute_duration_minutes(bay.occupied_since, ts)
        revenue = compute_revenue(duration, zone.price_per_hour)
        bay.status = VACANT
        bay.occupied_since = None
        bay.last_change = ts
        bay.last_heartbeat = ts
        db.add(ParkingEvent(tenant_id=tenant_id, zone_id=zone.id, bay_id=bay.id, sensor_id=sensor_id,
                            event_type="LEAVE", timestamp=ts, detection_mode=reading.mode or "dual",
                            duration_minutes=duration, revenue=revenue, created_at=utcnow()))
        adjust_zone_counter(db, zone, -1)
        result.status, result.transition = VACANT, "LEAVE"
        result.duration_minutes, result.revenue = duration, revenue
        logger.info(f"[OCCUPANCY] Bay {bay.code or bay.id} ({zone.name}): OCCUPIED → VACANT "
                    f"after {duration} min, revenue={revenue}")

    else:
        if occupied is False and previous != VACANT:
            # legacy/unknown stored status: settle to VACANT without a LEAVE
            bay.status = VACANT
            bay.occupied_since = None
            result.status = VACANT
        bay.last_heartbeat = ts

    db.flush()
    return result


def reconcile_zone(db: Session, tenant_id: str, zone_id: int) -> dict:
    """Recount occupied_bays from stored bay statuses and correct any drift."""
    zone = db.query(Zone).filter(Zone.tenant_id == tenant_id, Zone.id == zone_id).first()
    if not zone:
        raise NotFoundError("zone", str(zone_id))

    actual = db.query(func.count(Bay.id)).filter(
        Bay.tenant_id == tenant_id, Bay.zone_id == zone_id, Bay.status == OCCUPIED,
    ).scalar() or 0
    previous = zone.occupied_bays
    zone.occupied_bays = actual
    zone.updated_at = utcnow()
    db.commit()

    drift = previous - actual
    if drift:
        logger.warning(f"[OCCUPANCY] Zone {zone.name} counter drift {drift:+d} corrected ({previous} → {actual})")
    return {"zone_id": zone_id, "previous": previous, "occupied_bays": actual, "drift": drift}
