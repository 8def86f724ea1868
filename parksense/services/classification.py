# parksense/services/classification.py
"""
Confidence & Classification Engine.

Pure read-time computation: "how old is the last reading" plus battery level
→ a confidence score in [0, 1] and exactly one display state per bay:

  1. no sensor bound                                    → UNKNOWN
  2. age > offlineMinutes (or never reported)           → OFFLINE
  3. confidence < 0.35, age > staleEventMinutes,
     or no boolean `occupied` in the decoded payload    → UNKNOWN
  4. otherwise                                          → OCCUPIED / FREE

Nothing here writes to the database and nothing is cached; results are
recomputed for every listing.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from parksense.models.sensor import Sensor
from parksense.models.sensor_event import SensorEvent
from parksense.models.site import Bay
from parksense.services.thresholds import AlertThresholds
from parksense.utils.json_parser import normalize_json

FREE = "FREE"
OCCUPIED = "OCCUPIED"
OFFLINE = "OFFLINE"
UNKNOWN = "UNKNOWN"
STATES = (OCCUPIED, FREE, OFFLINE, UNKNOWN)

# (max age in minutes, confidence); first matching row wins
CONFIDENCE_STEPS = (
    (2, 0.98),
    (5, 0.90),
    (15, 0.75),
    (60, 0.45),
    (180, 0.25),
)
MIN_CONFIDENCE = 0.10
TRUSTED_CONFIDENCE = 0.35
LOW_BATTERY_PENALTY_PCT = 20
LOW_BATTERY_PENALTY = 0.20

STATE_COLORS = {FREE: "GREEN", OCCUPIED: "RED"}


@dataclass
class BaySnapshot:
    """Everything the classifier needs to know about one bay at read time."""
    bay_id: int
    bay_code: Optional[str] = None
    zone_id: Optional[int] = None
    sensor_id: Optional[int] = None
    dev_eui: Optional[str] = None
    sensor_last_seen: Optional[datetime] = None
    event_time: Optional[datetime] = None
    decoded: Any = None
    battery_pct: Optional[float] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


@dataclass
class BayClassification:
    bay_id: int
    state: str
    confidence: float
    age_minutes: Optional[int]
    last_seen: Optional[datetime]
    bay_code: Optional[str] = None
    zone_id: Optional[int] = None
    sensor_id: Optional[int] = None
    dev_eui: Optional[str] = None
    battery_pct: Optional[float] = None
    lat: Optional[float] = None
    lng: Optional[float] = None

    @property
    def color(self) -> str:
        return STATE_COLORS.get(self.state, "GRAY")


def confidence_from_age(age_minutes: float) -> float:
    """Monotonically non-increasing step function of minutes since the last reading."""
    for max_age, confidence in CONFIDENCE_STEPS:
        if age_minutes <= max_age:
            return confidence
    return MIN_CONFIDENCE


def apply_battery_penalty(confidence: float, battery_pct: Optional[float]) -> float:
    if battery_pct is not None and battery_pct <= LOW_BATTERY_PENALTY_PCT:
        return max(0.0, confidence - LOW_BATTERY_PENALTY)
    return confidence


def age_in_minutes(last_seen: Optional[datetime], now: datetime) -> Optional[int]:
    if last_seen is None:
        return None
    return max(0, math.floor((now - last_seen).total_seconds() / 60))


def decoded_occupancy(decoded: Any) -> Optional[bool]:
    payload = normalize_json(decoded)
    if isinstance(payload, dict) and isinstance(payload.get("occupied"), bool):
        return payload["occupied"]
    return None


def classify_bay(snapshot: BaySnapshot, thresholds: AlertThresholds, now: datetime) -> BayClassification:
    # the latest event time is fresher than sensors.last_seen when both exist
    last_seen = snapshot.event_time or snapshot.sensor_last_seen
    age = age_in_minutes(last_seen, now)
    if age is None:
        confidence = 0.0
    else:
        confidence = apply_battery_penalty(confidence_from_age(age), snapshot.battery_pct)
    occupied = decoded_occupancy(snapshot.decoded)

    if snapshot.sensor_id is None:
        state = UNKNOWN
    elif age is None or age > thresholds.offline_minutes:
        state = OFFLINE
    elif confidence < TRUSTED_CONFIDENCE or age > thresholds.stale_event_minutes or occupied is None:
        state = UNKNOWN
    else:
        state = OCCUPIED if occupied else FREE

    return BayClassification(
        bay_id=snapshot.bay_id,
        state=state,
        confidence=round(confidence, 2),
        age_minutes=age,
        last_seen=last_seen,
        bay_code=snapshot.bay_code,
        zone_id=snapshot.zone_id,
        sensor_id=snapshot.sensor_id,
        dev_eui=snapshot.dev_eui,
        battery_pct=snapshot.battery_pct,
        lat=snapshot.lat,
        lng=snapshot.lng,
    )


def summarize(classifications: Iterable[BayClassification]) -> dict:
    """Per-state counts. occupied + free + offline + unknown == total, always."""
    counts = {state.lower(): 0 for state in STATES}
    total = 0
    for item in classifications:
        counts[item.state.lower()] += 1
        total += 1
    counts["total"] = total
    return counts


def load_bay_snapshots(db: Session, tenant_id: str, zone_id: Optional[int] = None,
                       limit: int = 2000) -> List[BaySnapshot]:
    """Bays with their bound sensor and latest event, bounded by `limit` bays."""
    q = (
        db.query(Bay, Sensor)
        .outerjoin(Sensor, (Sensor.bay_id == Bay.id) & (Sensor.tenant_id == tenant_id))
        .filter(Bay.tenant_id == tenant_id)
    )
    if zone_id is not None:
        q = q.filter(Bay.zone_id == zone_id)
    rows = q.order_by(Bay.code, Bay.id).limit(limit).all()

    sensor_ids = [s.id for _, s in rows if s is not None]
    latest = {}
    if sensor_ids:
        newest = (
            db.query(SensorEvent.sensor_id, func.max(SensorEvent.time).label("max_time"))
            .filter(SensorEvent.tenant_id == tenant_id, SensorEvent.sensor_id.in_(sensor_ids))
            .group_by(SensorEvent.sensor_id)
            .subquery()
        )
        events = (
            db.query(SensorEvent)
            .join(newest, (SensorEvent.sensor_id == newest.c.sensor_id) & (SensorEvent.time == newest.c.max_time))
            .filter(SensorEvent.tenant_id == tenant_id)
            .all()
        )
        for e in events:
            if e.sensor_id not in latest or e.id > latest[e.sensor_id].id:
                latest[e.sensor_id] = e

    snapshots = []
    for bay, sensor in rows:
        event = latest.get(sensor.id) if sensor else None
        lat, lng = bay.position()
        snapshots.append(BaySnapshot(
            bay_id=bay.id,
            bay_code=bay.code,
            zone_id=bay.zone_id,
            sensor_id=sensor.id if sensor else None,
            dev_eui=sensor.dev_eui if sensor else None,
            sensor_last_seen=sensor.last_seen if sensor else None,
            event_time=event.time if event else None,
            decoded=event.decoded if event else None,
            battery_pct=sensor.battery_pct if sensor else None,
            lat=lat,
            lng=lng,
        ))
    return snapshots


def classify_bays(db: Session, tenant_id: str, thresholds: AlertThresholds, now: datetime,
                  zone_id: Optional[int] = None, limit: int = 2000):
    """(classifications, summary) for every bay of a tenant or zone."""
    items = [classify_bay(s, thresholds, now) for s in load_bay_snapshots(db, tenant_id, zone_id, limit)]
    return items, summarize(items)
