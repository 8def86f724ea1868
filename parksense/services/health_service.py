# parksense/services/health_service.py
"""
Sensor Health Scorer.

Collects per-sensor metrics over bounded trailing windows and folds them into a
single 0–100 score (lower is worse). Read-only; safe to call in parallel and
against a slightly stale snapshot.

Score = 100 − Σ penalties, clamped to [0, 100]:

  signal    ≤ 25   15 × ramp(avg RSSI from floor+10 dB down to floor)
                   + 10 × ramp(avg SNR from floor+5 dB down to floor)
  battery   ≤ 30   30 at ≤ 10 %, 15 at ≤ lowBatteryPct
  drain     ≤ 25   8 at ≥ 2 %/day, 15 at ≥ 3 %/day, 25 at ≥ 5 %/day
  flapping  ≤ 20   20 × min(1, flaps ÷ flappingMaxChanges)
  samples   ≤ 10   10 × shortfall below signalMinSamples
  freshness ≤ 60   20 past 15 min, 35 past 60 min, 60 past offlineMinutes

Every penalty is non-decreasing in how bad its input is, so the score is
monotonic in each input. A missing input (None) contributes no penalty.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from parksense.models.sensor import Sensor
from parksense.models.sensor_event import SensorEvent
from parksense.services.classification import age_in_minutes, decoded_occupancy
from parksense.services.thresholds import AlertThresholds
from parksense.utils.logger import get_logger

logger = get_logger(__name__)

BATTERY_WINDOW_DAYS = 7
CRITICAL_BATTERY_PCT = 10
# (min drain % per day, penalty); first matching row wins
DRAIN_STEPS = ((5.0, 25), (3.0, 15), (2.0, 8))
FLAP_ROW_LIMIT = 2000


@dataclass
class SensorHealthMetrics:
    days_in_use: Optional[int] = None
    last_seen: Optional[datetime] = None
    age_minutes: Optional[int] = None
    last_rssi: Optional[float] = None
    last_snr: Optional[float] = None
    avg_rssi: Optional[float] = None
    avg_snr: Optional[float] = None
    signal_samples: Optional[int] = None
    battery_pct: Optional[float] = None
    min_battery: Optional[float] = None
    max_battery: Optional[float] = None
    min_battery_time: Optional[datetime] = None
    max_battery_time: Optional[datetime] = None
    battery_drain_per_day: Optional[float] = None
    flap_changes: Optional[int] = None

    def as_dict(self) -> dict:
        return asdict(self)


def _ramp(value: float) -> float:
    return max(0.0, min(1.0, value))


def count_flaps(values: Iterable[Optional[bool]]) -> int:
    """Occupancy changes between consecutive non-null readings."""
    changes = 0
    previous = None
    for value in values:
        if value is None:
            continue
        if previous is not None and value != previous:
            changes += 1
        previous = value
    return changes


def battery_drain_per_day(min_pct: Optional[float], max_pct: Optional[float],
                          min_time: Optional[datetime], max_time: Optional[datetime]) -> Optional[float]:
    """max(0, max − min) / max(1, days between the sample times)."""
    if min_pct is None or max_pct is None or min_time is None or max_time is None:
        return None
    days = max(1.0, abs((max_time - min_time).total_seconds()) / 86400)
    return max(0.0, max_pct - min_pct) / days


def compute_health_score(t: AlertThresholds, m: SensorHealthMetrics) -> int:
    penalty = 0.0

    # Signal quality
    if m.avg_rssi is not None:
        penalty += 15 * _ramp((t.poor_rssi_threshold + 10 - m.avg_rssi) / 10)
    if m.avg_snr is not None:
        penalty += 10 * _ramp((t.poor_snr_threshold + 5 - m.avg_snr) / 5)

    # Battery level
    if m.battery_pct is not None:
        if m.battery_pct <= CRITICAL_BATTERY_PCT:
            penalty += 30
        elif m.battery_pct <= t.low_battery_pct:
            penalty += 15

    # Battery trend
    if m.battery_drain_per_day is not None:
        for floor, points in DRAIN_STEPS:
            if m.battery_drain_per_day >= floor:
                penalty += points
                break

    # Flapping
    if m.flap_changes is not None and m.flap_changes > 0:
        if t.flapping_max_changes > 0:
            penalty += 20 * _ramp(m.flap_changes / t.flapping_max_changes)
        else:
            penalty += 20

    # Sample sufficiency
    if m.signal_samples is not None and t.signal_min_samples > 0:
        penalty += 10 * _ramp((t.signal_min_samples - m.signal_samples) / t.signal_min_samples)

    # Freshness
    if m.age_minutes is not None:
        freshness = 0
        if m.age_minutes > 15:
            freshness = 20
        if m.age_minutes > 60:
            freshness = 35
        if m.age_minutes > t.offline_minutes:
            freshness = 60
        penalty += freshness

    return int(round(max(0.0, min(100.0, 100 - penalty))))


def health_band(score: int) -> str:
    if score >= 80:
        return "GOOD"
    if score >= 50:
        return "FAIR"
    return "POOR"


def collect_metrics(db: Session, tenant_id: str, sensor: Sensor, t: AlertThresholds,
                    now: datetime) -> SensorHealthMetrics:
    """Gather metrics for one sensor. Every history read is bounded by a time window."""
    base = db.query(SensorEvent).filter(SensorEvent.tenant_id == tenant_id, SensorEvent.sensor_id == sensor.id)

    last = base.filter(SensorEvent.time <= now).order_by(SensorEvent.time.desc()).first()

    signal_since = now - timedelta(hours=t.signal_lookback_hours)
    avg_rssi, avg_snr, samples = (
        db.query(func.avg(SensorEvent.rssi), func.avg(SensorEvent.snr), func.count(SensorEvent.id))
        .filter(SensorEvent.tenant_id == tenant_id, SensorEvent.sensor_id == sensor.id,
                SensorEvent.time > signal_since, SensorEvent.time <= now,
                or_(SensorEvent.rssi.isnot(None), SensorEvent.snr.isnot(None)))
        .one()
    )

    battery_since = now - timedelta(days=BATTERY_WINDOW_DAYS)
    min_bat, max_bat, min_time, max_time = (
        db.query(func.min(SensorEvent.battery_pct), func.max(SensorEvent.battery_pct),
                 func.min(SensorEvent.time), func.max(SensorEvent.time))
        .filter(SensorEvent.tenant_id == tenant_id, SensorEvent.sensor_id == sensor.id,
                SensorEvent.time > battery_since, SensorEvent.time <= now,
                SensorEvent.battery_pct.isnot(None))
        .one()
    )

    flap_since = now - timedelta(minutes=t.flapping_window_minutes)
    flap_rows = (
        base.filter(SensorEvent.time > flap_since, SensorEvent.time <= now, SensorEvent.decoded.isnot(None))
        .order_by(SensorEvent.time.asc(), SensorEvent.id.asc())
        .limit(FLAP_ROW_LIMIT)
        .all()
    )

    days_in_use = None
    if sensor.install_date is not None:
        days_in_use = max(0, int((now - sensor.install_date).total_seconds() // 86400))

    return SensorHealthMetrics(
        days_in_use=days_in_use,
        last_seen=sensor.last_seen,
        age_minutes=age_in_minutes(sensor.last_seen, now),
        last_rssi=last.rssi if last else None,
        last_snr=last.snr if last else None,
        avg_rssi=float(avg_rssi) if avg_rssi is not None else None,
        avg_snr=float(avg_snr) if avg_snr is not None else None,
        signal_samples=int(samples or 0),
        battery_pct=sensor.battery_pct,
        min_battery=min_bat,
        max_battery=max_bat,
        min_battery_time=min_time,
        max_battery_time=max_time,
        battery_drain_per_day=battery_drain_per_day(min_bat, max_bat, min_time, max_time),
        flap_changes=count_flaps(decoded_occupancy(e.decoded) for e in flap_rows),
    )


def sensor_health(db: Session, tenant_id: str, sensor: Sensor, t: AlertThresholds, now: datetime) -> dict:
    """Metrics + score for one sensor, as exposed by the API."""
    metrics = collect_metrics(db, tenant_id, sensor, t, now)
    score = compute_health_score(t, metrics)
    return {
        "sensor_id": sensor.id,
        "dev_eui": sensor.dev_eui,
        "bay_id": sensor.bay_id,
        "zone_id": sensor.zone_id,
        "score": score,
        "band": health_band(score),
        "metrics": metrics.as_dict(),
    }
