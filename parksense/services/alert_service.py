# parksense/services/alert_service.py
"""
Alert Engine.

Turns threshold breaches into alert records and manages their lifecycle:

  open    — first detection for (tenant, entity, type): firstDetectedAt =
            lastDetectedAt = now, slaDueAt = now + slaHours[severity]
  refresh — re-detection: lastDetectedAt advances, severity may only go up
  resolve — automatically when the breach clears, or by an operator

Alert.open_key is unique at the storage layer while an alert is OPEN or
ACKNOWLEDGED, so two near-simultaneous evaluations can never open duplicates:
the loser of the insert race gets an IntegrityError and takes the refresh path.
Every transition is also written to alert_events for audit.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from parksense.config import settings
from parksense.errors import NotFoundError
from parksense.models.alert import Alert, AlertEvent
from parksense.models.ingest import DeadLetter
from parksense.models.sensor import Sensor
from parksense.services.health_service import SensorHealthMetrics, collect_metrics
from parksense.services.thresholds import AlertThresholds, resolve_thresholds
from parksense.utils.json_parser import utcnow
from parksense.utils.logger import get_logger

logger = get_logger(__name__)

SENSOR_OFFLINE = "SENSOR_OFFLINE"
LOW_BATTERY = "LOW_BATTERY"
POOR_SIGNAL = "POOR_SIGNAL"
FLAPPING = "FLAPPING"
DECODE_ERRORS = "DECODE_ERRORS"
SENSOR_ALERT_TYPES = (SENSOR_OFFLINE, LOW_BATTERY, POOR_SIGNAL, FLAPPING)

SEVERITY_RANK = {"CRITICAL": 0, "WARNING": 1, "INFO": 2}
STATUS_RANK = {"OPEN": 0, "ACKNOWLEDGED": 1, "RESOLVED": 2}
ACTIVE_STATUSES = ("OPEN", "ACKNOWLEDGED")
CRITICAL_BATTERY_PCT = 10


@dataclass(frozen=True)
class AlertEntity:
    """What an alert is about. key is stable per entity and part of the dedup key."""
    kind: str                      # sensor | bay | zone | tenant
    ref: str
    sensor_id: Optional[int] = None
    bay_id: Optional[int] = None
    zone_id: Optional[int] = None
    site_id: Optional[int] = None

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.ref}"

    @classmethod
    def for_sensor(cls, sensor: Sensor) -> "AlertEntity":
        return cls("sensor", str(sensor.id), sensor_id=sensor.id, bay_id=sensor.bay_id,
                   zone_id=sensor.zone_id, site_id=sensor.site_id)

    @classmethod
    def for_tenant(cls, tenant_id: str) -> "AlertEntity":
        return cls("tenant", tenant_id)


@dataclass
class Breach:
    alert_type: str
    severity: str
    title: str
    message: str
    meta: dict = field(default_factory=dict)


@dataclass
class AlertScanResult:
    created: int = 0
    updated: int = 0
    resolved: int = 0
    checked_sensors: int = 0
    failed_sensors: int = 0
    thresholds: Optional[AlertThresholds] = None


def open_key(tenant_id: str, entity: AlertEntity, alert_type: str) -> str:
    return f"{tenant_id}|{entity.key}|{alert_type}"


def alert_sort_key(alert: Alert):
    """CRITICAL before WARNING before INFO; newest detection first within a severity."""
    detected = alert.last_detected_at
    recency = -(detected - datetime(1970, 1, 1)).total_seconds() if detected else 0.0
    return SEVERITY_RANK.get(alert.severity, 99), recency


def list_order_by():
    """SQL ordering for alert listings: status, then severity, then recency."""
    return (
        case(STATUS_RANK, value=Alert.status, else_=3),
        case(SEVERITY_RANK, value=Alert.severity, else_=3),
        Alert.last_detected_at.desc(),
    )


def _audit(db: Session, alert: Alert, action: str, actor: Optional[str] = None,
           note: Optional[str] = None, meta: Optional[dict] = None, now: Optional[datetime] = None):
    db.add(AlertEvent(tenant_id=alert.tenant_id, alert_id=alert.id, actor=actor, action=action,
                      note=note, meta=meta, created_at=now or utcnow()))


def _find_active(db: Session, key: str) -> Optional[Alert]:
    return db.query(Alert).filter(Alert.open_key == key).first()


def open_or_update_alert(db: Session, thresholds: AlertThresholds, tenant_id: str, entity: AlertEntity,
                         breach: Breach, actor: Optional[str] = None,
                         now: Optional[datetime] = None) -> Tuple[Alert, bool]:
    """Open an alert for the breach or refresh the active one. Returns (alert, created)."""
    now = now or utcnow()
    key = open_key(tenant_id, entity, breach.alert_type)
    existing = _find_active(db, key)

    if existing is None:
        alert = Alert(
            tenant_id=tenant_id,
            alert_type=breach.alert_type,
            severity=breach.severity,
            status="OPEN",
            title=breach.title,
            message=breach.message,
            meta=breach.meta,
            entity_key=entity.key,
            open_key=key,
            site_id=entity.site_id,
            zone_id=entity.zone_id,
            bay_id=entity.bay_id,
            sensor_id=entity.sensor_id,
            opened_at=now,
            first_detected_at=now,
            last_detected_at=now,
            sla_due_at=now + timedelta(hours=thresholds.sla_hours(breach.severity)),
            updated_at=now,
        )
        try:
            with db.begin_nested():
                db.add(alert)
        except IntegrityError:
            # another evaluation opened it first; fall through to the refresh path
            existing = _find_active(db, key)
            if existing is None:
                raise
        else:
            _audit(db, alert, "OPEN", actor, meta={"type": breach.alert_type, "severity": breach.severity}, now=now)
            logger.warning(f"[ALERT][{breach.alert_type}] {breach.title} — {breach.message}")
            return alert, True

    if existing.last_detected_at is None or now > existing.last_detected_at:
        existing.last_detected_at = now
    if SEVERITY_RANK[breach.severity] < SEVERITY_RANK.get(existing.severity, 99):
        logger.warning(f"[ALERT][{breach.alert_type}] escalated {existing.severity} → {breach.severity}: {breach.title}")
        existing.severity = breach.severity
    existing.title = breach.title
    existing.message = breach.message
    existing.meta = breach.meta
    existing.updated_at = now
    _audit(db, existing, "UPDATE", actor, meta={"type": breach.alert_type, "severity": existing.severity}, now=now)
    return existing, False


def auto_resolve_alert(db: Session, tenant_id: str, entity: AlertEntity, alert_type: str,
                       note: Optional[str] = None, actor: Optional[str] = None,
                       now: Optional[datetime] = None) -> bool:
    """Resolve the active alert for the key, if any, because its condition cleared."""
    alert = _find_active(db, open_key(tenant_id, entity, alert_type))
    if alert is None:
        return False
    now = now or utcnow()
    alert.status = "RESOLVED"
    alert.resolved_at = now
    alert.open_key = None
    alert.updated_at = now
    _audit(db, alert, "AUTO_RESOLVE", actor, note=note, now=now)
    db.flush()
    logger.info(f"[ALERT][{alert_type}] auto-resolved: {alert.title} ({note})")
    return True


# ── Operator transitions ─────────────────────────────────────────────────────

def get_alert(db: Session, tenant_id: str, alert_id: int) -> Alert:
    alert = db.query(Alert).filter(Alert.id == alert_id, Alert.tenant_id == tenant_id).first()
    if not alert:
        raise NotFoundError("alert", str(alert_id))
    return alert


def acknowledge_alert(db: Session, tenant_id: str, alert_id: int, actor: Optional[str],
                      note: Optional[str] = None, now: Optional[datetime] = None) -> Alert:
    """Pause escalation display. The alert stays unresolved and keeps its dedup key."""
    now = now or utcnow()
    alert = get_alert(db, tenant_id, alert_id)
    if alert.status == "OPEN":
        alert.status = "ACKNOWLEDGED"
    alert.acknowledged_at = alert.acknowledged_at or now
    alert.acknowledged_by = alert.acknowledged_by or actor
    alert.updated_at = now
    _audit(db, alert, "ACKNOWLEDGE", actor, note=note, now=now)
    db.commit()
    return alert


def assign_alert(db: Session, tenant_id: str, alert_id: int, actor: Optional[str],
                 note: Optional[str] = None, now: Optional[datetime] = None) -> Alert:
    now = now or utcnow()
    alert = get_alert(db, tenant_id, alert_id)
    alert.assigned_to = actor
    alert.updated_at = now
    _audit(db, alert, "ASSIGN", actor, note=note, now=now)
    db.commit()
    return alert


def resolve_alert(db: Session, tenant_id: str, alert_id: int, actor: Optional[str],
                  note: Optional[str] = None, now: Optional[datetime] = None) -> Alert:
    now = now or utcnow()
    alert = get_alert(db, tenant_id, alert_id)
    alert.status = "RESOLVED"
    alert.resolved_at = alert.resolved_at or now
    alert.resolved_by = alert.resolved_by or actor
    alert.open_key = None
    alert.updated_at = now
    _audit(db, alert, "RESOLVE", actor, note=note, now=now)
    db.flush()
    db.commit()
    logger.info(f"[ALERT] #{alert.id} resolved by {actor}")
    return alert


# ── Breach evaluation ────────────────────────────────────────────────────────

def low_battery_breach(t: AlertThresholds, dev_eui: str, battery_pct: Optional[float],
                       drain_per_day: Optional[float] = None) -> Optional[Breach]:
    if battery_pct is None or battery_pct > t.low_battery_pct:
        return None
    severity = "CRITICAL" if battery_pct <= CRITICAL_BATTERY_PCT else "WARNING"
    return Breach(LOW_BATTERY, severity, f"Low battery ({dev_eui})", f"Battery at {round(battery_pct)}%.",
                  {"devEui": dev_eui, "batteryPct": battery_pct, "batteryDrainPerDay": drain_per_day})


def evaluate_sensor(t: AlertThresholds, dev_eui: str, m: SensorHealthMetrics) -> dict:
    """Map of alert type → Breach (condition holds) or None (condition cleared)."""
    breaches = {alert_type: None for alert_type in SENSOR_ALERT_TYPES}

    if m.age_minutes is None or m.age_minutes > t.offline_minutes:
        message = ("No lastSeen timestamp recorded." if m.age_minutes is None
                   else f"No heartbeat/event for {m.age_minutes} minutes.")
        breaches[SENSOR_OFFLINE] = Breach(SENSOR_OFFLINE, "CRITICAL", f"Sensor offline ({dev_eui})", message,
                                          {"devEui": dev_eui, "ageMinutes": m.age_minutes,
                                           "daysInUse": m.days_in_use})

    breaches[LOW_BATTERY] = low_battery_breach(t, dev_eui, m.battery_pct, m.battery_drain_per_day)

    enough_samples = (m.signal_samples or 0) >= t.signal_min_samples
    weak_rssi = m.avg_rssi is not None and m.avg_rssi < t.poor_rssi_threshold
    weak_snr = m.avg_snr is not None and m.avg_snr < t.poor_snr_threshold
    if enough_samples and (weak_rssi or weak_snr):
        rssi = f"{m.avg_rssi:.1f}" if m.avg_rssi is not None else "—"
        snr = f"{m.avg_snr:.1f}" if m.avg_snr is not None else "—"
        breaches[POOR_SIGNAL] = Breach(
            POOR_SIGNAL, "WARNING", f"Poor signal ({dev_eui})",
            f"avg RSSI {rssi} / avg SNR {snr} (last {t.signal_lookback_hours:g}h).",
            {"devEui": dev_eui, "avgRssi": m.avg_rssi, "avgSnr": m.avg_snr, "samples": m.signal_samples,
             "thresholds": {"poorRssiThreshold": t.poor_rssi_threshold, "poorSnrThreshold": t.poor_snr_threshold}},
        )

    if (m.flap_changes or 0) > t.flapping_max_changes:
        breaches[FLAPPING] = Breach(
            FLAPPING, "WARNING", f"Flapping sensor ({dev_eui})",
            f"{m.flap_changes} occupancy state changes in last {t.flapping_window_minutes:g} minutes.",
            {"devEui": dev_eui, "flapChanges": m.flap_changes, "windowMinutes": t.flapping_window_minutes,
             "maxChanges": t.flapping_max_changes},
        )
    return breaches


def dead_letter_breach(t: AlertThresholds, count: int) -> Optional[Breach]:
    if count <= t.dead_letters_warning:
        return None
    severity = "CRITICAL" if count > t.dead_letters_critical else "WARNING"
    return Breach(DECODE_ERRORS, severity, "Decode/ingestion errors spike",
                  f"{count} dead-letter rows in last {t.dead_letters_window_hours:g} hours.",
                  {"deadLetters": count, "windowHours": t.dead_letters_window_hours})


RESOLVE_NOTES = {
    SENSOR_OFFLINE: "Sensor is back online.",
    LOW_BATTERY: "Battery recovered above threshold.",
    POOR_SIGNAL: "Signal recovered above threshold.",
    FLAPPING: "Flapping no longer detected.",
    DECODE_ERRORS: "Dead-letter rate back to normal.",
}


def _apply(db: Session, t: AlertThresholds, tenant_id: str, entity: AlertEntity, alert_type: str,
           breach: Optional[Breach], result: AlertScanResult, actor: Optional[str], now: datetime):
    if breach is not None:
        _, created = open_or_update_alert(db, t, tenant_id, entity, breach, actor=actor, now=now)
        if created:
            result.created += 1
        else:
            result.updated += 1
    elif auto_resolve_alert(db, tenant_id, entity, alert_type, note=RESOLVE_NOTES[alert_type], actor=actor, now=now):
        result.resolved += 1


def check_low_battery_on_ingest(db: Session, t: AlertThresholds, tenant_id: str, sensor: Sensor,
                                battery_pct: Optional[float], now: Optional[datetime] = None) -> Optional[bool]:
    """
    Immediate battery check for a reading that carries a battery value,
    independent of the periodic sweep. Returns True if an alert was opened,
    False if refreshed, None if nothing is breached.
    """
    if battery_pct is None:
        return None
    now = now or utcnow()
    entity = AlertEntity.for_sensor(sensor)
    breach = low_battery_breach(t, sensor.dev_eui, battery_pct)
    if breach is None:
        auto_resolve_alert(db, tenant_id, entity, LOW_BATTERY, note=RESOLVE_NOTES[LOW_BATTERY], now=now)
        return None
    _, created = open_or_update_alert(db, t, tenant_id, entity, breach, now=now)
    return created


def count_dead_letters(db: Session, tenant_id: str, t: AlertThresholds, now: datetime) -> int:
    since = now - timedelta(hours=t.dead_letters_window_hours)
    return db.query(func.count(DeadLetter.id)).filter(
        DeadLetter.tenant_id == tenant_id, DeadLetter.created_at > since,
    ).scalar() or 0


def run_alert_scan(db: Session, tenant_id: str, zone_id: Optional[int] = None, actor: Optional[str] = None,
                   now: Optional[datetime] = None) -> AlertScanResult:
    """
    Evaluate every bound sensor of the tenant (optionally one zone) plus the
    tenant-level dead-letter volume. One sensor failing does not stop the scan.
    """
    now = now or utcnow()
    t = resolve_thresholds(db, tenant_id)
    result = AlertScanResult(thresholds=t)

    q = db.query(Sensor).filter(Sensor.tenant_id == tenant_id, Sensor.bay_id.isnot(None))
    if zone_id is not None:
        q = q.filter(Sensor.zone_id == zone_id)
    sensors: List[Sensor] = q.order_by(Sensor.dev_eui.asc()).limit(settings.MAX_QUERY_ROWS).all()

    for sensor in sensors:
        result.checked_sensors += 1
        try:
            metrics = collect_metrics(db, tenant_id, sensor, t, now)
            entity = AlertEntity.for_sensor(sensor)
            for alert_type, breach in evaluate_sensor(t, sensor.dev_eui, metrics).items():
                _apply(db, t, tenant_id, entity, alert_type, breach, result, actor, now)
            db.commit()
        except Exception as e:
            db.rollback()
            result.failed_sensors += 1
            logger.error(f"[ALERT] Scan failed for sensor {sensor.dev_eui}: {e}", exc_info=True)

    dead_letters = count_dead_letters(db, tenant_id, t, now)
    _apply(db, t, tenant_id, AlertEntity.for_tenant(tenant_id), DECODE_ERRORS,
           dead_letter_breach(t, dead_letters), result, actor, now)
    db.commit()

    logger.info(f"[ALERT] Scan tenant={tenant_id} zone={zone_id}: checked={result.checked_sensors} "
                f"created={result.created} updated={result.updated} resolved={result.resolved}")
    return result
