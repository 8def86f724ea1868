# parksense/services/event_dispatcher.py
"""Routes one live sensor reading through normalizer → state machine → alerts."""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from parksense.errors import ReadingValidationError
from parksense.services.alert_service import check_low_battery_on_ingest
from parksense.services.event_normalizer import (
    ensure_gateway, ensure_sensor, insert_event, record_dead_letter, touch_sensor, validate_reading,
)
from parksense.services.occupancy_service import apply_reading, resolve_binding
from parksense.services.thresholds import resolve_thresholds
from parksense.utils.json_parser import utcnow
from parksense.utils.logger import get_logger

logger = get_logger(__name__)


async def dispatch_reading(raw: dict, tenant_id: str, db: Session, now: Optional[datetime] = None) -> dict:
    """
    Process one reading delivered at-least-once by the transport.

    Invalid readings become dead letters and return status "invalid".
    An unresolvable bay/zone binding raises NotFoundError after the event
    itself has been stored, so the caller sees a client error.
    """
    now = now or utcnow()
    try:
        reading = validate_reading(raw, default_time=now)
    except ReadingValidationError as e:
        record_dead_letter(db, tenant_id, e.reason, raw)
        db.commit()
        return {"status": "invalid", "reason": e.reason}

    gateway = ensure_gateway(db, tenant_id, reading.gateway_serial)
    sensor = ensure_sensor(db, tenant_id, reading.dev_eui, reading.sensor_type)
    event = insert_event(db, tenant_id, sensor, reading, gateway)
    touch_sensor(db, sensor, reading)

    if reading.battery_pct is not None:
        check_low_battery_on_ingest(db, resolve_thresholds(db, tenant_id), tenant_id, sensor,
                                    reading.battery_pct, now=now)
    db.commit()

    try:
        bay, zone = resolve_binding(db, tenant_id, reading, sensor)
    except Exception:
        db.rollback()
        raise

    result = apply_reading(db, tenant_id, bay, zone, reading, sensor_id=sensor.id)
    db.commit()

    logger.info(
        f"📥 {reading.dev_eui} | bay={bay.code or bay.id} zone={zone.name} "
        f"occupied={reading.occupied} → {result.status}"
    )
    return {
        "status": "ok",
        "event_id": event.id if event else None,
        "sensor_id": sensor.id,
        "bay_id": bay.id,
        "zone_id": zone.id,
        "previous_status": result.previous_status,
        "bay_status": result.status,
        "transition": result.transition,
        "duration_minutes": result.duration_minutes,
        "revenue": result.revenue,
        "warnings": reading.warnings,
    }
