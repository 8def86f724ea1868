# parksense/services/event_normalizer.py
"""
Event Normalizer & Dedup Gate.

Turns a raw sensor reading (live webhook body or an uploaded batch row) into a
NormalizedReading, resolves/creates the Sensor (and Gateway) it belongs to and
persists the canonical SensorEvent.

  - Rows without a valid timestamp or device id are dead letters, never fatal.
  - Unknown sensors are auto-provisioned as UNASSIGNED with no bay binding.
  - (tenant, file, seq) is unique at the storage layer: replaying a batch row
    never inserts a second SensorEvent.
  - sensor.last_seen only moves forward; battery only changes when supplied.

The tenant always comes from the authenticated ingestion context, never from
the payload.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional, Tuple

from sqlalchemy import case, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from parksense.errors import ReadingValidationError
from parksense.models.ingest import DeadLetter, IngestEvent, IngestFile
from parksense.models.sensor import Gateway, Sensor
from parksense.models.sensor_event import SensorEvent
from parksense.utils.json_parser import as_number, first_present, normalize_json, parse_iso_datetime, utcnow
from parksense.utils.logger import get_logger

logger = get_logger(__name__)

DEVICE_ID_KEYS = ("deviceId", "sensorId", "devEui", "deveui", "deviceEui")
TIME_KEYS = ("receivedAt", "time", "timestamp", "ts")
KNOWN_SENSOR_TYPES = {"PARKING", "WEATHER", "OTHER"}
HEX_DECODED_TYPES = {"PARKING", "TEMPERATURE"}

REASON_MISSING_TIME = "missing/invalid time"
REASON_MISSING_DEVICE = "missing devEui"

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


@dataclass
class NormalizedReading:
    dev_eui: str
    time: datetime
    sensor_type: str = "UNASSIGNED"
    decoded: Optional[dict] = None
    raw_payload: Optional[str] = None
    rssi: Optional[float] = None
    snr: Optional[float] = None
    battery_pct: Optional[float] = None
    gateway_serial: Optional[str] = None
    zone_ref: Optional[str] = None
    bay_ref: Optional[str] = None
    mode: Optional[str] = None
    warnings: list = field(default_factory=list)

    @property
    def occupied(self) -> Optional[bool]:
        """Decoded occupancy flag, or None when the payload carries no boolean."""
        if isinstance(self.decoded, dict):
            value = self.decoded.get("occupied")
            if isinstance(value, bool):
                return value
        return None


def normalize_sensor_type(value: Any) -> str:
    t = str(value or "").strip().upper()
    return t if t in KNOWN_SENSOR_TYPES else "UNASSIGNED"


def decode_payload(sensor_type: str, raw_payload: Optional[str]) -> Tuple[Optional[dict], list]:
    """
    Decode a raw uplink payload.
    JSON → parsed object. HEX from a parking sensor → byte0 occupancy
    (1 = occupied), byte1 battery % when present. Anything else is kept raw.
    """
    warnings = []
    raw = str(raw_payload or "").strip()
    if not raw:
        return None, warnings

    if raw[:1] in ("{", "["):
        parsed = normalize_json(raw)
        if parsed is not None:
            return parsed if isinstance(parsed, dict) else {"items": parsed}, warnings

    if _HEX_RE.match(raw) and len(raw) % 2 == 0:
        data = bytes.fromhex(raw)
        if sensor_type in HEX_DECODED_TYPES:
            battery = data[1] if len(data) > 1 else None
            if battery is not None and battery > 100:
                warnings.append("batteryPct out of expected range 0-100")
            return {"occupied": data[0] == 1, "batteryPct": battery}, warnings
        warnings.append(f"{sensor_type} HEX decoder returns raw bytes only")
        return {"bytes": list(data)}, warnings

    warnings.append("Unrecognized payload format (expected JSON or HEX); returning raw string")
    return {"raw": raw}, warnings


def _ref(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def validate_reading(raw: dict, default_time: Optional[datetime] = None) -> NormalizedReading:
    """
    Validate and normalize one raw reading.
    default_time is used only when the reading carries no time at all (live
    path); a present-but-unparseable time is always rejected.
    """
    if not isinstance(raw, dict):
        raise ReadingValidationError(REASON_MISSING_TIME, {"value": raw})

    time_value = first_present(raw, *TIME_KEYS)
    ts = parse_iso_datetime(time_value)
    if ts is None and time_value is None:
        ts = default_time
    if ts is None:
        raise ReadingValidationError(REASON_MISSING_TIME, raw)

    dev_eui = str(first_present(raw, *DEVICE_ID_KEYS) or "").strip()
    if not dev_eui:
        raise ReadingValidationError(REASON_MISSING_DEVICE, raw)

    sensor_type = normalize_sensor_type(first_present(raw, "type", "sensorType"))
    raw_payload = first_present(raw, "rawPayload", "payload")
    raw_payload = str(raw_payload) if raw_payload is not None else None

    decoded = normalize_json(raw.get("decoded"))
    warnings = []
    if not isinstance(decoded, dict):
        decoded = None
    if decoded is None:
        status = str(raw.get("status") or "").strip().lower()
        if status in ("occupied", "vacant"):
            decoded = {"occupied": status == "occupied"}
        elif raw_payload:
            decoded, warnings = decode_payload(sensor_type, raw_payload)

    battery = as_number(first_present(raw, "battery", "batteryPct"))
    if battery is None and isinstance(decoded, dict):
        battery = as_number(decoded.get("batteryPct"))

    return NormalizedReading(
        dev_eui=dev_eui,
        time=ts,
        sensor_type=sensor_type,
        decoded=decoded,
        raw_payload=raw_payload,
        rssi=as_number(first_present(raw, "rssi", "signal")),
        snr=as_number(raw.get("snr")),
        battery_pct=battery,
        gateway_serial=_ref(first_present(raw, "gatewaySerial", "gateway")),
        zone_ref=_ref(raw.get("zoneId")),
        bay_ref=_ref(raw.get("bayId")),
        mode=_ref(raw.get("mode")),
        warnings=warnings,
    )


def ensure_sensor(db: Session, tenant_id: str, dev_eui: str, sensor_type: str = "UNASSIGNED") -> Sensor:
    """Resolve the sensor for a device id, auto-provisioning an unbound one if unknown."""
    sensor = db.query(Sensor).filter(Sensor.tenant_id == tenant_id, Sensor.dev_eui == dev_eui).first()
    if sensor:
        if sensor.sensor_type == "UNASSIGNED" and sensor_type != "UNASSIGNED":
            sensor.sensor_type = sensor_type
        return sensor

    now = utcnow()
    sensor = Sensor(tenant_id=tenant_id, dev_eui=dev_eui, sensor_type=sensor_type,
                    status="ACTIVE", created_at=now, updated_at=now)
    try:
        with db.begin_nested():
            db.add(sensor)
    except IntegrityError:
        # created concurrently by another reading for the same device
        return db.query(Sensor).filter(Sensor.tenant_id == tenant_id, Sensor.dev_eui == dev_eui).one()
    logger.info(f"[INGEST] Auto-provisioned sensor {dev_eui} for tenant {tenant_id} (unbound)")
    return sensor


def ensure_gateway(db: Session, tenant_id: str, serial: Optional[str]) -> Optional[Gateway]:
    if not serial:
        return None
    gateway = db.query(Gateway).filter(Gateway.tenant_id == tenant_id, Gateway.serial == serial).first()
    if gateway:
        return gateway
    gateway = Gateway(tenant_id=tenant_id, serial=serial, name=serial, status="ACTIVE", created_at=utcnow())
    try:
        with db.begin_nested():
            db.add(gateway)
    except IntegrityError:
        return db.query(Gateway).filter(Gateway.tenant_id == tenant_id, Gateway.serial == serial).one()
    logger.info(f"[INGEST] Auto-provisioned gateway {serial} for tenant {tenant_id}")
    return gateway


def insert_event(db: Session, tenant_id: str, sensor: Sensor, reading: NormalizedReading,
                 gateway: Optional[Gateway] = None, source_file_id: Optional[str] = None,
                 source_seq: Optional[int] = None) -> Optional[SensorEvent]:
    """
    Persist the canonical SensorEvent. Returns None when (tenant, file, seq)
    was already inserted — the replay is a no-op.
    """
    event = SensorEvent(
        tenant_id=tenant_id,
        sensor_id=sensor.id,
        gateway_id=gateway.id if gateway else None,
        time=reading.time,
        kind="UPLINK",
        decoded=reading.decoded,
        raw_payload=reading.raw_payload,
        rssi=reading.rssi,
        snr=reading.snr,
        battery_pct=reading.battery_pct,
        source_file_id=source_file_id,
        source_seq=source_seq,
        created_at=utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(event)
    except IntegrityError:
        logger.debug(f"[INGEST] Duplicate event file={source_file_id} seq={source_seq} — skipped")
        return None
    return event


def touch_sensor(db: Session, sensor: Sensor, reading: NormalizedReading):
    """
    last_seen = max(last_seen, reading.time), computed in SQL so out-of-order
    or concurrent deliveries can never move it backwards.
    """
    values = {
        "last_seen": case(
            (or_(Sensor.last_seen.is_(None), Sensor.last_seen < reading.time), reading.time),
            else_=Sensor.last_seen,
        ),
        "updated_at": utcnow(),
    }
    if reading.battery_pct is not None:
        values["battery_pct"] = reading.battery_pct
    db.execute(
        update(Sensor).where(Sensor.id == sensor.id).values(**values),
        execution_options={"synchronize_session": False},
    )
    db.expire(sensor, ["last_seen", "battery_pct", "updated_at"])


def record_dead_letter(db: Session, tenant_id: str, reason: str, raw: Any,
                       file_id: Optional[str] = None, row_index: Optional[int] = None) -> DeadLetter:
    letter = DeadLetter(tenant_id=tenant_id, file_id=file_id, row_index=row_index,
                        reason=reason, raw=raw if isinstance(raw, (dict, list)) else {"value": str(raw)},
                        created_at=utcnow())
    db.add(letter)
    logger.warning(f"[DEAD-LETTER] tenant={tenant_id} file={file_id} row={row_index}: {reason}")
    return letter


def stage_upload(db: Session, tenant_id: str, rows: Iterable[Any], filename: str = "upload",
                 source: str = "manual-upload", uploaded_by: Optional[str] = None) -> IngestFile:
    """
    Stage a batch of raw rows for replay. Valid rows become IngestEvents with
    seq = row index; invalid rows become DeadLetters. Never fails on a bad row.
    """
    now = utcnow()
    ingest_file = IngestFile(id=str(uuid.uuid4()), tenant_id=tenant_id, filename=filename,
                             source=source, uploaded_by=uploaded_by, status="UPLOADED",
                             created_at=now, updated_at=now)
    db.add(ingest_file)
    db.flush()

    total = valid = invalid = 0
    min_time = max_time = None
    for row_index, row in enumerate(rows):
        total += 1
        try:
            reading = validate_reading(row)
        except ReadingValidationError as e:
            invalid += 1
            record_dead_letter(db, tenant_id, e.reason, row, file_id=ingest_file.id, row_index=row_index)
            continue

        valid += 1
        min_time = reading.time if min_time is None or reading.time < min_time else min_time
        max_time = reading.time if max_time is None or reading.time > max_time else max_time
        db.add(IngestEvent(
            tenant_id=tenant_id,
            file_id=ingest_file.id,
            seq=row_index,
            original_time=reading.time,
            dev_eui=reading.dev_eui,
            sensor_type=reading.sensor_type,
            gateway_serial=reading.gateway_serial,
            raw_payload=reading.raw_payload,
            decoded=reading.decoded,
            rssi=reading.rssi,
            snr=reading.snr,
            battery_pct=reading.battery_pct,
            zone_ref=reading.zone_ref,
            bay_ref=reading.bay_ref,
            created_at=now,
        ))

    ingest_file.total_events = total
    ingest_file.valid_events = valid
    ingest_file.invalid_events = invalid
    ingest_file.min_time = min_time
    ingest_file.max_time = max_time
    db.commit()
    logger.info(f"[INGEST] Staged {filename}: total={total} valid={valid} invalid={invalid}")
    return ingest_file


def reading_from_staged(row: IngestEvent) -> NormalizedReading:
    """Rebuild a NormalizedReading from a staged batch row."""
    return NormalizedReading(
        dev_eui=row.dev_eui,
        time=row.original_time,
        sensor_type=row.sensor_type or "UNASSIGNED",
        decoded=normalize_json(row.decoded),
        raw_payload=row.raw_payload,
        rssi=row.rssi,
        snr=row.snr,
        battery_pct=row.battery_pct,
        gateway_serial=row.gateway_serial,
        zone_ref=row.zone_ref,
        bay_ref=row.bay_ref,
    )
