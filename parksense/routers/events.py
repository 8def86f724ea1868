# parksense/routers/events.py
"""
Sensor ingestion webhook + raw event log viewer.
POST /events/sensor — receives one reading from the ingestion transport.
GET  /events        — lists stored sensor events with optional filters.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from parksense.config import settings
from parksense.database import get_db
from parksense.models.sensor import Sensor
from parksense.models.sensor_event import SensorEvent
from parksense.schemas.sensor_event import IngestResult, SensorEventOut
from parksense.services.event_dispatcher import dispatch_reading
from parksense.services.tenant_scope import TenantScope, get_tenant_scope
from parksense.utils.json_parser import safe_parse_json
from parksense.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.post("/events/sensor", response_model=IngestResult, summary="Sensor webhook — one reading")
async def receive_sensor_reading(request: Request, scope: TenantScope = Depends(get_tenant_scope),
                                 db: Session = Depends(get_db)):
    """
    Single entry point for live readings.
    Malformed readings are stored as dead letters and acknowledged with
    status "invalid"; an unknown bay/zone binding is a 404.
    """
    raw_body = await request.body()
    payload = safe_parse_json(raw_body) if raw_body else None
    if payload is None:
        payload = {"body": raw_body.decode("utf-8", errors="replace")}
    logger.info(f"Reading for tenant {scope.tenant_id} | {len(raw_body)} bytes")
    return await dispatch_reading(payload, scope.tenant_id, db)


@router.get("/events", response_model=list[SensorEventOut], summary="List sensor events")
def list_events(limit: int = 500, dev_eui: Optional[str] = None, sensor_id: Optional[int] = None,
                kind: Optional[str] = None, start: Optional[datetime] = None, end: Optional[datetime] = None,
                scope: TenantScope = Depends(get_tenant_scope), db: Session = Depends(get_db)):
    """Newest first. Always bounded by limit (capped at MAX_QUERY_ROWS)."""
    q = db.query(SensorEvent).filter(SensorEvent.tenant_id == scope.tenant_id)
    if dev_eui:
        q = q.join(Sensor, Sensor.id == SensorEvent.sensor_id).filter(Sensor.dev_eui == dev_eui)
    if sensor_id is not None:
        q = q.filter(SensorEvent.sensor_id == sensor_id)
    if kind:
        q = q.filter(SensorEvent.kind == kind)
    if start:
        q = q.filter(SensorEvent.time >= start)
    if end:
        q = q.filter(SensorEvent.time <= end)
    limit = min(max(limit, 1), settings.MAX_QUERY_ROWS)
    return q.order_by(SensorEvent.time.desc(), SensorEvent.id.desc()).limit(limit).all()
