# parksense/routers/sensors.py
"""Sensor health scores."""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from parksense.config import settings
from parksense.database import get_db
from parksense.errors import NotFoundError
from parksense.models.sensor import Sensor
from parksense.schemas.sensor_health import SensorHealthOut
from parksense.services.health_service import sensor_health
from parksense.services.tenant_scope import TenantScope, get_tenant_scope
from parksense.services.thresholds import resolve_thresholds
from parksense.utils.json_parser import utcnow

router = APIRouter()


@router.get("/sensors/health", response_model=list[SensorHealthOut], summary="Health of bound sensors")
def list_sensor_health(zone_id: Optional[int] = None, limit: int = 200,
                       scope: TenantScope = Depends(get_tenant_scope), db: Session = Depends(get_db)):
    """Worst score first."""
    now = utcnow()
    t = resolve_thresholds(db, scope.tenant_id)
    q = db.query(Sensor).filter(Sensor.tenant_id == scope.tenant_id, Sensor.bay_id.isnot(None))
    if zone_id is not None:
        q = q.filter(Sensor.zone_id == zone_id)
    sensors = q.order_by(Sensor.dev_eui).limit(min(max(limit, 1), settings.MAX_QUERY_ROWS)).all()
    items = [sensor_health(db, scope.tenant_id, s, t, now) for s in sensors]
    return sorted(items, key=lambda h: (h["score"], h["dev_eui"]))


@router.get("/sensors/{sensor_id}/health", response_model=SensorHealthOut)
def get_sensor_health(sensor_id: int, scope: TenantScope = Depends(get_tenant_scope),
                      db: Session = Depends(get_db)):
    sensor = db.query(Sensor).filter(Sensor.tenant_id == scope.tenant_id, Sensor.id == sensor_id).first()
    if not sensor:
        raise NotFoundError("sensor", str(sensor_id))
    return sensor_health(db, scope.tenant_id, sensor, resolve_thresholds(db, scope.tenant_id), utcnow())
