# parksense/routers/alerts.py
"""Alert list, operator actions and on-demand scans."""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import or_
from sqlalchemy.orm import Session

from parksense.config import settings
from parksense.database import get_db
from parksense.models.alert import Alert, AlertEvent
from parksense.models.sensor import Sensor
from parksense.schemas.alert import AlertAction, AlertEventOut, AlertOut, AlertScanOut, AlertScanRequest
from parksense.services.alert_service import (
    acknowledge_alert, assign_alert, get_alert, list_order_by, resolve_alert, run_alert_scan,
)
from parksense.services.tenant_scope import TenantScope, get_tenant_scope

router = APIRouter()

ACTIONS = {
    "ACKNOWLEDGE": acknowledge_alert,
    "ASSIGN_TO_ME": assign_alert,
    "RESOLVE": resolve_alert,
}


@router.get("/alerts", response_model=list[AlertOut], summary="Alerts — open first, then by severity")
def get_all_alerts(
    status: Optional[str] = None,
    alert_type: Optional[str] = None,
    severity: Optional[str] = None,
    zone_id: Optional[int] = None,
    sensor_id: Optional[int] = None,
    q: Optional[str] = None,
    limit: int = 200,
    scope: TenantScope = Depends(get_tenant_scope),
    db: Session = Depends(get_db),
):
    """Filter by status, type, severity, zone, sensor, or free text on title/devEui."""
    query = db.query(Alert).filter(Alert.tenant_id == scope.tenant_id)
    if status:
        query = query.filter(Alert.status == status.strip().upper())
    if alert_type:
        query = query.filter(Alert.alert_type == alert_type.strip().upper())
    if severity:
        query = query.filter(Alert.severity == severity.strip().upper())
    if zone_id is not None:
        query = query.filter(Alert.zone_id == zone_id)
    if sensor_id is not None:
        query = query.filter(Alert.sensor_id == sensor_id)
    if q:
        like = f"%{q.strip()}%"
        query = query.outerjoin(Sensor, Sensor.id == Alert.sensor_id).filter(
            or_(Alert.title.ilike(like), Sensor.dev_eui.ilike(like))
        )
    limit = min(max(limit, 1), settings.MAX_QUERY_ROWS)
    return query.order_by(*list_order_by()).limit(limit).all()


@router.patch("/alerts/{alert_id}", response_model=AlertOut, summary="Acknowledge, assign or resolve")
def update_alert(alert_id: int, body: AlertAction, scope: TenantScope = Depends(get_tenant_scope),
                 db: Session = Depends(get_db)):
    return ACTIONS[body.action](db, scope.tenant_id, alert_id, scope.user_id, note=body.note)


@router.get("/alerts/{alert_id}/events", response_model=list[AlertEventOut], summary="Audit trail of one alert")
def get_alert_events(alert_id: int, scope: TenantScope = Depends(get_tenant_scope),
                     db: Session = Depends(get_db)):
    get_alert(db, scope.tenant_id, alert_id)
    return (
        db.query(AlertEvent)
        .filter(AlertEvent.tenant_id == scope.tenant_id, AlertEvent.alert_id == alert_id)
        .order_by(AlertEvent.created_at.asc(), AlertEvent.id.asc())
        .all()
    )


@router.post("/alerts/run", response_model=AlertScanOut, summary="Run the alert scan now")
def run_alerts(body: Optional[AlertScanRequest] = None, scope: TenantScope = Depends(get_tenant_scope),
               db: Session = Depends(get_db)):
    zone_id = body.zone_id if body else None
    result = run_alert_scan(db, scope.tenant_id, zone_id=zone_id, actor=scope.user_id)
    return {
        "created": result.created,
        "updated": result.updated,
        "resolved": result.resolved,
        "checked_sensors": result.checked_sensors,
        "failed_sensors": result.failed_sensors,
    }
