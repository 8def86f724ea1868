# parksense/routers/bay_map.py
"""Live bay map — display state + confidence for every bay, recomputed on each call."""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from parksense.config import settings
from parksense.database import get_db
from parksense.schemas.occupancy import BayStateOut, MapOut
from parksense.services.classification import classify_bays
from parksense.services.tenant_scope import TenantScope, get_tenant_scope
from parksense.services.thresholds import resolve_thresholds
from parksense.utils.json_parser import utcnow

router = APIRouter()


@router.get("/map", response_model=MapOut, summary="Bay states for the map")
def get_map(zone_id: Optional[int] = None, scope: TenantScope = Depends(get_tenant_scope),
            db: Session = Depends(get_db)):
    now = utcnow()
    thresholds = resolve_thresholds(db, scope.tenant_id)
    items, summary = classify_bays(db, scope.tenant_id, thresholds, now, zone_id=zone_id,
                                   limit=settings.MAX_QUERY_ROWS)
    bays = [
        BayStateOut(
            bay_id=c.bay_id, bay_code=c.bay_code, zone_id=c.zone_id, sensor_id=c.sensor_id,
            dev_eui=c.dev_eui, state=c.state, color=c.color, confidence=c.confidence,
            age_minutes=c.age_minutes, last_seen=c.last_seen, battery_pct=c.battery_pct,
            lat=c.lat, lng=c.lng,
        )
        for c in items
    ]
    return {"generated_at": now, "summary": summary, "bays": bays}
