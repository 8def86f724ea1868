# parksense/routers/occupancy.py
"""Zone occupancy counters — read + reconciliation endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

from parksense.database import get_db
from parksense.errors import NotFoundError
from parksense.models.site import Bay, Zone
from parksense.schemas.occupancy import ReconcileOut, ZoneOccupancyOut
from parksense.services.occupancy_service import reconcile_zone
from parksense.services.tenant_scope import TenantScope, get_tenant_scope

router = APIRouter()


def _with_capacity(db: Session, tenant_id: str, zones: list) -> list:
    totals = dict(
        db.query(Bay.zone_id, func.count(Bay.id))
        .filter(Bay.tenant_id == tenant_id, Bay.zone_id.in_([z.id for z in zones]))
        .group_by(Bay.zone_id)
        .all()
    ) if zones else {}
    for z in zones:
        z.total_bays = totals.get(z.id, 0)
        z.occupancy_percent = round((z.occupied_bays / z.total_bays) * 100, 1) if z.total_bays else 0
    return zones


@router.get("/occupancy", response_model=list[ZoneOccupancyOut])
def get_all_occupancy(site_id: Optional[int] = None, scope: TenantScope = Depends(get_tenant_scope),
                      db: Session = Depends(get_db)):
    """Current occupied-bay counter for all zones of the tenant."""
    q = db.query(Zone).filter(Zone.tenant_id == scope.tenant_id)
    if site_id is not None:
        q = q.filter(Zone.site_id == site_id)
    return _with_capacity(db, scope.tenant_id, q.order_by(Zone.name).all())


@router.get("/occupancy/{zone_id}", response_model=ZoneOccupancyOut)
def get_zone_occupancy(zone_id: int, scope: TenantScope = Depends(get_tenant_scope),
                       db: Session = Depends(get_db)):
    zone = db.query(Zone).filter(Zone.tenant_id == scope.tenant_id, Zone.id == zone_id).first()
    if not zone:
        raise NotFoundError("zone", str(zone_id))
    return _with_capacity(db, scope.tenant_id, [zone])[0]


@router.post("/occupancy/{zone_id}/reconcile", response_model=ReconcileOut,
             summary="Recount occupied bays from stored bay states")
def reconcile_zone_counter(zone_id: int, scope: TenantScope = Depends(get_tenant_scope),
                           db: Session = Depends(get_db)):
    """Use after missed events or manual bay edits left the counter drifting."""
    return reconcile_zone(db, scope.tenant_id, zone_id)
