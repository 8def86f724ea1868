# parksense/routers/tenant_settings.py
"""Per-tenant alert/classification thresholds."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from parksense.database import get_db
from parksense.models.tenant_settings import TenantSettings
from parksense.schemas.thresholds import ThresholdsOut, ThresholdsUpdate
from parksense.services.tenant_scope import TenantScope, get_tenant_scope
from parksense.services.thresholds import DEFAULT_THRESHOLDS, resolve_thresholds, save_thresholds

router = APIRouter()


def _thresholds_out(db: Session, tenant_id: str) -> dict:
    row = db.query(TenantSettings).filter(TenantSettings.tenant_id == tenant_id).first()
    return {
        "thresholds": resolve_thresholds(db, tenant_id).as_map(),
        "defaults": DEFAULT_THRESHOLDS.as_map(),
        "version": row.version if row else 0,
        "updated_by": row.updated_by if row else None,
        "updated_at": row.updated_at if row else None,
    }


@router.get("/settings/thresholds", response_model=ThresholdsOut)
def get_thresholds(scope: TenantScope = Depends(get_tenant_scope), db: Session = Depends(get_db)):
    """Effective thresholds (tenant overrides over system defaults)."""
    return _thresholds_out(db, scope.tenant_id)


@router.put("/settings/thresholds", response_model=ThresholdsOut)
def update_thresholds(body: ThresholdsUpdate, scope: TenantScope = Depends(get_tenant_scope),
                      db: Session = Depends(get_db)):
    try:
        save_thresholds(db, scope.tenant_id, body.thresholds, actor=scope.user_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _thresholds_out(db, scope.tenant_id)
