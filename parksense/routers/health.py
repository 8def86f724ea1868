# parksense/routers/health.py
"""
System health check endpoint.
Returns status of backend + DB + ingestion freshness.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import func, text
from sqlalchemy.orm import Session

from parksense.database import get_db
from parksense.models.sensor_event import SensorEvent
from parksense.utils.json_parser import utcnow

router = APIRouter()


@router.get("/health", summary="System health check")
def health_check(db: Session = Depends(get_db)):
    """
    Returns:
    - Backend status
    - Database connectivity
    - Time of the newest stored sensor event (any tenant)
    """
    result = {
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "backend": "ok",
        "database": "unknown",
        "last_event_at": None,
    }

    try:
        db.execute(text("SELECT 1"))
        result["database"] = "ok"
        last = db.query(func.max(SensorEvent.time)).scalar()
        result["last_event_at"] = last.isoformat() if last else None
    except Exception as e:
        result["database"] = f"error: {str(e)}"
        result["status"] = "degraded"

    return result
