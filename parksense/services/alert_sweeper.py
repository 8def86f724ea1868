# parksense/services/alert_sweeper.py
"""
Alert sweep service — periodically runs the alert scan for every tenant.

Live ingestion only checks battery levels as readings arrive. Conditions that
are defined by the *absence* of readings (offline sensors) or by trends over
a window (poor signal, flapping, dead-letter spikes) need a periodic sweep.
"""

import asyncio
from datetime import datetime
from typing import List, Optional

from sqlalchemy import union
from sqlalchemy.orm import Session

from parksense.config import settings
from parksense.database import SessionLocal
from parksense.models.ingest import DeadLetter
from parksense.models.sensor import Sensor
from parksense.services.alert_service import run_alert_scan
from parksense.utils.logger import get_logger

logger = get_logger(__name__)

# Retry delay in seconds after a failed sweep (doubles on each failure, max 10 min)
_MIN_BACKOFF = 5
_MAX_BACKOFF = 600


def tenants_to_sweep(db: Session) -> List[str]:
    """Tenants that have sensors or dead letters."""
    stmt = union(
        db.query(Sensor.tenant_id).distinct().statement,
        db.query(DeadLetter.tenant_id).distinct().statement,
    )
    return sorted(row[0] for row in db.execute(stmt) if row[0])


def sweep_once(now: Optional[datetime] = None) -> dict:
    """One pass over all tenants, each in its own session. Returns per-tenant results."""
    db = SessionLocal()
    try:
        tenants = tenants_to_sweep(db)
    finally:
        db.close()

    results = {}
    for tenant_id in tenants:
        db = SessionLocal()
        try:
            results[tenant_id] = run_alert_scan(db, tenant_id, actor="sweeper", now=now)
        except Exception as e:
            logger.error(f"❌ Alert sweep failed for tenant {tenant_id}: {e}", exc_info=True)
        finally:
            db.close()
    return results


async def start_alert_sweeper(interval_seconds: Optional[int] = None):
    """
    Run sweeps forever at a fixed interval.
    Called once at backend startup when ALERT_SWEEP_ENABLED is set.
    """
    interval = interval_seconds or settings.ALERT_SWEEP_INTERVAL_SECONDS
    backoff = _MIN_BACKOFF
    logger.info(f"🚀 Alert sweeper started (every {interval}s)")

    while True:
        try:
            # scans are blocking DB work; keep them off the event loop
            results = await asyncio.to_thread(sweep_once)
            logger.info(f"🔔 Alert sweep complete for {len(results)} tenant(s)")
            backoff = _MIN_BACKOFF
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("🛑 Alert sweeper stopped")
            raise
        except Exception as e:
            logger.error(f"❌ Alert sweep error: {e}. Retry in {backoff}s", exc_info=True)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, _MAX_BACKOFF)
