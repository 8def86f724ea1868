# parksense/routers/replay.py
"""
Batch upload + resumable replay.
POST /replay/upload       — stage raw rows (invalid rows become dead letters)
POST /replay/run          — advance a replay job by one batch
GET  /replay/dead-letters — rows that could not be ingested
"""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import cast, String
from sqlalchemy.orm import Session

from parksense.config import settings
from parksense.database import get_db
from parksense.models.ingest import DeadLetter
from parksense.schemas.ingest import (
    DeadLetterOut, IngestFileOut, ReplayRunOut, ReplayRunRequest, UploadRequest,
)
from parksense.services.event_normalizer import stage_upload
from parksense.services.replay_service import clamp_batch_size, run_replay
from parksense.services.tenant_scope import TenantScope, get_tenant_scope

router = APIRouter()


@router.post("/replay/upload", response_model=IngestFileOut, summary="Stage a batch of readings")
def upload_batch(body: UploadRequest, scope: TenantScope = Depends(get_tenant_scope),
                 db: Session = Depends(get_db)):
    return stage_upload(db, scope.tenant_id, body.rows, filename=body.filename,
                        source=body.source, uploaded_by=scope.user_id)


@router.post("/replay/run", response_model=ReplayRunOut, summary="Advance a replay job one batch")
def run_replay_batch(body: ReplayRunRequest, scope: TenantScope = Depends(get_tenant_scope),
                     db: Session = Depends(get_db)):
    """Call repeatedly with the returned job id until job.status is DONE."""
    batch_size = clamp_batch_size(body.batch_size, settings.REPLAY_BATCH_SIZE)
    step = run_replay(db, scope.tenant_id, body.file_id, job_id=body.job_id, batch_size=batch_size)
    return {
        "job": step.job,
        "inserted": step.inserted,
        "duplicates": step.duplicates,
        "unbound": step.unbound,
        "transitions": step.transitions,
        "failed": step.failed,
    }


@router.get("/replay/dead-letters", response_model=list[DeadLetterOut], summary="List dead letters")
def list_dead_letters(file_id: Optional[str] = None, q: Optional[str] = None, limit: int = 50, offset: int = 0,
                      scope: TenantScope = Depends(get_tenant_scope), db: Session = Depends(get_db)):
    query = db.query(DeadLetter).filter(DeadLetter.tenant_id == scope.tenant_id)
    if file_id:
        query = query.filter(DeadLetter.file_id == file_id)
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(DeadLetter.reason.ilike(like) | cast(DeadLetter.raw, String).ilike(like))
    limit = min(max(limit, 1), settings.MAX_QUERY_ROWS)
    return (
        query.order_by(DeadLetter.created_at.desc(), DeadLetter.id.desc())
        .offset(max(offset, 0))
        .limit(limit)
        .all()
    )
