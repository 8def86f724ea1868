# parksense/services/replay_service.py
"""
Batch replay of an uploaded file.

Each call advances one ReplayJob by one batch of staged IngestEvents
(seq > cursor_seq, in seq order). Every row is committed on its own, and the
cursor only moves after the batch, so an interrupted run can be resumed with
the same job id: rows that were already applied hit the (tenant, file, seq)
unique key and are skipped without touching bay state again.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from parksense.errors import NotFoundError
from parksense.models.ingest import IngestEvent, IngestFile, ReplayJob
from parksense.services.event_normalizer import (
    ensure_gateway, ensure_sensor, insert_event, reading_from_staged, touch_sensor,
)
from parksense.services.occupancy_service import apply_reading, resolve_binding
from parksense.utils.json_parser import utcnow
from parksense.utils.logger import get_logger

logger = get_logger(__name__)

MIN_BATCH_SIZE = 50
MAX_BATCH_SIZE = 1000


@dataclass
class ReplayStep:
    job: ReplayJob
    inserted: int = 0
    duplicates: int = 0
    unbound: int = 0
    failed: int = 0
    transitions: int = 0

    @property
    def done(self) -> bool:
        return self.job.status == "DONE"


def clamp_batch_size(batch_size: Optional[int], default: int) -> int:
    return min(MAX_BATCH_SIZE, max(MIN_BATCH_SIZE, batch_size or default))


def _get_or_create_job(db: Session, tenant_id: str, file_id: str, job_id: Optional[str]) -> ReplayJob:
    job = None
    if job_id:
        job = db.query(ReplayJob).filter(ReplayJob.id == job_id, ReplayJob.tenant_id == tenant_id).first()
    if job is None:
        now = utcnow()
        job = ReplayJob(id=job_id or str(uuid.uuid4()), tenant_id=tenant_id, file_id=file_id,
                        status="CREATED", processed=0, failed=0, created_at=now, updated_at=now)
        db.add(job)
        db.flush()
    elif job.file_id != file_id:
        raise NotFoundError("replay job for file", file_id)
    return job


def _replay_row(db: Session, tenant_id: str, file_id: str, row: IngestEvent, step: ReplayStep):
    reading = reading_from_staged(row)
    gateway = ensure_gateway(db, tenant_id, reading.gateway_serial)
    sensor = ensure_sensor(db, tenant_id, reading.dev_eui, reading.sensor_type)
    event = insert_event(db, tenant_id, sensor, reading, gateway, source_file_id=file_id, source_seq=row.seq)
    if event is None:
        step.duplicates += 1
        return
    step.inserted += 1
    touch_sensor(db, sensor, reading)

    try:
        bay, zone = resolve_binding(db, tenant_id, reading, sensor)
    except NotFoundError as e:
        # event is kept for liveness/health; occupancy has nothing to apply to
        step.unbound += 1
        logger.debug(f"[REPLAY] seq={row.seq} {reading.dev_eui}: {e}")
        return
    if apply_reading(db, tenant_id, bay, zone, reading, sensor_id=sensor.id).state_changed:
        step.transitions += 1


def run_replay(db: Session, tenant_id: str, file_id: str, job_id: Optional[str] = None,
               batch_size: int = 250) -> ReplayStep:
    """
    Advance the replay of one uploaded file by a single batch.
    Call repeatedly with the returned job id until the job is DONE.
    """
    ingest_file = db.query(IngestFile).filter(IngestFile.id == file_id, IngestFile.tenant_id == tenant_id).first()
    if not ingest_file:
        raise NotFoundError("ingest file", file_id)

    job = _get_or_create_job(db, tenant_id, file_id, job_id)
    now = utcnow()
    job.status = "RUNNING"
    job.started_at = job.started_at or now
    job.updated_at = now
    ingest_file.status = "REPLAYING"
    ingest_file.updated_at = now
    db.commit()

    q = db.query(IngestEvent).filter(IngestEvent.tenant_id == tenant_id, IngestEvent.file_id == file_id)
    if job.cursor_seq is not None:
        q = q.filter(IngestEvent.seq > job.cursor_seq)
    rows = q.order_by(IngestEvent.seq.asc()).limit(batch_size).all()

    step = ReplayStep(job=job)
    if not rows:
        now = utcnow()
        job.status = "DONE"
        job.finished_at = now
        job.updated_at = now
        ingest_file.status = "DONE"
        ingest_file.updated_at = now
        db.commit()
        logger.info(f"[REPLAY] Job {job.id} done: processed={job.processed} failed={job.failed}")
        return step

    last_seq = job.cursor_seq
    for row in rows:
        last_seq = row.seq
        try:
            _replay_row(db, tenant_id, file_id, row, step)
            db.commit()
        except Exception as e:
            db.rollback()
            step.failed += 1
            logger.error(f"[REPLAY] Job {job.id} seq={row.seq} failed: {e}", exc_info=True)

    job.cursor_seq = last_seq
    job.processed = (job.processed or 0) + len(rows)
    job.failed = (job.failed or 0) + step.failed
    job.updated_at = utcnow()
    db.commit()

    logger.info(
        f"[REPLAY] Job {job.id} cursor={job.cursor_seq}: inserted={step.inserted} duplicates={step.duplicates} "
        f"unbound={step.unbound} transitions={step.transitions} failed={step.failed}"
    )
    return step
