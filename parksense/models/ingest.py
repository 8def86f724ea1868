# parksense/models/ingest.py
"""
Batch ingestion / replay tables.

IngestFile   — one uploaded batch.
IngestEvent  — a staged, validated raw row; seq orders rows inside a file.
DeadLetter   — a rejected row (missing time or device id) kept for triage.
ReplayJob    — resumable cursor over a file's staged rows.
"""

from sqlalchemy import Column, Integer, String, DateTime, Float, Text, JSON, ForeignKey, UniqueConstraint
from parksense.database import Base


class IngestFile(Base):
    __tablename__ = "ingest_files"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    filename = Column(String(300))
    source = Column(String(100))
    uploaded_by = Column(String(100))
    status = Column(String(20), default="UPLOADED", nullable=False)   # UPLOADED | REPLAYING | DONE
    total_events = Column(Integer, default=0, nullable=False)
    valid_events = Column(Integer, default=0, nullable=False)
    invalid_events = Column(Integer, default=0, nullable=False)
    min_time = Column(DateTime)
    max_time = Column(DateTime)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<IngestFile {self.id} {self.filename} status={self.status}>"


class IngestEvent(Base):
    __tablename__ = "ingest_events"
    __table_args__ = (UniqueConstraint("file_id", "seq", name="uq_ingest_events_file_seq"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    file_id = Column(String(36), ForeignKey("ingest_files.id"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    original_time = Column(DateTime, nullable=False)
    dev_eui = Column(String(100), nullable=False)
    sensor_type = Column(String(30))
    gateway_serial = Column(String(100))
    raw_payload = Column(Text)
    decoded = Column(JSON)
    rssi = Column(Float)
    snr = Column(Float)
    battery_pct = Column(Float)
    zone_ref = Column(String(100))
    bay_ref = Column(String(100))
    created_at = Column(DateTime)

    def __repr__(self):
        return f"<IngestEvent file={self.file_id} seq={self.seq}>"


class DeadLetter(Base):
    __tablename__ = "ingest_dead_letters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    file_id = Column(String(36), ForeignKey("ingest_files.id"))   # NULL for live-path rejects
    row_index = Column(Integer)
    reason = Column(String(200), nullable=False)
    raw = Column(JSON)
    created_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<DeadLetter row={self.row_index} reason={self.reason}>"


class ReplayJob(Base):
    __tablename__ = "replay_jobs"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    file_id = Column(String(36), ForeignKey("ingest_files.id"), nullable=False)
    status = Column(String(20), default="CREATED", nullable=False)    # CREATED | RUNNING | DONE
    cursor_seq = Column(Integer)
    processed = Column(Integer, default=0, nullable=False)
    failed = Column(Integer, default=0, nullable=False)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<ReplayJob {self.id} cursor={self.cursor_seq} status={self.status}>"
