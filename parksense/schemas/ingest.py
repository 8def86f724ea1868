# parksense/schemas/ingest.py
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Optional


class UploadRequest(BaseModel):
    filename: str = "upload.json"
    source: str = "manual-upload"
    rows: list[Any] = Field(default_factory=list)


class IngestFileOut(BaseModel):
    id: str
    filename: str
    source: Optional[str]
    status: str
    total_events: int
    valid_events: int
    invalid_events: int
    min_time: Optional[datetime]
    max_time: Optional[datetime]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class ReplayRunRequest(BaseModel):
    file_id: str
    job_id: Optional[str] = None
    batch_size: Optional[int] = None


class ReplayJobOut(BaseModel):
    id: str
    file_id: str
    status: str
    cursor_seq: Optional[int]
    processed: int
    failed: int
    started_at: Optional[datetime]
    finished_at: Optional[datetime]

    class Config:
        from_attributes = True


class ReplayRunOut(BaseModel):
    job: ReplayJobOut
    inserted: int
    duplicates: int
    unbound: int
    transitions: int
    failed: int


class DeadLetterOut(BaseModel):
    id: int
    file_id: Optional[str]
    row_index: Optional[int]
    reason: str
    raw: Optional[Any]
    created_at: datetime

    class Config:
        from_attributes = True
