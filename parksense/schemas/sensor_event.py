# parksense/schemas/sensor_event.py
from pydantic import BaseModel
from datetime import datetime
from typing import Any, Optional


class SensorEventOut(BaseModel):
    id: int
    sensor_id: int
    gateway_id: Optional[int]
    time: datetime
    kind: str
    decoded: Optional[Any]
    raw_payload: Optional[str]
    rssi: Optional[float]
    snr: Optional[float]
    battery_pct: Optional[float]
    source_file_id: Optional[str] = None
    source_seq: Optional[int] = None

    class Config:
        from_attributes = True


class IngestResult(BaseModel):
    status: str                              # ok | invalid
    reason: Optional[str] = None
    event_id: Optional[int] = None
    sensor_id: Optional[int] = None
    bay_id: Optional[int] = None
    zone_id: Optional[int] = None
    previous_status: Optional[str] = None
    bay_status: Optional[str] = None
    transition: Optional[str] = None
    duration_minutes: Optional[int] = None
    revenue: Optional[float] = None
    warnings: list[str] = []
