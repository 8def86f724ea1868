# parksense/schemas/alert.py
from pydantic import BaseModel
from datetime import datetime
from typing import Any, Literal, Optional


class AlertOut(BaseModel):
    id: int
    alert_type: str
    severity: str
    status: str
    title: str
    message: Optional[str]
    meta: Optional[Any] = None
    opened_at: Optional[datetime]
    first_detected_at: Optional[datetime]
    last_detected_at: Optional[datetime]
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    assigned_to: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    sla_due_at: Optional[datetime]
    sensor_id: Optional[int] = None
    bay_id: Optional[int] = None
    zone_id: Optional[int] = None

    class Config:
        from_attributes = True


class AlertEventOut(BaseModel):
    id: int
    alert_id: int
    actor: Optional[str]
    action: str
    note: Optional[str]
    meta: Optional[Any] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AlertAction(BaseModel):
    action: Literal["ACKNOWLEDGE", "ASSIGN_TO_ME", "RESOLVE"]
    note: Optional[str] = None


class AlertScanRequest(BaseModel):
    zone_id: Optional[int] = None


class AlertScanOut(BaseModel):
    created: int
    updated: int
    resolved: int
    checked_sensors: int
    failed_sensors: int = 0
