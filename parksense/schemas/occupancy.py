# parksense/schemas/occupancy.py
from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class ZoneOccupancyOut(BaseModel):
    id: int
    site_id: Optional[int]
    name: str
    kind: Optional[str] = None
    price_per_hour: Optional[float] = None
    total_bays: int = 0
    occupied_bays: int
    occupancy_percent: Optional[float] = None
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class ReconcileOut(BaseModel):
    zone_id: int
    previous: int
    occupied_bays: int
    drift: int


class BayStateOut(BaseModel):
    bay_id: int
    bay_code: Optional[str]
    zone_id: Optional[int]
    sensor_id: Optional[int]
    dev_eui: Optional[str]
    state: str
    color: str
    confidence: float
    age_minutes: Optional[int]
    last_seen: Optional[datetime]
    battery_pct: Optional[float]
    lat: Optional[float]
    lng: Optional[float]

    class Config:
        from_attributes = True


class MapSummary(BaseModel):
    occupied: int
    free: int
    offline: int
    unknown: int
    total: int


class MapOut(BaseModel):
    generated_at: datetime
    summary: MapSummary
    bays: list[BayStateOut]
