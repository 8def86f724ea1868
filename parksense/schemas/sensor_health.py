# parksense/schemas/sensor_health.py
from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class SensorHealthMetricsOut(BaseModel):
    days_in_use: Optional[int] = None
    last_seen: Optional[datetime] = None
    age_minutes: Optional[int] = None
    last_rssi: Optional[float] = None
    last_snr: Optional[float] = None
    avg_rssi: Optional[float] = None
    avg_snr: Optional[float] = None
    signal_samples: Optional[int] = None
    battery_pct: Optional[float] = None
    min_battery: Optional[float] = None
    max_battery: Optional[float] = None
    battery_drain_per_day: Optional[float] = None
    flap_changes: Optional[int] = None

    class Config:
        from_attributes = True


class SensorHealthOut(BaseModel):
    sensor_id: int
    dev_eui: str
    bay_id: Optional[int]
    zone_id: Optional[int]
    score: int
    band: str
    metrics: SensorHealthMetricsOut
