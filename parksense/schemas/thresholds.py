# parksense/schemas/thresholds.py
from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class ThresholdsOut(BaseModel):
    thresholds: dict[str, float]
    defaults: dict[str, float]
    version: int
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class ThresholdsUpdate(BaseModel):
    """Partial update, camelCase keys as shown by GET (e.g. offlineMinutes)."""
    thresholds: dict[str, float]
