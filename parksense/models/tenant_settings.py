# parksense/models/tenant_settings.py
"""
Per-tenant operational thresholds (flat JSON map), versioned.
Read-mostly; written by an admin action. A missing row means "use defaults".
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from parksense.database import Base


class TenantSettings(Base):
    __tablename__ = "tenant_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), unique=True, nullable=False, index=True)
    thresholds = Column(JSON)
    version = Column(Integer, default=1, nullable=False)
    updated_by = Column(String(100))
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<TenantSettings {self.tenant_id} v{self.version}>"
