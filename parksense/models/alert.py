# parksense/models/alert.py
"""
Alerts table — one row per (tenant, entity, alert type) breach lifecycle.
Opened by alert_service on first detection, refreshed on re-detection,
resolved automatically when the condition clears or manually by an operator.

open_key is "<tenant>|<entity>|<type>" while the alert is OPEN/ACKNOWLEDGED and
NULL once RESOLVED. Its unique constraint is what prevents two concurrent
evaluations from opening duplicate alerts.
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey, Index
from parksense.database import Base


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_tenant_status", "tenant_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    alert_type = Column(String(30), nullable=False, index=True)   # SENSOR_OFFLINE | LOW_BATTERY | POOR_SIGNAL | FLAPPING | DECODE_ERRORS
    severity = Column(String(10), nullable=False)                 # CRITICAL | WARNING | INFO
    status = Column(String(15), default="OPEN", nullable=False)   # OPEN | ACKNOWLEDGED | RESOLVED
    title = Column(String(300), nullable=False)
    message = Column(Text)
    meta = Column(JSON)
    entity_key = Column(String(100), nullable=False)
    open_key = Column(String(250), unique=True)
    site_id = Column(Integer, ForeignKey("sites.id"))
    zone_id = Column(Integer, ForeignKey("zones.id"))
    bay_id = Column(Integer, ForeignKey("bays.id"))
    sensor_id = Column(Integer, ForeignKey("sensors.id"))
    opened_at = Column(DateTime, nullable=False)
    first_detected_at = Column(DateTime, nullable=False)
    last_detected_at = Column(DateTime, nullable=False, index=True)
    acknowledged_at = Column(DateTime)
    acknowledged_by = Column(String(100))
    assigned_to = Column(String(100))
    resolved_at = Column(DateTime)
    resolved_by = Column(String(100))
    sla_due_at = Column(DateTime)
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<Alert {self.id} type={self.alert_type} severity={self.severity} status={self.status}>"


class AlertEvent(Base):
    __tablename__ = "alert_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    alert_id = Column(Integer, ForeignKey("alerts.id"), nullable=False, index=True)
    actor = Column(String(100))
    action = Column(String(20), nullable=False)   # OPEN | UPDATE | AUTO_RESOLVE | ACKNOWLEDGE | ASSIGN | RESOLVE
    note = Column(Text)
    meta = Column(JSON)
    created_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<AlertEvent {self.action} alert={self.alert_id}>"
