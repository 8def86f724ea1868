# parksense/models/sensor.py
"""
Sensors and gateways. Created on first event (auto-provisioned, unbound) or by
explicit provisioning; never hard-deleted, only their status changes.
A bay has at most one sensor: sensors.bay_id is unique.
"""

from sqlalchemy import Column, Integer, String, DateTime, Float, ForeignKey, UniqueConstraint
from parksense.database import Base


class Gateway(Base):
    __tablename__ = "gateways"
    __table_args__ = (UniqueConstraint("tenant_id", "serial", name="uq_gateways_tenant_serial"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    serial = Column(String(100), nullable=False)
    name = Column(String(200))
    status = Column(String(20), default="ACTIVE", nullable=False)
    last_seen = Column(DateTime)
    created_at = Column(DateTime)

    def __repr__(self):
        return f"<Gateway {self.serial}>"


class Sensor(Base):
    __tablename__ = "sensors"
    __table_args__ = (UniqueConstraint("tenant_id", "dev_eui", name="uq_sensors_tenant_dev_eui"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    dev_eui = Column(String(100), nullable=False)
    sensor_type = Column(String(30), default="UNASSIGNED", nullable=False)  # PARKING | WEATHER | OTHER | UNASSIGNED
    status = Column(String(20), default="ACTIVE", nullable=False)           # ACTIVE | INACTIVE | RETIRED
    last_seen = Column(DateTime)
    battery_pct = Column(Float)
    site_id = Column(Integer, ForeignKey("sites.id"))
    zone_id = Column(Integer, ForeignKey("zones.id"))
    bay_id = Column(Integer, ForeignKey("bays.id"), unique=True)
    gateway_id = Column(Integer, ForeignKey("gateways.id"))
    install_date = Column(DateTime)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<Sensor {self.dev_eui} bay={self.bay_id} status={self.status}>"
