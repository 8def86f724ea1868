# parksense/models/sensor_event.py
"""
Event history.

SensorEvent  — immutable, append-only record of one sensor reading.
               (tenant_id, source_file_id, source_seq) is unique so a batch
               replay of the same row never inserts twice. Live readings carry
               no source key (NULLs never collide).
ParkingEvent — ARRIVE / LEAVE records emitted by the occupancy state machine.
"""

from sqlalchemy import Column, Integer, String, DateTime, Float, Text, JSON, ForeignKey, Index, UniqueConstraint
from parksense.database import Base


class SensorEvent(Base):
    __tablename__ = "sensor_events"
    __table_args__ = (
        UniqueConstraint("tenant_id", "source_file_id", "source_seq", name="uq_sensor_events_source"),
        Index("ix_sensor_events_sensor_time", "tenant_id", "sensor_id", "time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    sensor_id = Column(Integer, ForeignKey("sensors.id"), nullable=False)
    gateway_id = Column(Integer, ForeignKey("gateways.id"))
    time = Column(DateTime, nullable=False)
    kind = Column(String(20), default="UPLINK", nullable=False)
    decoded = Column(JSON)
    raw_payload = Column(Text)
    rssi = Column(Float)
    snr = Column(Float)
    battery_pct = Column(Float)
    source_file_id = Column(String(36))
    source_seq = Column(Integer)
    created_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<SensorEvent {self.id} sensor={self.sensor_id} time={self.time}>"


class ParkingEvent(Base):
    __tablename__ = "parking_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    zone_id = Column(Integer, ForeignKey("zones.id"), nullable=False, index=True)
    bay_id = Column(Integer, ForeignKey("bays.id"), nullable=False, index=True)
    sensor_id = Column(Integer, ForeignKey("sensors.id"))
    event_type = Column(String(10), nullable=False)     # ARRIVE | LEAVE
    timestamp = Column(DateTime, nullable=False, index=True)
    detection_mode = Column(String(30))
    duration_minutes = Column(Integer)                  # LEAVE only
    revenue = Column(Float)                             # LEAVE only, NULL when the zone is unpriced
    created_at = Column(DateTime)

    def __repr__(self):
        return f"<ParkingEvent {self.event_type} bay={self.bay_id} at={self.timestamp}>"
