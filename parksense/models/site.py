# parksense/models/site.py
"""
Parking topology: sites, zones and bays.

Zone.occupied_bays is maintained incrementally by the occupancy state machine
through atomic deltas and must equal the number of OCCUPIED bays in the zone.
Bay.occupied_since is set if and only if Bay.status == "OCCUPIED".
"""

import json
import math

from sqlalchemy import Column, Integer, String, DateTime, Float, Text, ForeignKey, Index
from parksense.database import Base


def _is_point(p) -> bool:
    """GeoJSON position: [lng, lat, ...] with finite numeric coordinates."""
    if not isinstance(p, (list, tuple)) or len(p) < 2:
        return False
    return all(isinstance(c, (int, float)) and not isinstance(c, bool) and math.isfinite(c) for c in p[:2])


class Site(Base):
    __tablename__ = "sites"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    address = Column(Text)
    center_lat = Column(Float)
    center_lng = Column(Float)

    def __repr__(self):
        return f"<Site {self.id} {self.name}>"


class Zone(Base):
    __tablename__ = "zones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    site_id = Column(Integer, ForeignKey("sites.id"))
    name = Column(String(200), nullable=False)
    kind = Column(String(50))                 # paid | free | private
    price_per_hour = Column(Float)            # AED / hour, NULL = no revenue
    occupied_bays = Column(Integer, default=0, nullable=False)
    geojson = Column(Text)
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<Zone {self.id} {self.name} occupied={self.occupied_bays}>"


class Bay(Base):
    __tablename__ = "bays"
    __table_args__ = (
        Index("ix_bays_tenant_zone", "tenant_id", "zone_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    site_id = Column(Integer, ForeignKey("sites.id"))
    zone_id = Column(Integer, ForeignKey("zones.id"))
    code = Column(String(50))
    status = Column(String(20), default="VACANT", nullable=False)   # VACANT | OCCUPIED
    occupied_since = Column(DateTime)
    last_change = Column(DateTime)
    last_heartbeat = Column(DateTime)
    lat = Column(Float)
    lng = Column(Float)
    geojson = Column(Text)

    def position(self):
        """(lat, lng) of the bay, falling back to the centroid of its polygon."""
        if self.lat is not None and self.lng is not None:
            return self.lat, self.lng
        if not self.geojson:
            return None, None
        try:
            geometry = json.loads(self.geojson)
        except ValueError:
            return None, None
        if isinstance(geometry, dict) and "geometry" in geometry:
            geometry = geometry["geometry"]
        if not isinstance(geometry, dict) or geometry.get("type") != "Polygon":
            return None, None
        rings = geometry.get("coordinates")
        if not isinstance(rings, list) or not rings or not isinstance(rings[0], list):
            return None, None
        ring = rings[0]
        if len(ring) > 1 and ring[0] == ring[-1]:
            ring = ring[:-1]
        if not ring or not all(_is_point(p) for p in ring):
            return None, None
        lng = sum(p[0] for p in ring) / len(ring)
        lat = sum(p[1] for p in ring) / len(ring)
        return lat, lng

    def __repr__(self):
        return f"<Bay {self.id} code={self.code} status={self.status}>"
