# tests/conftest.py
"""Shared fixtures: an in-memory SQLite database and a small tenant topology."""

import sys
import os
import tempfile
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Must be set before parksense.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "parksense-test-logs"))
os.environ.setdefault("API_KEY", "")

import pytest
from datetime import datetime
from types import SimpleNamespace
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from parksense.database import create_tables, enable_sqlite_savepoints
from parksense.models.sensor import Sensor
from parksense.models.site import Bay, Site, Zone

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    enable_sqlite_savepoints(eng)
    create_tables(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def topology(db):
    """
    tenant-a: one site, zone "Zone A" at 10 AED/hr with bays A-1..A-3.
    A-1 and A-2 have bound sensors, A-3 has none. SENSOR-FREE is unbound.
    """
    installed = datetime(2024, 1, 1, 0, 0, 0)
    site = Site(tenant_id=TENANT, name="Mall", center_lat=25.0, center_lng=55.0)
    db.add(site)
    db.flush()
    zone = Zone(tenant_id=TENANT, site_id=site.id, name="Zone A", kind="paid", price_per_hour=10.0,
                occupied_bays=0)
    free_zone = Zone(tenant_id=TENANT, site_id=site.id, name="Zone F", kind="free", price_per_hour=None,
                     occupied_bays=0)
    db.add_all([zone, free_zone])
    db.flush()
    bays = [Bay(tenant_id=TENANT, site_id=site.id, zone_id=zone.id, code=f"A-{i}", status="VACANT",
                lat=25.0 + i / 1000, lng=55.0) for i in (1, 2, 3)]
    free_bay = Bay(tenant_id=TENANT, site_id=site.id, zone_id=free_zone.id, code="F-1", status="VACANT")
    db.add_all(bays + [free_bay])
    db.flush()
    sensors = [
        Sensor(tenant_id=TENANT, dev_eui=f"SENSOR-{i}", sensor_type="PARKING", status="ACTIVE",
               site_id=site.id, zone_id=zone.id, bay_id=bays[i - 1].id, install_date=installed,
               created_at=installed, updated_at=installed)
        for i in (1, 2)
    ]
    free_sensor = Sensor(tenant_id=TENANT, dev_eui="SENSOR-F", sensor_type="PARKING", status="ACTIVE",
                         site_id=site.id, zone_id=free_zone.id, bay_id=free_bay.id, install_date=installed,
                         created_at=installed, updated_at=installed)
    unbound = Sensor(tenant_id=TENANT, dev_eui="SENSOR-FREE", sensor_type="PARKING", status="ACTIVE",
                     created_at=installed, updated_at=installed)
    db.add_all(sensors + [free_sensor, unbound])
    db.commit()
    return SimpleNamespace(site=site, zone=zone, free_zone=free_zone, bays=bays, free_bay=free_bay,
                           sensors=sensors, free_sensor=free_sensor, unbound=unbound)
