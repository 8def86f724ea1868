# parksense/database.py
"""
Database connection, session management, and table creation.
Uses SQLAlchemy with PostgreSQL (SQLite works for local runs and tests).
All models are auto-imported here so create_tables() creates every table in one call.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from parksense.config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,   # Auto-reconnect if DB connection drops
        "pool_size": 10,
        "max_overflow": 20,
    }


def enable_sqlite_savepoints(target_engine):
    """
    pysqlite defers BEGIN on its own, which breaks SAVEPOINT (begin_nested).
    Let SQLAlchemy emit BEGIN itself instead.
    """
    @event.listens_for(target_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return target_engine


engine = create_engine(settings.DATABASE_URL, echo=False, **_engine_kwargs(settings.DATABASE_URL))
if settings.DATABASE_URL.startswith("sqlite"):
    enable_sqlite_savepoints(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency — yields a DB session and closes it after request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind=None):
    """
    Creates all DB tables on startup. Safe to call multiple times.
    Import all models here so SQLAlchemy knows about them.
    """
    # Topology
    from parksense.models.site import Site, Zone, Bay                  # noqa
    from parksense.models.sensor import Sensor, Gateway                # noqa
    # Event history
    from parksense.models.sensor_event import SensorEvent, ParkingEvent  # noqa
    # Alerts + thresholds
    from parksense.models.alert import Alert, AlertEvent               # noqa
    from parksense.models.tenant_settings import TenantSettings        # noqa
    # Batch ingestion
    from parksense.models.ingest import IngestFile, IngestEvent, DeadLetter, ReplayJob  # noqa

    Base.metadata.create_all(bind=bind or engine)
