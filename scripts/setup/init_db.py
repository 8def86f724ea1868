# scripts/setup/init_db.py
"""
Initialize database — creates all tables, optionally seeds a demo car park.
Run once before first launch, or after adding new models.
Usage: python scripts/setup/init_db.py [--seed --tenant demo --bays 20 --price 10]
"""

import argparse
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from parksense.database import SessionLocal, create_tables, engine
from parksense.config import settings
from parksense.models.sensor import Sensor
from parksense.models.site import Bay, Site, Zone
from parksense.utils.json_parser import utcnow
from sqlalchemy import inspect, text


def seed_demo(tenant_id: str, bays: int, price_per_hour: float):
    """One site, one priced zone, N bays each bound to its own parking sensor."""
    db = SessionLocal()
    try:
        if db.query(Site).filter(Site.tenant_id == tenant_id).first():
            print(f"ℹ️  Tenant '{tenant_id}' already has a site — skipping seed")
            return
        now = utcnow()
        site = Site(tenant_id=tenant_id, name="Demo Car Park", center_lat=25.2048, center_lng=55.2708)
        db.add(site)
        db.flush()
        zone = Zone(tenant_id=tenant_id, site_id=site.id, name="Zone A", kind="PAID",
                    price_per_hour=price_per_hour, occupied_bays=0, updated_at=now)
        db.add(zone)
        db.flush()
        for i in range(1, bays + 1):
            bay = Bay(tenant_id=tenant_id, site_id=site.id, zone_id=zone.id, code=f"A-{i:03d}",
                      status="VACANT", lat=25.2048 + i * 0.00001, lng=55.2708)
            db.add(bay)
            db.flush()
            db.add(Sensor(tenant_id=tenant_id, dev_eui=f"70B3D5000000{i:04X}", sensor_type="PARKING",
                          status="ACTIVE", site_id=site.id, zone_id=zone.id, bay_id=bay.id,
                          install_date=now, created_at=now, updated_at=now))
        db.commit()
        print(f"✅ Seeded tenant '{tenant_id}': zone '{zone.name}' (id={zone.id}) with {bays} bays")
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Create tables and optionally seed demo data")
    parser.add_argument("--seed", action="store_true")
    parser.add_argument("--tenant", default="demo")
    parser.add_argument("--bays", type=int, default=20)
    parser.add_argument("--price", type=float, default=10.0)
    args = parser.parse_args()

    print("🗄️  ParkSense DB Initialization")
    print("=" * 40)
    print(f"📡 Database: {settings.DATABASE_URL}")

    # Test connection
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("✅ Database connection OK")
    except Exception as e:
        print(f"❌ Cannot connect to database: {e}")
        print("\nMake sure PostgreSQL is running:")
        print("  sudo systemctl start postgresql")
        sys.exit(1)

    print("\n📋 Creating tables...")
    create_tables()
    print("✅ All tables created")

    tables = sorted(inspect(engine).get_table_names())
    print(f"\n📊 Tables in database ({len(tables)} total):")
    for t in tables:
        print(f"   ✓ {t}")

    if args.seed:
        print()
        seed_demo(args.tenant, args.bays, args.price)

    print("\n🎉 Database ready! You can now start the backend:")
    print("   uvicorn parksense.main:app --host 0.0.0.0 --port 8080 --reload")


if __name__ == "__main__":
    main()
