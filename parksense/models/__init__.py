# ParkSense database models
# Import all models here for SQLAlchemy discovery

from parksense.models.site import Site, Zone, Bay                      # noqa
from parksense.models.sensor import Sensor, Gateway                    # noqa
from parksense.models.sensor_event import SensorEvent, ParkingEvent    # noqa
from parksense.models.alert import Alert, AlertEvent                   # noqa
from parksense.models.tenant_settings import TenantSettings            # noqa
from parksense.models.ingest import IngestFile, IngestEvent, DeadLetter, ReplayJob  # noqa
