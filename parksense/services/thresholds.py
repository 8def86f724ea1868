# parksense/services/thresholds.py
"""
Per-tenant operational thresholds.

One canonical default table (AlertThresholds defaults). Every evaluator —
classifier, health scorer, alert engine — receives an AlertThresholds instance
built here; none of them re-declares a default. A tenant without a settings
row, or with a partial / malformed row, silently falls back to the defaults.

Stored and exposed as a flat camelCase map (offlineMinutes, lowBatteryPct, ...).
"""

import re
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional
from sqlalchemy.orm import Session
from parksense.models.tenant_settings import TenantSettings
from parksense.utils.json_parser import as_number, normalize_json, utcnow
from parksense.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AlertThresholds:
    offline_minutes: float = 60
    low_battery_pct: float = 20
    stale_event_minutes: float = 15

    # Signal
    poor_rssi_threshold: float = -115
    poor_snr_threshold: float = 0
    signal_lookback_hours: float = 24
    signal_min_samples: float = 3

    # Flapping
    flapping_window_minutes: float = 30
    flapping_max_changes: float = 6

    # Decode / ingest errors (dead letters)
    dead_letters_window_hours: float = 24
    dead_letters_critical: float = 50
    dead_letters_warning: float = 10

    # SLA per severity
    sla_hours_critical: float = 4
    sla_hours_warning: float = 24
    sla_hours_info: float = 72

    def sla_hours(self, severity: str) -> float:
        if severity == "CRITICAL":
            return self.sla_hours_critical
        if severity == "WARNING":
            return self.sla_hours_warning
        return self.sla_hours_info

    def as_map(self) -> dict:
        """Flat camelCase map, the shape stored in tenant_settings.thresholds."""
        return {_to_camel(f.name): getattr(self, f.name) for f in fields(self)}


def _to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _to_snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


DEFAULT_THRESHOLDS = AlertThresholds()
THRESHOLD_KEYS = tuple(_to_camel(f.name) for f in fields(AlertThresholds))


def thresholds_from_mapping(raw: Optional[Mapping[str, Any]]) -> AlertThresholds:
    """Build thresholds from a flat camelCase map. Missing or non-numeric keys use defaults."""
    raw = raw if isinstance(raw, Mapping) else {}
    values = {}
    for key in THRESHOLD_KEYS:
        attr = _to_snake(key)
        n = as_number(raw.get(key))
        values[attr] = n if n is not None else getattr(DEFAULT_THRESHOLDS, attr)
    return AlertThresholds(**values)


def resolve_thresholds(db: Session, tenant_id: str) -> AlertThresholds:
    row = db.query(TenantSettings).filter(TenantSettings.tenant_id == tenant_id).first()
    if row is None:
        logger.debug(f"No thresholds for tenant {tenant_id} — using defaults")
        return DEFAULT_THRESHOLDS
    return thresholds_from_mapping(normalize_json(row.thresholds))


def save_thresholds(db: Session, tenant_id: str, values: Mapping[str, Any],
                    actor: Optional[str] = None) -> TenantSettings:
    """
    Merge recognized keys into the tenant's thresholds and bump the version.
    Unknown keys are dropped; recognized keys must be finite numbers.
    """
    updates = {}
    for key, value in values.items():
        if key not in THRESHOLD_KEYS:
            continue
        n = as_number(value)
        if n is None:
            raise ValueError(f"Threshold '{key}' must be a finite number")
        updates[key] = n

    row = db.query(TenantSettings).filter(TenantSettings.tenant_id == tenant_id).first()
    if row is None:
        row = TenantSettings(tenant_id=tenant_id, thresholds=updates, version=1)
        db.add(row)
    else:
        merged = dict(normalize_json(row.thresholds) or {})
        merged.update(updates)
        row.thresholds = merged
        row.version = (row.version or 0) + 1
    row.updated_by = actor
    row.updated_at = utcnow()
    db.commit()
    logger.info(f"Thresholds for tenant {tenant_id} updated to v{row.version}: {sorted(updates)}")
    return row
