# parksense/errors.py
"""
Error taxonomy for the ingestion and alerting core.

- ReadingValidationError → the row becomes a dead letter, the batch continues.
- NotFoundError          → surfaced to the caller as a client error (HTTP 404).

Missing tenant thresholds and duplicate alert inserts are not errors: the
first resolves to defaults, the second is folded into the refresh path.
"""


class ParkSenseError(Exception):
    """Base class for all domain errors raised by parksense services."""


class ReadingValidationError(ParkSenseError):
    def __init__(self, reason: str, raw: dict | None = None):
        super().__init__(reason)
        self.reason = reason
        self.raw = raw or {}


class NotFoundError(ParkSenseError):
    def __init__(self, entity: str, key: str | None):
        super().__init__(f"{entity} '{key}' not found")
        self.entity = entity
        self.key = key
