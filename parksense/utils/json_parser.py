# parksense/utils/json_parser.py
"""
Helpers for parsing sensor payloads and timestamps.
Decoded payloads may arrive as dicts, JSON strings, or not at all.
"""

import json
import math
from datetime import datetime, timezone
from typing import Optional, Any


def safe_parse_json(raw_body: bytes) -> Optional[Any]:
    """Parse JSON bytes safely. Returns None on error."""
    try:
        return json.loads(raw_body.decode("utf-8", errors="replace"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def normalize_json(value: Any) -> Optional[Any]:
    """Return a dict/list from a stored JSON value (object or string), else None."""
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return None
    return None


def first_present(data: dict, *keys: str) -> Any:
    """Value of the first key that is present and not None/blank."""
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO8601 string into a naive UTC datetime.
    Returns None for anything that is not a valid timestamp.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def as_number(value: Any) -> Optional[float]:
    """Finite float from a number or numeric string, else None. Booleans are not numbers."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
