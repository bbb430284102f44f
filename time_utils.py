"""Timezone helpers for consistent event-time handling across the engine."""

from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pandas as pd

from runtime.defaults import DEFAULT_TIMEZONE_NAME


def get_timezone(timezone_name: str) -> ZoneInfo:
    """Return a valid ZoneInfo object, falling back to the default timezone."""
    try:
        return ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, TypeError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE_NAME)


def get_config_tz(config: dict) -> ZoneInfo:
    return get_timezone((config or {}).get("TIMEZONE_NAME", DEFAULT_TIMEZONE_NAME))


def now_tz(config: dict) -> datetime:
    """Return timezone-aware current datetime in configured timezone."""
    return datetime.now(get_config_tz(config))


def normalize_timestamp_value(value: Any, tz: ZoneInfo, naive_policy: str = "utc") -> Optional[datetime]:
    """
    Normalize a timestamp-like value to an aware datetime in `tz`.

    Accepts datetimes, ISO 8601 strings and epoch seconds (int/float). Returns
    None when the value is missing or cannot be parsed.

    Policy for naive timestamps:
    - "utc" (default): interpret naive values as UTC. Device clocks and the
      network server report UTC.
    - "config_tz": interpret naive values as the configured timezone. Wall
      times that do not exist or are ambiguous there return None.
    """
    if value is None or isinstance(value, bool):
        return None

    try:
        if isinstance(value, (int, float)):
            ts = pd.Timestamp(float(value), unit="s", tz=timezone.utc)
        else:
            ts = pd.Timestamp(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if pd.isna(ts):
        return None

    try:
        if ts.tzinfo is None:
            # Wall times skipped or repeated by a DST change localize to NaT.
            local_tz = tz if naive_policy == "config_tz" else timezone.utc
            ts = ts.tz_localize(local_tz, nonexistent="NaT", ambiguous="NaT")
            if pd.isna(ts):
                return None
        return ts.tz_convert(tz).to_pydatetime()
    except (TypeError, ValueError, OverflowError):
        return None


def serialize_iso_with_tz(value: Any, tz: ZoneInfo = None) -> str:
    """Serialize timestamp-like value as ISO 8601 string with timezone offset."""
    if value is None:
        return ""
    ts = pd.Timestamp(value)
    if pd.isna(ts):
        return ""

    if ts.tzinfo is None:
        ts = ts.tz_localize(timezone.utc)
    if tz is not None:
        ts = ts.tz_convert(tz)
    return ts.isoformat()
