"""Shared parsing helpers for simple runtime/config coercions."""

import math


def parse_bool(value, default):
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ["1", "true", "yes", "on"]
    if value is None:
        return default
    return bool(value)


def normalize_upper_choice(value, allowed_values):
    """Return the upper-cased value if it is one of `allowed_values`, else None."""
    if value is None:
        return None
    normalized = str(value).strip().upper()
    if normalized not in allowed_values:
        return None
    return normalized


def finite_float(value):
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number
