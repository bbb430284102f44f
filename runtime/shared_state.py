"""Thin helpers to standardize shared_data lock-based access."""

from copy import deepcopy


def snapshot_locked(shared_data, reader):
    """Read a shared-data snapshot under lock using a caller-provided reader."""
    with shared_data["lock"]:
        return reader(shared_data)


def append_bounded_locked(shared_data, key, entry, *, limit):
    """Append to a shared list and drop the oldest entries past `limit`. Caller holds the lock."""
    entries = shared_data.setdefault(key, [])
    entries.append(entry)
    overflow = len(entries) - int(limit)
    if overflow > 0:
        del entries[:overflow]
    return entry


def copy_record(record):
    return deepcopy(record) if isinstance(record, dict) else record
