"""Time-windowed automation schedules per actuator and their derived status."""

import logging

from runtime.command_runtime import next_entity_id_locked
from runtime.defaults import SCHEDULE_ACTIONS
from runtime.errors import UnknownEntityError, ValidationError
from runtime.parsing import normalize_upper_choice, parse_bool
from runtime.shared_state import copy_record
from store.entity_store import get_actuator_locked
from time_utils import get_config_tz, normalize_timestamp_value, now_tz


SCHEDULE_EDITABLE_FIELDS = ("action", "start_at", "end_at", "enabled")


def schedule_duration_s(schedule):
    """Window length in seconds, or None for open-ended or unanchored schedules."""
    start_at = schedule.get("start_at")
    end_at = schedule.get("end_at")
    if start_at is None or end_at is None:
        return None
    return (end_at - start_at).total_seconds()


def _parse_optional_timestamp(config, value, field_name):
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    ts = normalize_timestamp_value(value, get_config_tz(config), naive_policy="config_tz")
    if ts is None:
        raise ValidationError(f"Invalid {field_name} '{value}'.", code="invalid_schedule")
    return ts


def validate_schedule_fields(config, fields):
    """Return normalized schedule fields or raise ValidationError."""
    action = normalize_upper_choice(fields.get("action"), SCHEDULE_ACTIONS)
    if action is None:
        raise ValidationError(
            f"Invalid schedule action '{fields.get('action')}'. Allowed values: {', '.join(SCHEDULE_ACTIONS)}.",
            code="invalid_schedule",
        )
    start_at = _parse_optional_timestamp(config, fields.get("start_at"), "start_at")
    end_at = _parse_optional_timestamp(config, fields.get("end_at"), "end_at")
    if start_at is not None and end_at is not None and not start_at < end_at:
        raise ValidationError("end_at must be later than start_at.", code="invalid_schedule")
    return {
        "action": action,
        "start_at": start_at,
        "end_at": end_at,
        "enabled": parse_bool(fields.get("enabled"), True),
    }


def _windows_overlap(first, second):
    if first["start_at"] is None or second["start_at"] is None:
        return False
    first_ends_before = first["end_at"] is not None and first["end_at"] < second["start_at"]
    second_ends_before = second["end_at"] is not None and second["end_at"] < first["start_at"]
    return not (first_ends_before or second_ends_before)


def find_overlaps(schedules, candidate):
    """Ids of enabled schedules whose window overlaps `candidate` (inclusive bounds)."""
    if not candidate.get("enabled"):
        return []
    return [
        schedule["schedule_id"]
        for schedule in schedules
        if schedule["schedule_id"] != candidate.get("schedule_id")
        and schedule.get("enabled")
        and _windows_overlap(schedule, candidate)
    ]


def _overlap_warnings(schedule_id, overlap_ids):
    return [f"Schedule {schedule_id} overlaps enabled schedule {other_id}." for other_id in overlap_ids]


def _find_schedule_index(actuator, schedule_id):
    for index, schedule in enumerate(actuator.get("schedules", [])):
        if schedule["schedule_id"] == schedule_id:
            return index
    raise UnknownEntityError("schedule", schedule_id)


def create_schedule(config, shared_data, actuator_id, fields, *, created_by=None, now_fn=None):
    """Validate and store a new schedule. Overlaps are reported as warnings, not rejected."""
    normalized = validate_schedule_fields(config, dict(fields or {}))
    created_at = (now_fn or (lambda: now_tz(config)))()
    with shared_data["lock"]:
        actuator = get_actuator_locked(shared_data, actuator_id)
        schedule = {
            "schedule_id": next_entity_id_locked(shared_data, "schedule", "sch"),
            "actuator_id": actuator_id,
            **normalized,
            "created_at": created_at,
            "created_by": created_by,
        }
        overlap_ids = find_overlaps(actuator.get("schedules", []), schedule)
        actuator.setdefault("schedules", []).append(schedule)
        result = copy_record(schedule)

    warnings = _overlap_warnings(result["schedule_id"], overlap_ids)
    logging.info("ScheduleManager: created %s on %s (%s).", result["schedule_id"], actuator_id, result["action"])
    for warning in warnings:
        logging.warning("ScheduleManager: %s", warning)
    return {"schedule": result, "warnings": warnings}


def update_schedule(config, shared_data, actuator_id, schedule_id, changes):
    """Apply a partial update; the merged schedule is validated as a whole before storing."""
    unknown_fields = sorted(set(changes or {}) - set(SCHEDULE_EDITABLE_FIELDS))
    if unknown_fields:
        raise ValidationError(f"Unsupported schedule fields: {', '.join(unknown_fields)}.", code="invalid_schedule")

    with shared_data["lock"]:
        actuator = get_actuator_locked(shared_data, actuator_id)
        index = _find_schedule_index(actuator, schedule_id)
        current = actuator["schedules"][index]
        merged = {field: current.get(field) for field in SCHEDULE_EDITABLE_FIELDS}
        merged.update(changes or {})
        normalized = validate_schedule_fields(config, merged)
        updated = dict(current, **normalized)
        overlap_ids = find_overlaps(actuator["schedules"], updated)
        actuator["schedules"][index] = updated
        result = copy_record(updated)

    warnings = _overlap_warnings(schedule_id, overlap_ids)
    logging.info("ScheduleManager: updated %s on %s.", schedule_id, actuator_id)
    for warning in warnings:
        logging.warning("ScheduleManager: %s", warning)
    return {"schedule": result, "warnings": warnings}


def delete_schedule(shared_data, actuator_id, schedule_id):
    with shared_data["lock"]:
        actuator = get_actuator_locked(shared_data, actuator_id)
        index = _find_schedule_index(actuator, schedule_id)
        removed = actuator["schedules"].pop(index)
    logging.info("ScheduleManager: deleted %s from %s.", schedule_id, actuator_id)
    return {"schedule": copy_record(removed)}


def _status_payload(status, schedule=None):
    if schedule is None:
        return {"status": status, "schedule_id": None, "action": None, "start_at": None, "end_at": None}
    return {
        "status": status,
        "schedule_id": schedule["schedule_id"],
        "action": schedule["action"],
        "start_at": schedule["start_at"],
        "end_at": schedule["end_at"],
    }


def derive_status(schedules, now):
    """
    Derive RUNNING / UPCOMING / NONE for a schedule set at `now`.

    RUNNING when any enabled window contains `now` (bounds inclusive, no
    end_at means open-ended). Otherwise UPCOMING with the soonest future
    start_at. Schedules without start_at never run. Ties break on start_at,
    then schedule_id. Pure: reads only its arguments.
    """
    anchored = sorted(
        (schedule for schedule in schedules or [] if schedule.get("enabled") and schedule.get("start_at") is not None),
        key=lambda schedule: (schedule["start_at"], schedule["schedule_id"]),
    )
    for schedule in anchored:
        if schedule["start_at"] <= now and (schedule.get("end_at") is None or now <= schedule["end_at"]):
            return _status_payload("RUNNING", schedule)
    for schedule in anchored:
        if schedule["start_at"] > now:
            return _status_payload("UPCOMING", schedule)
    return _status_payload("NONE")
