"""Apply push-channel status and telemetry updates with event-time ordering."""

import logging

from alarms.engine import evaluate_actuator_locked
from runtime.command_runtime import pending_commands_for_actuator_locked
from runtime.defaults import ACTUATOR_STATUSES, DEFAULT_RECONCILIATION_LOG_LIMIT
from runtime.errors import UnknownEntityError, ValidationError
from runtime.parsing import finite_float, normalize_upper_choice
from runtime.shared_state import append_bounded_locked
from store.entity_store import device_actuators_locked, find_actuator_by_channel_locked, get_actuator_locked
from time_utils import get_config_tz, normalize_timestamp_value


TELEMETRY_RESERVED_KEYS = {"device_id", "received_at", "observed_at", "metrics", "rssi", "snr"}


def _require_timestamp(config, value, field_name):
    ts = normalize_timestamp_value(value, get_config_tz(config))
    if ts is None:
        raise ValidationError(f"Missing or invalid {field_name} '{value}'.", code="invalid_timestamp")
    return ts


def _require_status(status):
    normalized = normalize_upper_choice(status, ACTUATOR_STATUSES)
    if normalized is None:
        raise ValidationError(
            f"Invalid status '{status}'. Allowed values: {', '.join(ACTUATOR_STATUSES)}.",
            code="invalid_status",
        )
    return normalized


def _device_metrics_locked(shared_data, device_id):
    sample = (shared_data.get("telemetry_by_device", {}) or {}).get(device_id) or {}
    return sample.get("metrics") or {}


def _record_conflict_locked(config, shared_data, actuator, command, status, observed_at):
    entry = {
        "actuator_id": actuator["id"],
        "command_id": command["id"],
        "optimistic_status": command.get("optimistic_status"),
        "observed_status": status,
        "observed_at": observed_at,
        "issued_at": command.get("issued_at"),
    }
    append_bounded_locked(
        shared_data,
        "reconciliation_log",
        entry,
        limit=config.get("RECONCILIATION_LOG_LIMIT", DEFAULT_RECONCILIATION_LOG_LIMIT),
    )
    logging.info(
        "Telemetry merge: %s reported %s while %s (%s) was pending; device state wins.",
        actuator["id"],
        status,
        command["id"],
        command.get("optimistic_status"),
    )


def apply_status_locked(config, shared_data, actuator, status, observed_at):
    """
    Merge one status observation into `actuator`. Caller holds the lock.

    Observations strictly older than the stored observation are discarded.
    Pending commands issued at or before `observed_at` are marked as having
    seen ground truth. An observation older than a pending optimistic write
    does not overwrite it; it becomes that command's rollback target instead.
    """
    stored_at = actuator.get("status_observed_at")
    if stored_at is not None and observed_at < stored_at:
        logging.debug(
            "Telemetry merge: discarded stale status %s for %s (%s < %s).",
            status,
            actuator["id"],
            observed_at,
            stored_at,
        )
        return {"accepted": False, "applied": False, "alarm": None}

    held_by_pending = False
    for command in pending_commands_for_actuator_locked(shared_data, actuator):
        if observed_at >= command["issued_at"]:
            if not command["ground_truth_observed"] and command.get("optimistic_status") not in (None, status):
                _record_conflict_locked(config, shared_data, actuator, command, status, observed_at)
            command["ground_truth_observed"] = True
            command["ground_truth_status"] = status
        elif command.get("optimistic_status") is not None and not command["ground_truth_observed"]:
            command["previous_status"] = status
            held_by_pending = True

    actuator["status_observed_at"] = observed_at
    if not held_by_pending:
        actuator["current_status"] = status
    if status in ("OFF", "FAULT"):
        actuator["auto_off_deadline"] = None

    alarm = evaluate_actuator_locked(
        shared_data,
        actuator,
        now_value=observed_at,
        status=status,
        metrics=_device_metrics_locked(shared_data, actuator["device_id"]),
    )
    return {"accepted": True, "applied": not held_by_pending, "alarm": alarm}


def apply_status(config, shared_data, actuator_id, status, observed_at):
    """Apply a pushed status for one actuator and return the merge outcome."""
    normalized_status = _require_status(status)
    observed_ts = _require_timestamp(config, observed_at, "observed_at")
    with shared_data["lock"]:
        actuator = get_actuator_locked(shared_data, actuator_id)
        return apply_status_locked(config, shared_data, actuator, normalized_status, observed_ts)


def _normalize_sample(config, device_id, sample):
    if not isinstance(sample, dict):
        raise ValidationError("Telemetry sample must be a mapping.", code="invalid_telemetry")
    received_at = _require_timestamp(
        config,
        sample.get("received_at", sample.get("observed_at")),
        "received_at",
    )
    metrics = sample.get("metrics")
    if metrics is None:
        metrics = {key: value for key, value in sample.items() if key not in TELEMETRY_RESERVED_KEYS}
    if not isinstance(metrics, dict):
        raise ValidationError("Telemetry metrics must be a mapping.", code="invalid_telemetry")
    return {
        "device_id": device_id,
        "received_at": received_at,
        "metrics": dict(metrics),
        "rssi": finite_float(sample.get("rssi")),
        "snr": finite_float(sample.get("snr")),
    }


def apply_telemetry(config, shared_data, device_id, sample):
    """Replace the device's latest sample unless it is older than the stored one."""
    normalized = _normalize_sample(config, device_id, sample)
    alarms = []
    with shared_data["lock"]:
        actuators = device_actuators_locked(shared_data, device_id)
        samples = shared_data.setdefault("telemetry_by_device", {})
        stored = samples.get(device_id)
        if stored is not None and normalized["received_at"] < stored["received_at"]:
            logging.debug(
                "Telemetry merge: discarded stale sample for %s (%s < %s).",
                device_id,
                normalized["received_at"],
                stored["received_at"],
            )
            return {"accepted": False, "alarms": []}

        samples[device_id] = normalized
        for actuator in actuators:
            alarm = evaluate_actuator_locked(
                shared_data,
                actuator,
                now_value=normalized["received_at"],
                metrics=normalized["metrics"],
            )
            if alarm is not None:
                alarms.append(alarm)
    return {"accepted": True, "alarms": alarms}


def _resolve_update_target_locked(shared_data, device_id, update):
    if update.get("actuator_id") is not None:
        actuator = get_actuator_locked(shared_data, update["actuator_id"])
        if actuator["device_id"] != device_id:
            raise ValidationError(
                f"Actuator '{actuator['id']}' does not belong to device '{device_id}'.",
                code="device_mismatch",
            )
        return actuator
    if update.get("channel") is None:
        raise ValidationError("Status update needs an actuator_id or channel.", code="invalid_status_update")
    try:
        channel = int(update["channel"])
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid channel '{update['channel']}'.", code="invalid_status_update")
    actuator = find_actuator_by_channel_locked(shared_data, device_id, channel)
    if actuator is None:
        raise UnknownEntityError("actuator", f"{device_id}:{channel}")
    return actuator


def _apply_status_updates(config, shared_data, device_id, event):
    summary = {"applied": 0, "held": 0, "discarded": 0, "rejected": 0}
    for update in event.get("status_updates") or []:
        try:
            if not isinstance(update, dict):
                raise ValidationError("Status update must be a mapping.", code="invalid_status_update")
            status = _require_status(update.get("status"))
            observed_at = _require_timestamp(
                config,
                update.get("observed_at", event.get("observed_at")),
                "observed_at",
            )
            with shared_data["lock"]:
                actuator = _resolve_update_target_locked(shared_data, device_id, update)
                outcome = apply_status_locked(config, shared_data, actuator, status, observed_at)
        except ValidationError as exc:
            logging.warning("Telemetry merge: rejected status update from %s: %s", device_id, exc)
            summary["rejected"] += 1
            continue
        if not outcome["accepted"]:
            summary["discarded"] += 1
        elif outcome["applied"]:
            summary["applied"] += 1
        else:
            summary["held"] += 1
    return summary


def apply_push_event(config, shared_data, event):
    """
    Apply one push-channel event.

    Two shapes are accepted: `{device_id, status_updates: [...]}` and
    `{device_id, telemetry: {...}}`. Each status update is applied
    independently; an invalid one is logged and skipped.
    """
    if not isinstance(event, dict):
        raise ValidationError("Push event must be a mapping.", code="invalid_push_event")
    device_id = event.get("device_id")
    if device_id is None:
        raise ValidationError("Push event is missing device_id.", code="invalid_push_event")
    device_id = str(device_id)

    has_status = event.get("status_updates") is not None
    has_telemetry = event.get("telemetry") is not None
    if not has_status and not has_telemetry:
        raise ValidationError("Push event carries neither status_updates nor telemetry.", code="invalid_push_event")

    result = {"device_id": device_id}
    if has_telemetry:
        result["telemetry"] = apply_telemetry(config, shared_data, device_id, event["telemetry"])
    if has_status:
        result["status"] = _apply_status_updates(config, shared_data, device_id, event)
    return result
