"""Actuator mode writes, device-level majority mode and auto-off configuration."""

import logging

from runtime.defaults import ACTUATOR_MODES
from runtime.errors import EngineError, ValidationError
from runtime.parsing import finite_float, normalize_upper_choice
from runtime.shared_state import snapshot_locked
from store.entity_store import device_actuators_locked, get_actuator_locked


def send_config_best_effort(send_config_fn, device_id, message, *, label):
    """Push a config message to a device; failures are logged and reported, never raised."""
    if send_config_fn is None:
        return "skipped"
    try:
        send_config_fn(device_id, message)
        return "ok"
    except Exception as exc:
        logging.warning("Modes: best-effort %s downlink to %s failed: %s", label, device_id, exc)
        return "failed"


def _require_mode(mode):
    normalized = normalize_upper_choice(mode, ACTUATOR_MODES)
    if normalized is None:
        raise ValidationError(
            f"Invalid mode '{mode}'. Allowed values: {', '.join(ACTUATOR_MODES)}.",
            code="invalid_mode_value",
        )
    return normalized


def derive_device_mode(modes):
    """Majority vote over actuator modes; ties and empty sets resolve to MANUAL."""
    auto_count = sum(1 for mode in modes if mode == "AUTO")
    manual_count = sum(1 for mode in modes if mode != "AUTO")
    return "AUTO" if auto_count > manual_count else "MANUAL"


def get_device_mode(shared_data, device_id):
    return snapshot_locked(
        shared_data,
        lambda data: derive_device_mode([actuator["mode"] for actuator in device_actuators_locked(data, device_id)]),
    )


def set_mode(shared_data, actuator_id, mode, *, send_config_fn=None):
    """Write one actuator's mode. Switching to AUTO disarms a pending auto-off."""
    normalized = _require_mode(mode)
    with shared_data["lock"]:
        actuator = get_actuator_locked(shared_data, actuator_id)
        previous_mode = actuator["mode"]
        actuator["mode"] = normalized
        if normalized == "AUTO":
            actuator["auto_off_deadline"] = None
        device_id = actuator["device_id"]
        channel = actuator["channel"]

    changed = previous_mode != normalized
    if changed:
        logging.info("Modes: %s switched %s -> %s.", actuator_id, previous_mode, normalized)
    config_sync = send_config_best_effort(
        send_config_fn,
        device_id,
        {"type": "MODE", "channel": channel, "mode": normalized},
        label="MODE",
    )
    return {
        "actuator_id": actuator_id,
        "mode": normalized,
        "previous_mode": previous_mode,
        "changed": changed,
        "config_sync": config_sync,
    }


def set_device_mode(shared_data, device_id, mode, *, send_config_fn=None):
    """
    Fan a mode write out to every actuator of a device.

    Each write is independent; a failing actuator is reported in `failed`
    and does not undo the others.
    """
    normalized = _require_mode(mode)
    actuator_ids = snapshot_locked(
        shared_data,
        lambda data: [actuator["id"] for actuator in device_actuators_locked(data, device_id)],
    )
    results = []
    failed = []
    for actuator_id in actuator_ids:
        try:
            results.append(set_mode(shared_data, actuator_id, normalized, send_config_fn=send_config_fn))
        except EngineError as exc:
            failed.append({"actuator_id": actuator_id, "message": str(exc)})
    return {
        "device_id": device_id,
        "mode": normalized,
        "device_mode": get_device_mode(shared_data, device_id),
        "results": results,
        "failed": failed,
    }


def configure_auto_off(shared_data, actuator_id, duration_s, *, send_config_fn=None):
    """Set the actuator's default auto-off duration; 0 disables it and disarms any deadline."""
    value = finite_float(duration_s)
    if value is None or value < 0:
        raise ValidationError(
            f"Invalid auto-off duration '{duration_s}'. Must be a non-negative number.",
            code="invalid_auto_off",
        )
    with shared_data["lock"]:
        actuator = get_actuator_locked(shared_data, actuator_id)
        actuator["auto_off_duration_s"] = value
        if value == 0:
            actuator["auto_off_deadline"] = None
        device_id = actuator["device_id"]
        channel = actuator["channel"]

    logging.info("Modes: auto-off for %s set to %gs.", actuator_id, value)
    config_sync = send_config_best_effort(
        send_config_fn,
        device_id,
        {"type": "AUTO_OFF_TIMER", "channel": channel, "auto_off_s": value},
        label="AUTO_OFF_TIMER",
    )
    return {"actuator_id": actuator_id, "auto_off_duration_s": value, "config_sync": config_sync}
