"""Canonical per-actuator and per-device records held in shared_data."""

import logging

from runtime.defaults import default_actuator_record, default_engine_counters
from runtime.errors import UnknownEntityError
from runtime.shared_state import copy_record, snapshot_locked


def default_store_state():
    """Return the store keys merged into the initial shared_data."""
    return {
        "devices_by_id": {},
        "actuators_by_id": {},
        "actuator_ids_by_device": {},
        "telemetry_by_device": {},
        "id_counters": default_engine_counters(),
        "command_status_by_id": {},
        "command_history_ids": [],
        "reconciliation_log": [],
    }


def register_actuator_locked(shared_data, actuator_cfg):
    """Insert a configured actuator. Caller holds the lock."""
    actuator_id = actuator_cfg["id"]
    device_id = actuator_cfg["device_id"]
    record = default_actuator_record(
        actuator_id,
        device_id,
        actuator_cfg["channel"],
        name=actuator_cfg.get("name"),
        mode=actuator_cfg.get("mode", "MANUAL"),
        status=actuator_cfg.get("status", "OFF"),
        auto_off_s=actuator_cfg.get("auto_off_s", 0.0),
    )
    if actuator_cfg.get("alarm_rule") is not None:
        record["alarm_rule"] = dict(actuator_cfg["alarm_rule"])

    shared_data.setdefault("actuators_by_id", {})[actuator_id] = record
    device_ids = shared_data.setdefault("actuator_ids_by_device", {}).setdefault(device_id, [])
    if actuator_id not in device_ids:
        device_ids.append(actuator_id)
    return record


def register_fleet(config, shared_data):
    """Populate the store from the normalized fleet in config["DEVICES"]."""
    devices = config.get("DEVICES", []) or []
    with shared_data["lock"]:
        for device in devices:
            shared_data.setdefault("devices_by_id", {})[device["id"]] = {
                "id": device["id"],
                "name": device.get("name", device["id"]),
            }
            shared_data.setdefault("actuator_ids_by_device", {}).setdefault(device["id"], [])
            for actuator_cfg in device.get("actuators", []):
                register_actuator_locked(shared_data, dict(actuator_cfg, device_id=device["id"]))
        actuator_count = len(shared_data.get("actuators_by_id", {}))
    logging.info("Entity store: registered %d devices with %d actuators.", len(devices), actuator_count)


def get_actuator_locked(shared_data, actuator_id):
    """Return the live actuator record or raise UnknownEntityError. Caller holds the lock."""
    actuator = (shared_data.get("actuators_by_id", {}) or {}).get(actuator_id)
    if actuator is None:
        raise UnknownEntityError("actuator", actuator_id)
    return actuator


def find_actuator_by_channel_locked(shared_data, device_id, channel):
    actuators_by_id = shared_data.get("actuators_by_id", {}) or {}
    for actuator_id in (shared_data.get("actuator_ids_by_device", {}) or {}).get(device_id, []):
        actuator = actuators_by_id.get(actuator_id)
        if actuator is not None and actuator["channel"] == channel:
            return actuator
    return None


def device_actuators_locked(shared_data, device_id):
    """Return the live actuator records of a device, raising for unknown devices."""
    ids_by_device = shared_data.get("actuator_ids_by_device", {}) or {}
    if device_id not in ids_by_device:
        raise UnknownEntityError("device", device_id)
    actuators_by_id = shared_data.get("actuators_by_id", {}) or {}
    return [actuators_by_id[actuator_id] for actuator_id in ids_by_device[device_id] if actuator_id in actuators_by_id]


def snapshot_actuator(shared_data, actuator_id):
    return snapshot_locked(shared_data, lambda data: copy_record(get_actuator_locked(data, actuator_id)))


def list_actuators(shared_data, device_id=None):
    def _reader(data):
        if device_id is not None:
            return [copy_record(actuator) for actuator in device_actuators_locked(data, device_id)]
        return [copy_record(actuator) for actuator in (data.get("actuators_by_id", {}) or {}).values()]

    return snapshot_locked(shared_data, _reader)


def list_device_ids(shared_data):
    return snapshot_locked(shared_data, lambda data: list((data.get("actuator_ids_by_device", {}) or {}).keys()))


def get_latest_telemetry(shared_data, device_id):
    """Return a copy of the device's latest telemetry sample, or None."""
    return snapshot_locked(
        shared_data,
        lambda data: copy_record((data.get("telemetry_by_device", {}) or {}).get(device_id)),
    )
