"""Read-only projections for the presentation layer."""

from control.modes import derive_device_mode
from runtime.errors import UnknownEntityError
from runtime.shared_state import copy_record, snapshot_locked
from scheduling.schedule_manager import derive_status, schedule_duration_s
from store.entity_store import device_actuators_locked, get_actuator_locked
from time_utils import now_tz


AGENT_STATUS_KEYS = ("push_agent_status", "auto_off_agent_status")


def _schedule_status(actuator, now_value):
    status = derive_status(actuator.get("schedules", []), now_value)
    status["authoritative"] = actuator["mode"] == "AUTO"
    return status


def _actuator_view_locked(actuator, now_value):
    view = copy_record(actuator)
    view["schedules"] = [dict(schedule, duration_s=schedule_duration_s(schedule)) for schedule in view["schedules"]]
    view["schedule_status"] = _schedule_status(actuator, now_value)
    view["open_alarm_count"] = sum(1 for alarm in actuator.get("alarms", []) if not alarm["resolved"])
    view["unacknowledged_alarm_count"] = sum(1 for alarm in actuator.get("alarms", []) if not alarm["acknowledged"])
    view["has_pending_command"] = bool(actuator.get("pending_command_ids"))
    return view


def actuator_view(config, shared_data, actuator_id, *, now=None):
    now_value = now or now_tz(config)
    return snapshot_locked(shared_data, lambda data: _actuator_view_locked(get_actuator_locked(data, actuator_id), now_value))


def device_view(config, shared_data, device_id, *, now=None):
    now_value = now or now_tz(config)

    def _reader(data):
        actuators = device_actuators_locked(data, device_id)
        device = (data.get("devices_by_id", {}) or {}).get(device_id) or {"id": device_id, "name": device_id}
        return {
            "device_id": device_id,
            "name": device.get("name", device_id),
            "device_mode": derive_device_mode([actuator["mode"] for actuator in actuators]),
            "telemetry": copy_record((data.get("telemetry_by_device", {}) or {}).get(device_id)),
            "actuators": [_actuator_view_locked(actuator, now_value) for actuator in actuators],
        }

    return snapshot_locked(shared_data, _reader)


def fleet_view(config, shared_data, *, now=None):
    now_value = now or now_tz(config)
    device_ids = snapshot_locked(shared_data, lambda data: list((data.get("actuator_ids_by_device", {}) or {}).keys()))
    return [device_view(config, shared_data, device_id, now=now_value) for device_id in device_ids]


def schedule_status(config, shared_data, actuator_id, *, now=None):
    now_value = now or now_tz(config)
    return snapshot_locked(shared_data, lambda data: _schedule_status(get_actuator_locked(data, actuator_id), now_value))


def list_alarms(shared_data, *, actuator_id=None, device_id=None, include_resolved=False, acknowledged=None):
    """
    Alarms newest first.

    Open alarms only unless `include_resolved`; `acknowledged` filters on the
    acknowledged flag when not None.
    """

    def _reader(data):
        if actuator_id is not None:
            actuators = [get_actuator_locked(data, actuator_id)]
        elif device_id is not None:
            actuators = device_actuators_locked(data, device_id)
        else:
            actuators = list((data.get("actuators_by_id", {}) or {}).values())
        alarms = []
        for actuator in actuators:
            for alarm in actuator.get("alarms", []):
                if alarm["resolved"] and not include_resolved:
                    continue
                if acknowledged is not None and alarm["acknowledged"] != bool(acknowledged):
                    continue
                alarms.append(copy_record(alarm))
        return alarms

    alarms = snapshot_locked(shared_data, _reader)
    alarms.sort(key=lambda alarm: (alarm["timestamp"], alarm["alarm_id"]), reverse=True)
    return alarms


def command_history(shared_data, *, actuator_id=None, limit=None):
    """Commands newest first, optionally for one actuator."""

    def _reader(data):
        if actuator_id is not None and actuator_id not in (data.get("actuators_by_id", {}) or {}):
            raise UnknownEntityError("actuator", actuator_id)
        status_by_id = data.get("command_status_by_id", {}) or {}
        commands = []
        for command_id in reversed(data.get("command_history_ids", []) or []):
            command = status_by_id.get(command_id)
            if command is None:
                continue
            if actuator_id is not None and command.get("actuator_id") != actuator_id:
                continue
            commands.append(copy_record(command))
        return commands

    commands = snapshot_locked(shared_data, _reader)
    if limit is not None:
        commands = commands[: int(limit)]
    return commands


def reconciliation_log(shared_data):
    return snapshot_locked(shared_data, lambda data: [dict(entry) for entry in data.get("reconciliation_log", []) or []])


def agent_health(shared_data):
    return snapshot_locked(
        shared_data,
        lambda data: {key: dict(data.get(key) or {}) for key in AGENT_STATUS_KEYS},
    )


def recent_logs(shared_data, *, limit=None):
    """Session log entries newest first, plus the path of today's log file."""
    with shared_data["log_lock"]:
        entries = [dict(entry) for entry in reversed(shared_data.get("session_logs", []) or [])]
        log_file_path = shared_data.get("log_file_path")
    if limit is not None:
        entries = entries[: int(limit)]
    return {"log_file_path": log_file_path, "entries": entries}
