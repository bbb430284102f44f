"""Shared runtime defaults used across modules.

Keep this module lightweight (no pandas/heavy imports) so low-level modules can
import shared constants without creating avoidable import dependencies.
"""

DEFAULT_TIMEZONE_NAME = "UTC"

DEFAULT_DISPATCH_TIMEOUT_S = 5.0
DEFAULT_COMMAND_HISTORY_LIMIT = 200
DEFAULT_RECONCILIATION_LOG_LIMIT = 200
DEFAULT_PUSH_QUEUE_MAXSIZE = 1024
DEFAULT_PUSH_LOOP_PERIOD_S = 0.5
DEFAULT_AUTO_OFF_PERIOD_S = 1.0

ACTUATOR_STATUSES = ("ON", "OFF", "FAULT")
ACTUATOR_MODES = ("MANUAL", "AUTO")
COMMAND_ACTIONS = ("ON", "OFF", "PULSE")
SCHEDULE_ACTIONS = ("ON", "OFF")
ALARM_SEVERITIES = ("INFO", "WARNING", "CRITICAL")


def default_actuator_record(actuator_id, device_id, channel, *, name=None, mode="MANUAL", status="OFF", auto_off_s=0.0):
    """Return a fresh actuator record as held by the entity store."""
    return {
        "id": str(actuator_id),
        "device_id": str(device_id),
        "channel": int(channel),
        "name": str(name) if name else str(actuator_id),
        "current_status": str(status),
        "status_observed_at": None,
        "mode": str(mode),
        "cycle_count": 0,
        "last_command": None,
        "auto_off_duration_s": float(auto_off_s or 0.0),
        "auto_off_deadline": None,
        "alarm_rule": None,
        "alarm_condition_active": False,
        "alarms": [],
        "schedules": [],
        "pending_command_ids": [],
        "optimistic_command_id": None,
    }


def default_engine_counters():
    """Return id counters for entities allocated by the engine."""
    return {"command": 1, "alarm": 1, "schedule": 1}
