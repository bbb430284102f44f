"""Shared-state bookkeeping for actuation command lifecycle records."""

from copy import deepcopy

from runtime.defaults import DEFAULT_COMMAND_HISTORY_LIMIT


TERMINAL_COMMAND_STATES = {"CONFIRMED", "FAILED", "TIMED_OUT"}


def prune_command_history_locked(shared_data, limit=DEFAULT_COMMAND_HISTORY_LIMIT):
    """Drop the oldest finished commands past `limit`. Pending commands are never pruned."""
    history_ids = shared_data.setdefault("command_history_ids", [])
    status_by_id = shared_data.setdefault("command_status_by_id", {})
    overflow = len(history_ids) - int(limit)
    if overflow <= 0:
        return
    kept = []
    for command_id in history_ids:
        status = status_by_id.get(command_id) or {}
        if overflow > 0 and status.get("state") in TERMINAL_COMMAND_STATES:
            status_by_id.pop(command_id, None)
            overflow -= 1
            continue
        kept.append(command_id)
    shared_data["command_history_ids"] = kept


def command_snapshot(command):
    return deepcopy(command) if isinstance(command, dict) else command


def next_entity_id_locked(shared_data, kind, prefix):
    """Allocate the next sequential id for `kind`. Caller holds the lock."""
    counters = shared_data.setdefault("id_counters", {})
    next_id = int(counters.get(kind, 1))
    counters[kind] = next_id + 1
    return f"{prefix}-{next_id:06d}"


def create_command_locked(
    shared_data,
    *,
    actuator,
    action,
    issued_at,
    issued_by,
    history_limit=DEFAULT_COMMAND_HISTORY_LIMIT,
):
    """Create a PENDING command record for `actuator`. Caller holds the lock."""
    command_id = next_entity_id_locked(shared_data, "command", "cmd")
    optimistic_status = action if action in ("ON", "OFF") else None
    command = {
        "id": command_id,
        "actuator_id": actuator["id"],
        "device_id": actuator["device_id"],
        "channel": actuator["channel"],
        "action": str(action),
        "issued_at": issued_at,
        "issued_by": None if issued_by is None else str(issued_by),
        "state": "PENDING",
        "previous_status": actuator["current_status"],
        "previous_command_id": actuator.get("optimistic_command_id") if optimistic_status else None,
        "optimistic_status": optimistic_status,
        "ground_truth_observed": False,
        "ground_truth_status": None,
        "message": None,
        "finished_at": None,
    }
    shared_data.setdefault("command_status_by_id", {})[command_id] = command
    shared_data.setdefault("command_history_ids", []).append(command_id)
    prune_command_history_locked(shared_data, limit=history_limit)
    return command


def mark_command_finished_locked(shared_data, command_id, *, state, message=None, finished_at=None):
    """Move a command to a terminal state and return the live record. Caller holds the lock."""
    terminal_state = str(state)
    if terminal_state not in TERMINAL_COMMAND_STATES:
        raise ValueError(f"Invalid terminal command state: {terminal_state!r}")
    command = (shared_data.get("command_status_by_id", {}) or {}).get(command_id)
    if not isinstance(command, dict):
        command = {"id": command_id, "actuator_id": None, "action": None, "issued_at": None}
        shared_data.setdefault("command_status_by_id", {})[command_id] = command
    command["state"] = terminal_state
    command["message"] = None if message is None else str(message)
    command["finished_at"] = finished_at
    return command


def pending_commands_for_actuator_locked(shared_data, actuator):
    status_by_id = shared_data.get("command_status_by_id", {}) or {}
    commands = []
    for command_id in actuator.get("pending_command_ids", []):
        command = status_by_id.get(command_id)
        if isinstance(command, dict) and command.get("state") == "PENDING":
            commands.append(command)
    return commands
