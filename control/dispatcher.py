"""Command dispatcher: optimistic transitions, bounded transport call, confirm or roll back."""

import logging
import queue
import threading
from datetime import timedelta

from alarms.engine import evaluate_actuator_locked
from runtime.command_runtime import (
    command_snapshot,
    create_command_locked,
    mark_command_finished_locked,
)
from runtime.defaults import COMMAND_ACTIONS, DEFAULT_COMMAND_HISTORY_LIMIT, DEFAULT_DISPATCH_TIMEOUT_S
from runtime.errors import DispatchError, ModeConflictError, ValidationError
from runtime.parsing import finite_float, normalize_upper_choice
from store.entity_store import get_actuator_locked
from time_utils import now_tz


def _call_with_timeout(send_fn, args, timeout_s):
    """
    Run `send_fn(*args)` on a daemon thread and wait at most `timeout_s`.

    Returns ("ok", result), ("error", exc) or ("timeout", None). A transport
    call that outlives the timeout keeps running; its late result is dropped.
    """
    result_queue = queue.Queue(maxsize=1)

    def _runner():
        try:
            result_queue.put(("ok", send_fn(*args)))
        except Exception as exc:
            result_queue.put(("error", exc))

    worker = threading.Thread(target=_runner, name="downlink-send", daemon=True)
    worker.start()
    try:
        return result_queue.get(timeout=timeout_s)
    except queue.Empty:
        return "timeout", None


def _normalize_auto_off(action, auto_off_s):
    if auto_off_s is None:
        return None
    if action != "ON":
        raise ValidationError("auto_off_s only applies to ON commands.", code="invalid_auto_off")
    value = finite_float(auto_off_s)
    if value is None or value < 0:
        raise ValidationError(f"Invalid auto_off_s '{auto_off_s}'. Must be a non-negative number.", code="invalid_auto_off")
    return value


def _release_pending_locked(shared_data, actuator, command):
    pending_ids = actuator.get("pending_command_ids", [])
    if command["id"] in pending_ids:
        pending_ids.remove(command["id"])
    if actuator.get("optimistic_command_id") == command["id"]:
        actuator["optimistic_command_id"] = None


def _hand_back_rollback_target_locked(shared_data, actuator, command):
    """Newer commands that captured this command's optimistic status inherit its rollback target."""
    status_by_id = shared_data.get("command_status_by_id", {}) or {}
    for pending_id in actuator.get("pending_command_ids", []):
        pending = status_by_id.get(pending_id)
        if not isinstance(pending, dict) or pending.get("previous_command_id") != command["id"]:
            continue
        pending["previous_status"] = command["previous_status"]
        pending["previous_command_id"] = command.get("previous_command_id")


def _evaluate_status_alarm_locked(shared_data, actuator, now_value):
    """Keep the alarm edge flag in step with a status written by the dispatcher."""
    return evaluate_actuator_locked(shared_data, actuator, now_value=now_value, status=actuator["current_status"])


def _confirm_locked(shared_data, actuator, command, *, finished_at, auto_off_s):
    actuator["cycle_count"] = int(actuator.get("cycle_count", 0)) + 1
    message = None
    if command["ground_truth_observed"]:
        message = f"confirmed; device reported {command.get('ground_truth_status')}"
    mark_command_finished_locked(
        shared_data,
        command["id"],
        state="CONFIRMED",
        message=message,
        finished_at=finished_at,
    )
    _release_pending_locked(shared_data, actuator, command)

    if command["action"] == "OFF":
        actuator["auto_off_deadline"] = None
    elif command["action"] == "ON":
        duration_s = auto_off_s if auto_off_s is not None else float(actuator.get("auto_off_duration_s") or 0.0)
        if duration_s > 0 and actuator["current_status"] == "ON" and actuator["mode"] == "MANUAL":
            actuator["auto_off_deadline"] = finished_at + timedelta(seconds=duration_s)
    _evaluate_status_alarm_locked(shared_data, actuator, finished_at)


def _fail_locked(shared_data, actuator, command, *, state, message, finished_at):
    rolled_back = False
    if command.get("optimistic_status") is not None and not command["ground_truth_observed"]:
        if actuator.get("optimistic_command_id") == command["id"]:
            actuator["current_status"] = command["previous_status"]
            rolled_back = True
        else:
            _hand_back_rollback_target_locked(shared_data, actuator, command)
    mark_command_finished_locked(shared_data, command["id"], state=state, message=message, finished_at=finished_at)
    _release_pending_locked(shared_data, actuator, command)
    if rolled_back:
        _evaluate_status_alarm_locked(shared_data, actuator, finished_at)
    return rolled_back


def dispatch_command(
    config,
    shared_data,
    actuator_id,
    action,
    *,
    send_fn,
    issued_by=None,
    auto_off_s=None,
    now_fn=None,
    timeout_s=None,
):
    """
    Issue one actuation command and block until it is confirmed, failed or timed out.

    ON/OFF are applied optimistically before the transport call and rolled back
    to the captured pre-command status on failure, unless the device reported
    its status after the command was issued. Returns an ack dict on success and
    raises DispatchError otherwise. ValidationError is raised before anything
    is mutated.
    """
    normalized_action = normalize_upper_choice(action, COMMAND_ACTIONS)
    if normalized_action is None:
        raise ValidationError(
            f"Invalid action '{action}'. Allowed values: {', '.join(COMMAND_ACTIONS)}.",
            code="invalid_action",
        )
    auto_off_value = _normalize_auto_off(normalized_action, auto_off_s)
    now_fn = now_fn or (lambda: now_tz(config))
    raw_timeout = timeout_s if timeout_s is not None else config.get("DISPATCH_TIMEOUT_S", DEFAULT_DISPATCH_TIMEOUT_S)
    timeout_s = finite_float(raw_timeout)
    if timeout_s is None or timeout_s < 0:
        raise ValidationError(f"Invalid timeout_s '{raw_timeout}'. Must be a non-negative number.", code="invalid_timeout")
    history_limit = int(config.get("COMMAND_HISTORY_LIMIT", DEFAULT_COMMAND_HISTORY_LIMIT))

    issued_at = now_fn()
    with shared_data["lock"]:
        actuator = get_actuator_locked(shared_data, actuator_id)
        if normalized_action in ("ON", "OFF") and actuator["mode"] == "AUTO":
            raise ModeConflictError(actuator_id, actuator["mode"])

        command = create_command_locked(
            shared_data,
            actuator=actuator,
            action=normalized_action,
            issued_at=issued_at,
            issued_by=issued_by,
            history_limit=history_limit,
        )
        actuator.setdefault("pending_command_ids", []).append(command["id"])
        actuator["last_command"] = {
            "command_id": command["id"],
            "action": normalized_action,
            "issued_at": issued_at,
            "issued_by": command["issued_by"],
        }
        if command["optimistic_status"] is not None:
            actuator["current_status"] = command["optimistic_status"]
            actuator["optimistic_command_id"] = command["id"]
            _evaluate_status_alarm_locked(shared_data, actuator, issued_at)
        command_id = command["id"]
        device_id = actuator["device_id"]
        channel = actuator["channel"]

    logging.info("Dispatcher: %s %s -> %s (device %s ch %s).", command_id, normalized_action, actuator_id, device_id, channel)
    try:
        outcome, value = _call_with_timeout(send_fn, (device_id, channel, normalized_action), timeout_s)
    except Exception as exc:
        outcome, value = "error", f"transport call could not run: {exc}"
    if outcome == "ok" and not value:
        outcome, value = "error", "transport did not acknowledge the command"

    try:
        finished_at = now_fn()
    except Exception as exc:
        logging.warning("Dispatcher: clock failed while finishing %s (%s); using issue time.", command_id, exc)
        finished_at = issued_at
    with shared_data["lock"]:
        actuator = get_actuator_locked(shared_data, actuator_id)
        command = shared_data["command_status_by_id"][command_id]
        if outcome == "ok":
            _confirm_locked(shared_data, actuator, command, finished_at=finished_at, auto_off_s=auto_off_value)
            ack = {
                "command_id": command_id,
                "actuator_id": actuator_id,
                "action": normalized_action,
                "state": "CONFIRMED",
                "cycle_count": actuator["cycle_count"],
                "current_status": actuator["current_status"],
                "ground_truth_observed": command["ground_truth_observed"],
                "auto_off_deadline": actuator.get("auto_off_deadline"),
            }
            failure = None
        else:
            state = "TIMED_OUT" if outcome == "timeout" else "FAILED"
            message = f"no response within {timeout_s:g}s" if outcome == "timeout" else str(value)
            rolled_back = _fail_locked(
                shared_data,
                actuator,
                command,
                state=state,
                message=message,
                finished_at=finished_at,
            )
            failure = (state, message, rolled_back, actuator["current_status"], command_snapshot(command))

    if failure is None:
        logging.info(
            "Dispatcher: %s confirmed; %s status=%s cycle_count=%s.",
            command_id,
            actuator_id,
            ack["current_status"],
            ack["cycle_count"],
        )
        return ack

    state, message, rolled_back, current_status, snapshot = failure
    logging.warning(
        "Dispatcher: %s %s (%s); %s status=%s%s.",
        command_id,
        state,
        message,
        actuator_id,
        current_status,
        " after rollback" if rolled_back else "",
    )
    raise DispatchError(
        f"Command {command_id} {state.lower()}: {message}",
        command_id=command_id,
        state=state,
        command=snapshot,
    )
