"""Edge-triggered alarm creation and the acknowledge/resolve lifecycle."""

import logging

from alarms.rules import describe_rule_trigger, evaluate_rule, normalize_alarm_rule
from runtime.command_runtime import next_entity_id_locked
from runtime.errors import EngineError
from runtime.shared_state import copy_record
from store.entity_store import get_actuator_locked


def _find_alarm(actuator, alarm_id):
    for alarm in actuator.get("alarms", []):
        if alarm.get("alarm_id") == alarm_id:
            return alarm
    return None


def evaluate_actuator_locked(shared_data, actuator, *, now_value, status=None, metrics=None):
    """
    Evaluate the actuator's alarm rule against an accepted update.

    Only a false -> true transition creates an alarm. A true -> false
    transition clears the edge flag and leaves open alarms untouched. Returns
    the created alarm record or None. Caller holds the lock.
    """
    rule = actuator.get("alarm_rule")
    if not rule or not rule.get("enabled", False):
        return None

    predicate, observed_value = evaluate_rule(rule, status=status, metrics=metrics)
    if predicate is None:
        return None

    was_active = bool(actuator.get("alarm_condition_active", False))
    actuator["alarm_condition_active"] = bool(predicate)
    if not predicate or was_active:
        return None

    alarm = {
        "alarm_id": next_entity_id_locked(shared_data, "alarm", "alm"),
        "actuator_id": actuator["id"],
        "device_id": actuator["device_id"],
        "severity": rule["severity"],
        "message": describe_rule_trigger(rule, actuator.get("name", actuator["id"]), observed_value),
        "timestamp": now_value,
        "rule_type": rule["rule_type"],
        "observed_value": observed_value,
        "notify": bool(rule.get("notify", False)),
        "acknowledged": False,
        "acknowledged_at": None,
        "acknowledged_by": None,
        "resolved": False,
        "resolved_at": None,
    }
    actuator.setdefault("alarms", []).append(alarm)
    logging.warning(
        "Alarm engine: %s alarm %s raised on %s. %s",
        alarm["severity"],
        alarm["alarm_id"],
        actuator["id"],
        alarm["message"],
    )
    return alarm


def _sync_best_effort(sync_fn, alarm, verb):
    if sync_fn is None or alarm is None:
        return "skipped"
    try:
        sync_fn(alarm)
        return "ok"
    except Exception as exc:
        logging.warning(
            "Alarm engine: best-effort %s sync failed for %s on %s: %s",
            verb,
            alarm.get("alarm_id"),
            alarm.get("actuator_id"),
            exc,
        )
        return "failed"


def acknowledge_alarm(shared_data, actuator_id, alarm_id, *, now_fn, acknowledged_by=None, sync_fn=None):
    """
    Acknowledge an alarm and confirm it to the supervisory backend best-effort.

    Unknown, already-acknowledged and resolved alarms are a silent no-op. An
    unknown actuator raises UnknownEntityError.
    """
    now_value = now_fn()
    with shared_data["lock"]:
        actuator = get_actuator_locked(shared_data, actuator_id)
        alarm = _find_alarm(actuator, alarm_id)
        changed = alarm is not None and not alarm["acknowledged"] and not alarm["resolved"]
        if changed:
            alarm["acknowledged"] = True
            alarm["acknowledged_at"] = now_value
            alarm["acknowledged_by"] = acknowledged_by
        alarm_copy = copy_record(alarm)

    if not changed:
        return {"changed": False, "alarm": alarm_copy, "sync": "skipped"}
    logging.info("Alarm engine: %s on %s acknowledged by %s.", alarm_id, actuator_id, acknowledged_by)
    return {"changed": True, "alarm": alarm_copy, "sync": _sync_best_effort(sync_fn, alarm_copy, "acknowledge")}


def resolve_alarm(shared_data, actuator_id, alarm_id, *, now_fn, resolved_by=None, sync_fn=None):
    """Resolve an alarm, acknowledging it first when needed. RESOLVED is terminal."""
    now_value = now_fn()
    with shared_data["lock"]:
        actuator = get_actuator_locked(shared_data, actuator_id)
        alarm = _find_alarm(actuator, alarm_id)
        changed = alarm is not None and not alarm["resolved"]
        if changed:
            if not alarm["acknowledged"]:
                alarm["acknowledged"] = True
                alarm["acknowledged_by"] = resolved_by
            if alarm["acknowledged_at"] is None:
                alarm["acknowledged_at"] = now_value
            alarm["resolved"] = True
            alarm["resolved_at"] = now_value
        alarm_copy = copy_record(alarm)

    if not changed:
        return {"changed": False, "alarm": alarm_copy, "sync": "skipped"}
    logging.info("Alarm engine: %s on %s resolved by %s.", alarm_id, actuator_id, resolved_by)
    return {"changed": True, "alarm": alarm_copy, "sync": _sync_best_effort(sync_fn, alarm_copy, "resolve")}


def _open_unacknowledged_alarm_keys(shared_data, device_id=None):
    with shared_data["lock"]:
        actuators = list((shared_data.get("actuators_by_id", {}) or {}).values())
        if device_id is not None:
            ids = set((shared_data.get("actuator_ids_by_device", {}) or {}).get(device_id, []))
            actuators = [actuator for actuator in actuators if actuator["id"] in ids]
        return [
            (actuator["id"], alarm["alarm_id"])
            for actuator in actuators
            for alarm in actuator.get("alarms", [])
            if not alarm["acknowledged"] and not alarm["resolved"]
        ]


def acknowledge_all_alarms(shared_data, *, now_fn, device_id=None, acknowledged_by=None, sync_fn=None):
    """
    Acknowledge every open unacknowledged alarm, one independent operation each.

    A failure on one alarm never stops the others; the result lists which
    alarms were acknowledged and which failed.
    """
    acknowledged = []
    failed = []
    sync_failed = []
    for actuator_id, alarm_id in _open_unacknowledged_alarm_keys(shared_data, device_id=device_id):
        try:
            outcome = acknowledge_alarm(
                shared_data,
                actuator_id,
                alarm_id,
                now_fn=now_fn,
                acknowledged_by=acknowledged_by,
                sync_fn=sync_fn,
            )
        except EngineError as exc:
            failed.append({"actuator_id": actuator_id, "alarm_id": alarm_id, "message": str(exc)})
            continue
        if outcome["changed"]:
            acknowledged.append(alarm_id)
            if outcome["sync"] == "failed":
                sync_failed.append(alarm_id)
    return {"acknowledged": acknowledged, "failed": failed, "sync_failed": sync_failed}


def configure_alarm_rule(shared_data, actuator_id, raw_rule, *, send_config_fn=None):
    """
    Validate and store the actuator's alarm rule; `raw_rule=None` clears it.

    The edge flag is reset so the new rule fires on its first true
    evaluation. When `send_config_fn` is given the rule is pushed to the
    device as an ALARM_CONFIG message; failures are logged and reported only.
    """
    rule = None if raw_rule is None else normalize_alarm_rule(raw_rule)
    with shared_data["lock"]:
        actuator = get_actuator_locked(shared_data, actuator_id)
        actuator["alarm_rule"] = rule
        actuator["alarm_condition_active"] = False
        device_id = actuator["device_id"]
        channel = actuator["channel"]

    config_sync = "skipped"
    if send_config_fn is not None:
        try:
            send_config_fn(device_id, {"type": "ALARM_CONFIG", "channel": channel, "alarm_rule": rule})
            config_sync = "ok"
        except Exception as exc:
            logging.warning("Alarm engine: best-effort ALARM_CONFIG downlink failed for %s: %s", actuator_id, exc)
            config_sync = "failed"
    logging.info("Alarm engine: alarm rule for %s set to %s.", actuator_id, rule)
    return {"alarm_rule": copy_record(rule), "config_sync": config_sync}
