"""
Exposed command, schedule and alarm operations.

Every operation returns an outcome dict `{"state", "message", "result"}`:
- "succeeded": the operation was applied.
- "noop": the request was valid but nothing changed (e.g. acknowledging an
  already-acknowledged alarm).
- "rejected": validation failed before any state was touched; `message`
  carries the error code.
- "failed": a dispatched command failed or timed out and was rolled back.

Transport functions and the clock are injected through `deps`:
`send_fn`, `send_config_fn`, `alarm_acknowledge_fn`, `alarm_resolve_fn` and
`now_fn`.
"""

import logging

import alarms.engine as alarm_engine
import control.modes as modes
import scheduling.schedule_manager as schedule_manager
from control.dispatcher import dispatch_command as dispatch_command_flow
from runtime.errors import DispatchError, ValidationError
from time_utils import now_tz
from transport.alarm_sync_client import AlarmSyncClient
from transport.downlink_client import DownlinkClient


def build_engine_deps(config, *, downlink_client=None, alarm_sync_client=None):
    """Wire the configured transport adapters into a deps dict."""
    downlink_client = downlink_client or DownlinkClient.from_config(config)
    if alarm_sync_client is None:
        alarm_sync_client = AlarmSyncClient.from_config(config)
    if not downlink_client.is_configured():
        logging.warning("EngineAPI: downlink transport not configured; commands will fail.")

    send_config_fn = None
    if config.get("TRANSPORT_CONFIG_DOWNLINKS_ENABLED", True):
        send_config_fn = downlink_client.send_config
    return {
        "send_fn": downlink_client.send,
        "send_config_fn": send_config_fn,
        "alarm_acknowledge_fn": alarm_sync_client.acknowledge if alarm_sync_client is not None else None,
        "alarm_resolve_fn": alarm_sync_client.resolve if alarm_sync_client is not None else None,
        "now_fn": None,
    }


def _now_fn(config, deps):
    return deps.get("now_fn") or (lambda: now_tz(config))


def _rejected(exc, **result):
    return {"state": "rejected", "message": exc.code, "result": dict(result, error=str(exc))}


def _succeeded(result, message=None):
    return {"state": "succeeded", "message": message, "result": result}


def dispatch_command(config, shared_data, actuator_id, action, *, issued_by=None, auto_off_s=None, deps=None):
    deps = dict(deps or {})
    send_fn = deps.get("send_fn")
    if send_fn is None:
        raise RuntimeError("dispatch_command requires deps['send_fn'].")
    try:
        ack = dispatch_command_flow(
            config,
            shared_data,
            actuator_id,
            action,
            send_fn=send_fn,
            issued_by=issued_by,
            auto_off_s=auto_off_s,
            now_fn=_now_fn(config, deps),
        )
    except ValidationError as exc:
        return _rejected(exc, actuator_id=actuator_id, action=action)
    except DispatchError as exc:
        return {
            "state": "failed",
            "message": exc.state.lower(),
            "result": {"command_id": exc.command_id, "error": str(exc), "command": exc.command},
        }
    return _succeeded(ack)


def create_schedule(config, shared_data, actuator_id, fields, *, created_by=None, deps=None):
    deps = dict(deps or {})
    try:
        outcome = schedule_manager.create_schedule(
            config,
            shared_data,
            actuator_id,
            fields,
            created_by=created_by,
            now_fn=_now_fn(config, deps),
        )
    except ValidationError as exc:
        return _rejected(exc, actuator_id=actuator_id)
    return _succeeded(outcome, message="overlap" if outcome["warnings"] else None)


def update_schedule(config, shared_data, actuator_id, schedule_id, changes, *, deps=None):
    try:
        outcome = schedule_manager.update_schedule(config, shared_data, actuator_id, schedule_id, changes)
    except ValidationError as exc:
        return _rejected(exc, actuator_id=actuator_id, schedule_id=schedule_id)
    return _succeeded(outcome, message="overlap" if outcome["warnings"] else None)


def delete_schedule(config, shared_data, actuator_id, schedule_id, *, deps=None):
    try:
        outcome = schedule_manager.delete_schedule(shared_data, actuator_id, schedule_id)
    except ValidationError as exc:
        return _rejected(exc, actuator_id=actuator_id, schedule_id=schedule_id)
    return _succeeded(outcome)


def _alarm_outcome(outcome):
    if not outcome["changed"]:
        return {"state": "noop", "message": None, "result": outcome}
    message = "sync_failed" if outcome["sync"] == "failed" else None
    return _succeeded(outcome, message=message)


def acknowledge_alarm(config, shared_data, actuator_id, alarm_id, *, acknowledged_by=None, deps=None):
    deps = dict(deps or {})
    try:
        outcome = alarm_engine.acknowledge_alarm(
            shared_data,
            actuator_id,
            alarm_id,
            now_fn=_now_fn(config, deps),
            acknowledged_by=acknowledged_by,
            sync_fn=deps.get("alarm_acknowledge_fn"),
        )
    except ValidationError as exc:
        return _rejected(exc, actuator_id=actuator_id, alarm_id=alarm_id)
    return _alarm_outcome(outcome)


def resolve_alarm(config, shared_data, actuator_id, alarm_id, *, resolved_by=None, deps=None):
    deps = dict(deps or {})
    try:
        outcome = alarm_engine.resolve_alarm(
            shared_data,
            actuator_id,
            alarm_id,
            now_fn=_now_fn(config, deps),
            resolved_by=resolved_by,
            sync_fn=deps.get("alarm_resolve_fn"),
        )
    except ValidationError as exc:
        return _rejected(exc, actuator_id=actuator_id, alarm_id=alarm_id)
    return _alarm_outcome(outcome)


def acknowledge_all_alarms(config, shared_data, *, device_id=None, acknowledged_by=None, deps=None):
    deps = dict(deps or {})
    outcome = alarm_engine.acknowledge_all_alarms(
        shared_data,
        now_fn=_now_fn(config, deps),
        device_id=device_id,
        acknowledged_by=acknowledged_by,
        sync_fn=deps.get("alarm_acknowledge_fn"),
    )
    if not outcome["acknowledged"] and not outcome["failed"]:
        return {"state": "noop", "message": None, "result": outcome}
    message = "partial" if outcome["failed"] else None
    return _succeeded(outcome, message=message)


def set_mode(config, shared_data, actuator_id, mode, *, deps=None):
    deps = dict(deps or {})
    try:
        outcome = modes.set_mode(shared_data, actuator_id, mode, send_config_fn=deps.get("send_config_fn"))
    except ValidationError as exc:
        return _rejected(exc, actuator_id=actuator_id, mode=mode)
    if not outcome["changed"]:
        return {"state": "noop", "message": None, "result": outcome}
    return _succeeded(outcome)


def set_device_mode(config, shared_data, device_id, mode, *, deps=None):
    deps = dict(deps or {})
    try:
        outcome = modes.set_device_mode(shared_data, device_id, mode, send_config_fn=deps.get("send_config_fn"))
    except ValidationError as exc:
        return _rejected(exc, device_id=device_id, mode=mode)
    return _succeeded(outcome, message="partial" if outcome["failed"] else None)


def configure_alarm_rule(config, shared_data, actuator_id, rule, *, deps=None):
    deps = dict(deps or {})
    try:
        outcome = alarm_engine.configure_alarm_rule(
            shared_data,
            actuator_id,
            rule,
            send_config_fn=deps.get("send_config_fn"),
        )
    except ValidationError as exc:
        return _rejected(exc, actuator_id=actuator_id)
    return _succeeded(outcome)


def configure_auto_off(config, shared_data, actuator_id, duration_s, *, deps=None):
    deps = dict(deps or {})
    try:
        outcome = modes.configure_auto_off(
            shared_data,
            actuator_id,
            duration_s,
            send_config_fn=deps.get("send_config_fn"),
        )
    except ValidationError as exc:
        return _rejected(exc, actuator_id=actuator_id)
    return _succeeded(outcome)
