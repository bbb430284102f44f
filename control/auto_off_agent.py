"""Auto-off agent: sends OFF once an armed ON window has elapsed."""

import logging
import time

from control.dispatcher import dispatch_command
from runtime.defaults import DEFAULT_AUTO_OFF_PERIOD_S
from runtime.engine_status_runtime import update_engine_status
from runtime.errors import DispatchError, EngineError
from time_utils import now_tz


AUTO_OFF_ISSUER = "auto_off"


def collect_due_auto_offs(shared_data, now_value):
    """
    Return ids of actuators whose auto-off deadline has passed, disarming them.

    Deadlines on actuators that are no longer ON in MANUAL mode are dropped
    without producing a command.
    """
    due = []
    with shared_data["lock"]:
        for actuator in (shared_data.get("actuators_by_id", {}) or {}).values():
            deadline = actuator.get("auto_off_deadline")
            if deadline is None or deadline > now_value:
                continue
            actuator["auto_off_deadline"] = None
            if actuator["current_status"] == "ON" and actuator["mode"] == "MANUAL":
                due.append(actuator["id"])
    return due


def _run_single_auto_off_cycle(config, shared_data, *, send_fn, now_fn=now_tz, dispatch_fn=dispatch_command):
    loop_now = now_fn(config)
    update_engine_status(
        shared_data,
        status_key="auto_off_agent_status",
        now_value=loop_now,
        set_alive=True,
        last_loop_start=loop_now,
    )

    processed = 0
    for actuator_id in collect_due_auto_offs(shared_data, loop_now):
        logging.info("AutoOff: timer elapsed for %s; sending OFF.", actuator_id)
        try:
            dispatch_fn(
                config,
                shared_data,
                actuator_id,
                "OFF",
                send_fn=send_fn,
                issued_by=AUTO_OFF_ISSUER,
                now_fn=lambda: now_fn(config),
            )
        except DispatchError as exc:
            logging.warning("AutoOff: OFF for %s did not complete: %s", actuator_id, exc)
        except EngineError as exc:
            logging.warning("AutoOff: OFF for %s rejected: %s", actuator_id, exc)
        processed += 1

    end_now = now_fn(config)
    update_engine_status(
        shared_data,
        status_key="auto_off_agent_status",
        now_value=end_now,
        set_alive=True,
        last_loop_end=end_now,
        processed_increment=processed,
    )
    return processed


def auto_off_agent(config, shared_data, send_fn):
    """Check armed auto-off deadlines every period until shutdown."""
    logging.info("Auto-off agent started.")
    period_s = float(config.get("AUTO_OFF_PERIOD_S", DEFAULT_AUTO_OFF_PERIOD_S))

    while not shared_data["shutdown_event"].is_set():
        loop_start = time.monotonic()
        try:
            _run_single_auto_off_cycle(config, shared_data, send_fn=send_fn)
        except Exception:
            logging.exception("AutoOff: unexpected loop error.")
            error_now = now_tz(config)
            update_engine_status(
                shared_data,
                status_key="auto_off_agent_status",
                now_value=error_now,
                set_alive=True,
                last_exception={"timestamp": error_now, "message": "unexpected loop error"},
                last_loop_end=error_now,
            )
        elapsed = time.monotonic() - loop_start
        time.sleep(max(0.0, period_s - elapsed))

    update_engine_status(
        shared_data,
        status_key="auto_off_agent_status",
        now_value=now_tz(config),
        set_alive=False,
        last_loop_end=now_tz(config),
    )
    logging.info("Auto-off agent stopped.")
