"""Push channel agent: drains inbound device events into the telemetry merge."""

import logging
import queue
import time

from runtime.defaults import DEFAULT_PUSH_LOOP_PERIOD_S
from runtime.engine_status_runtime import update_engine_status
from runtime.errors import EngineError
from runtime.shared_state import snapshot_locked
from telemetry.merge import apply_push_event
from time_utils import now_tz


PUSH_AGENT_MAX_EVENTS_PER_CYCLE = 256


def enqueue_push_event(shared_data, event, *, now_fn=None):
    """Queue an inbound push event for the agent. Returns False when the queue is full."""
    queue_obj = snapshot_locked(shared_data, lambda data: data.get("push_event_queue"))
    if queue_obj is None:
        raise RuntimeError("push_event_queue is not initialized.")
    try:
        queue_obj.put_nowait(event)
    except queue.Full:
        logging.warning("PushAgent: event queue full; dropping event from %s.", (event or {}).get("device_id"))
        update_engine_status(
            shared_data,
            status_key="push_agent_status",
            queue_key="push_event_queue",
            now_value=now_fn() if now_fn is not None else None,
            dropped_increment=1,
        )
        return False
    return True


def _apply_one_event(config, shared_data, event):
    try:
        return apply_push_event(config, shared_data, event)
    except EngineError as exc:
        logging.warning("PushAgent: rejected event from %s: %s", (event or {}).get("device_id"), exc)
        return None


def _run_single_push_cycle(config, shared_data, *, wait_s, now_fn=now_tz, apply_event_fn=None):
    """Apply queued events in arrival order; blocks up to `wait_s` for the first one."""
    apply_event_fn = apply_event_fn or (lambda event: _apply_one_event(config, shared_data, event))
    queue_obj = snapshot_locked(shared_data, lambda data: data.get("push_event_queue"))
    loop_now = now_fn(config)
    update_engine_status(
        shared_data,
        status_key="push_agent_status",
        queue_key="push_event_queue",
        now_value=loop_now,
        set_alive=True,
        last_loop_start=loop_now,
    )
    if queue_obj is None:
        return 0

    processed = 0
    timeout = wait_s
    while processed < PUSH_AGENT_MAX_EVENTS_PER_CYCLE:
        try:
            event = queue_obj.get(timeout=timeout) if timeout else queue_obj.get_nowait()
        except queue.Empty:
            break
        timeout = 0
        try:
            apply_event_fn(event)
        finally:
            processed += 1
            queue_obj.task_done()

    end_now = now_fn(config)
    update_engine_status(
        shared_data,
        status_key="push_agent_status",
        queue_key="push_event_queue",
        now_value=end_now,
        set_alive=True,
        last_loop_end=end_now,
        processed_increment=processed,
    )
    return processed


def push_channel_agent(config, shared_data):
    """Apply push-channel events to the entity store until shutdown."""
    logging.info("Push channel agent started.")
    period_s = float(config.get("PUSH_LOOP_PERIOD_S", DEFAULT_PUSH_LOOP_PERIOD_S))

    while not shared_data["shutdown_event"].is_set():
        loop_start = time.monotonic()
        try:
            _run_single_push_cycle(config, shared_data, wait_s=period_s)
        except Exception:
            logging.exception("PushAgent: unexpected loop error.")
            error_now = now_tz(config)
            update_engine_status(
                shared_data,
                status_key="push_agent_status",
                queue_key="push_event_queue",
                now_value=error_now,
                set_alive=True,
                last_exception={"timestamp": error_now, "message": "unexpected loop error"},
                last_loop_end=error_now,
            )
            elapsed = time.monotonic() - loop_start
            time.sleep(max(0.0, period_s - elapsed))

    update_engine_status(
        shared_data,
        status_key="push_agent_status",
        queue_key="push_event_queue",
        now_value=now_tz(config),
        set_alive=False,
        last_loop_end=now_tz(config),
    )
    logging.info("Push channel agent stopped.")
