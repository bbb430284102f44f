"""Shared helpers for publishing agent loop health summaries."""


def default_engine_status(*, include_queue=False):
    status = {
        "alive": False,
        "last_loop_start": None,
        "last_loop_end": None,
        "last_exception": None,
        "processed_count": 0,
        "last_processed_at": None,
    }
    if include_queue:
        status["queue_depth"] = 0
        status["dropped_count"] = 0
    return status


def update_engine_status(
    shared_data,
    *,
    status_key,
    queue_key=None,
    now_value=None,
    set_alive=None,
    last_loop_start=None,
    last_loop_end=None,
    last_exception=None,
    processed_increment=0,
    dropped_increment=0,
):
    """Merge loop bookkeeping into `shared_data[status_key]` and return a copy."""
    with shared_data["lock"]:
        status = shared_data.setdefault(
            status_key,
            default_engine_status(include_queue=queue_key is not None),
        )
        if set_alive is not None:
            status["alive"] = bool(set_alive)
        if last_loop_start is not None:
            status["last_loop_start"] = last_loop_start
        if last_loop_end is not None:
            status["last_loop_end"] = last_loop_end
        if last_exception is not None:
            status["last_exception"] = last_exception
        if processed_increment:
            status["processed_count"] = int(status.get("processed_count", 0) or 0) + int(processed_increment)
            status["last_processed_at"] = now_value
        if dropped_increment:
            status["dropped_count"] = int(status.get("dropped_count", 0) or 0) + int(dropped_increment)

        if queue_key is not None:
            queue_obj = shared_data.get(queue_key)
            try:
                status["queue_depth"] = int(queue_obj.qsize()) if queue_obj is not None else 0
            except Exception:
                status["queue_depth"] = 0
        return dict(status)
