import logging
import queue
import threading
import time

from config_loader import load_config
from control.auto_off_agent import auto_off_agent
from engine_api import build_engine_deps
from logger_config import setup_logging
from runtime.defaults import DEFAULT_PUSH_QUEUE_MAXSIZE
from runtime.engine_status_runtime import default_engine_status
from store.entity_store import default_store_state, register_fleet
from telemetry.push_agent import push_channel_agent


def build_initial_shared_data(config):
    """Create the authoritative runtime shared_data contract."""
    shared_data = {
        "session_logs": [],
        "log_lock": threading.Lock(),
        "push_event_queue": queue.Queue(maxsize=int(config.get("PUSH_QUEUE_MAXSIZE", DEFAULT_PUSH_QUEUE_MAXSIZE))),
        "push_agent_status": default_engine_status(include_queue=True),
        "auto_off_agent_status": default_engine_status(include_queue=False),
        "lock": threading.Lock(),
        "shutdown_event": threading.Event(),
        "log_file_path": None,
    }
    shared_data.update(default_store_state())
    return shared_data


def build_runtime(config):
    """Return (shared_data, deps) with the fleet registered."""
    shared_data = build_initial_shared_data(config)
    register_fleet(config, shared_data)
    return shared_data, build_engine_deps(config)


def main(config_path="config.yaml"):
    """Director agent: load config, initialize shared runtime, and start agents."""
    config = load_config(config_path)
    shared_data = build_initial_shared_data(config)

    setup_logging(config, shared_data)
    logging.info("Director agent starting manifold sync.")
    register_fleet(config, shared_data)
    deps = build_engine_deps(config)

    threads = []
    try:
        threads = [
            threading.Thread(target=push_channel_agent, args=(config, shared_data), daemon=True),
            threading.Thread(target=auto_off_agent, args=(config, shared_data, deps["send_fn"]), daemon=True),
        ]

        for thread in threads:
            thread.start()

        logging.info("All agents started.")

        while not shared_data["shutdown_event"].is_set():
            time.sleep(1)

    except KeyboardInterrupt:
        logging.info("Keyboard interrupt received. Shutting down...")
    except Exception as exc:
        logging.error("An unexpected error occurred in the director: %s", exc)
    finally:
        logging.info("Director initiating shutdown...")
        shared_data["shutdown_event"].set()

        for thread in threads:
            thread.join(timeout=10)

        logging.info("Application shutdown complete.")


if __name__ == "__main__":
    main()
