"""
Logger configuration module for manifold sync.

Configures logging to:
1. Output to console
2. Write one log file per day in logs/ (dated in the configured timezone)
3. Keep the most recent records in shared_data for the query surface
"""

import logging
import os
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from runtime.paths import get_logs_dir

SESSION_LOG_LIMIT = 1000
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _split_component(message):
    """Split a "Component: text" message into its component and text."""
    head, sep, tail = message.partition(": ")
    if sep and head and " " not in head:
        return head, tail
    return None, message


class SessionLogHandler(logging.Handler):
    """Appends compact records to shared_data["session_logs"], newest last."""

    def __init__(self, shared_data, *, limit=SESSION_LOG_LIMIT):
        super().__init__()
        self.shared_data = shared_data
        self.limit = int(limit)

    def emit(self, record):
        try:
            component, text = _split_component(record.getMessage())
            log_entry = {
                "timestamp": datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
                "level": record.levelname,
                "component": component,
                "message": text,
            }
            with self.shared_data["log_lock"]:
                logs = self.shared_data.setdefault("session_logs", [])
                logs.append(log_entry)
                if len(logs) > self.limit:
                    del logs[: len(logs) - self.limit]
        except Exception:
            self.handleError(record)


class DateRoutedFileHandler(logging.Handler):
    """File handler that routes records to YYYY-MM-DD files by record timestamp."""

    def __init__(self, logs_dir, timezone_name, shared_data, *, encoding="utf-8"):
        super().__init__()
        self.logs_dir = logs_dir
        self.shared_data = shared_data
        self.encoding = encoding
        try:
            self.timezone = ZoneInfo(timezone_name)
        except (TypeError, ValueError, ZoneInfoNotFoundError):
            self.timezone = datetime.now().astimezone().tzinfo

        self._current_date = None
        self._stream = None

    def build_log_path(self, date_str):
        return os.path.join(self.logs_dir, f"{date_str}_manifold_sync.log")

    def _switch_to(self, date_str):
        if date_str == self._current_date and self._stream is not None:
            return
        self._close_stream()
        path = self.build_log_path(date_str)
        self._stream = open(path, "a", encoding=self.encoding)
        self._current_date = date_str
        with self.shared_data["log_lock"]:
            self.shared_data["log_file_path"] = path

    def _close_stream(self):
        if self._stream is None:
            return
        try:
            self._stream.close()
        finally:
            self._stream = None

    def emit(self, record):
        try:
            date_str = datetime.fromtimestamp(record.created, tz=self.timezone).strftime("%Y-%m-%d")
            self._switch_to(date_str)
            self._stream.write(self.format(record) + "\n")
            self._stream.flush()
        except Exception:
            self.handleError(record)

    def close(self):
        try:
            self._close_stream()
        finally:
            super().close()


def setup_logging(config, shared_data, *, logs_dir=None):
    """
    Replace root handlers with console, daily file and session handlers.

    Returns the configured root logger.
    """
    log_level = config.get("LOG_LEVEL", logging.INFO)
    logs_dir = logs_dir or get_logs_dir(__file__)
    os.makedirs(logs_dir, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers = [
        logging.StreamHandler(),
        DateRoutedFileHandler(logs_dir, config.get("TIMEZONE_NAME"), shared_data, encoding="utf-8"),
        SessionLogHandler(shared_data),
    ]
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    # requests' connection pool logs every downlink at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return root_logger
