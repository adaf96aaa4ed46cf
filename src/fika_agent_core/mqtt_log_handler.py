"""
MQTT logging handler.

Publishes log records to devices/<device_id>/logs with rate limiting to prevent flooding.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any

logger = logging.getLogger(__name__)

# Rate limiting: max logs per time window
MAX_LOGS_PER_WINDOW = 10
TIME_WINDOW_S = 1.0

_LEVEL_MAP = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warning",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}


class MQTTLogHandler(logging.Handler):
    """
    Logging handler that forwards records through the session's non-blocking publish.

    At most MAX_LOGS_PER_WINDOW records per TIME_WINDOW_S are sent; the rest are counted
    and reported in a periodic warning.
    """

    def __init__(self, session: Any, topic: str) -> None:
        super().__init__()
        self.session = session
        self.topic = topic

        self._lock = threading.Lock()
        self._log_timestamps: list[float] = []
        self._dropped_count = 0
        self._last_warning_ts = 0.0
        self._local = threading.local()

    def emit(self, record: logging.LogRecord) -> None:
        # Publishing may log (paho, session); never re-enter from the same thread.
        if getattr(self._local, "active", False):
            return
        self._local.active = True
        try:
            if not self._should_publish():
                self._note_dropped()
                return
            payload = {
                "level": _LEVEL_MAP.get(record.levelno, "info"),
                "logger": record.name,
                "message": self.format(record),
            }
            self.session.publish_nowait(self.topic, json.dumps(payload), qos=0)
        except Exception:
            self.handleError(record)
        finally:
            self._local.active = False

    def _note_dropped(self) -> None:
        self._dropped_count += 1
        now = time.time()
        if now - self._last_warning_ts >= 10.0:
            logger.warning(
                "MQTT log handler: dropped %d log messages due to rate limiting",
                self._dropped_count,
            )
            self._dropped_count = 0
            self._last_warning_ts = now

    def _should_publish(self) -> bool:
        with self._lock:
            now = time.time()
            cutoff = now - TIME_WINDOW_S
            self._log_timestamps = [ts for ts in self._log_timestamps if ts > cutoff]
            if len(self._log_timestamps) >= MAX_LOGS_PER_WINDOW:
                return False
            self._log_timestamps.append(now)
            return True


def install_mqtt_log_handler(session: Any, topic: str) -> MQTTLogHandler:
    """Attach a single MQTTLogHandler for `topic` to the root logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, MQTTLogHandler) and handler.topic == topic:
            return handler
    handler = MQTTLogHandler(session, topic)
    handler.setLevel(logging.DEBUG)  # actual filtering is done by logger level
    root_logger.addHandler(handler)
    logger.info("MQTT logging handler added on %s", topic)
    return handler
