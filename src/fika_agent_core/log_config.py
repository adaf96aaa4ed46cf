"""
Single log level for all loggers (agent, paho, redis), taken from
FIKA_LOG_LEVEL. Names (DEBUG, warning) and numeric levels are accepted;
anything else falls back to INFO.
"""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVEL_ENV = "FIKA_LOG_LEVEL"


def _parse_level(raw: str) -> int:
    raw = raw.strip().upper()
    if not raw:
        return logging.INFO
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


def level_from_env() -> int:
    return _parse_level(os.environ.get(LOG_LEVEL_ENV, ""))


def apply_log_level_from_env() -> int:
    """Set the root logger level so every logger uses it. Returns the level."""
    level = level_from_env()
    logging.getLogger().setLevel(level)
    return level


def configure_logging() -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    apply_log_level_from_env()
