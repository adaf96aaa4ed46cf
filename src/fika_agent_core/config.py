"""
Agent Core configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/fika/agent-core.env (system install)
2) ~/.config/fika-agent-core/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)
"""

from __future__ import annotations

import os
import socket
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Optional

from fika_agent_core.backoff import BackoffPolicy
from fika_agent_core.mqtt_topics import TopicSchemaError, validate_device_id


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def package_version() -> str:
    try:
        return _pkg_version("fika-agent-core")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/fika/agent-core.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "fika-agent-core" / ".env"

    # 3) project override
    yield Path(".env")


def _require_env(key: str) -> str:
    v = os.getenv(key)
    if v is None or v == "":
        raise ConfigError(f"Missing required environment variable: {key}")
    return v


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_float(key: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {key}: {raw!r}") from exc


def _env_int(key: str, default: int, *, minimum: int) -> int:
    value = _parse_int(key, os.getenv(key, str(default)))
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}")
    return value


def _env_float(key: str, default: float, *, minimum: float) -> float:
    value = _parse_float(key, os.getenv(key, str(default)))
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}")
    return value


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_allow_list(raw: str) -> frozenset[str]:
    return frozenset(item.strip() for item in raw.split(",") if item.strip())


def _require_file(key: str) -> str:
    path = _require_env(key)
    if not Path(path).is_file():
        raise ConfigError(f"{key} does not point to a file: {path}")
    return path


def default_instance_id(device_id: str) -> str:
    return f"{device_id}-{socket.gethostname()}-{os.getpid()}"


@dataclass(frozen=True, slots=True)
class AgentConfig:
    mqtt_host: str
    mqtt_port: int
    device_id: str
    ca_file: str
    cert_file: str
    key_file: str
    agent_version: str
    instance_id: str
    allowed_commands: frozenset[str]
    redis_url: str = "redis://127.0.0.1:6379/0"
    keepalive_s: int = 60
    connect_timeout_s: float = 30.0
    outbound_queue_size: int = 1000
    max_concurrent_jobs: int = 4
    lease_duration_s: float = 30.0
    terminal_ttl_s: int = 86400
    backoff: BackoffPolicy = BackoffPolicy()
    admission_buffer_size: int = 100
    publish_timeout_s: float = 10.0
    publish_max_retries: int = 5
    kill_grace_s: float = 5.0
    chunk_max_bytes: int = 4096
    chunk_flush_interval_s: float = 0.2
    boss_api_url: Optional[str] = None
    boss_api_token: Optional[str] = None
    boss_api_timeout_s: float = 5.0
    mqtt_logs_enabled: bool = False


def load_config(*, dotenv_enabled: bool = True) -> AgentConfig:
    """
    Load config by reading env files (if python-dotenv is installed) and then
    validating environment variables.

    Returns an immutable AgentConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        from dotenv import load_dotenv

        for p in _env_paths():
            if p.is_file():
                # do not override existing env vars; later files can fill missing
                load_dotenv(p, override=False)

    mqtt_host = _require_env("MQTT_HOST")
    mqtt_port = _parse_int("MQTT_PORT", os.getenv("MQTT_PORT", "8883"))
    if not (1 <= mqtt_port <= 65535):
        raise ConfigError(f"MQTT_PORT out of range: {mqtt_port}")

    device_id = _require_env("DEVICE_ID")
    try:
        validate_device_id(device_id)
    except TopicSchemaError as exc:
        raise ConfigError(str(exc)) from exc

    try:
        backoff = BackoffPolicy(
            base_delay=_env_float("BACKOFF_BASE_S", 1.0, minimum=0.0),
            factor=_env_float("BACKOFF_FACTOR", 2.0, minimum=1.0),
            max_delay=_env_float("BACKOFF_MAX_S", 60.0, minimum=0.0),
            jitter=_env_float("BACKOFF_JITTER", 0.1, minimum=0.0),
        )
    except ValueError as exc:
        if isinstance(exc, ConfigError):
            raise
        raise ConfigError(f"Invalid backoff settings: {exc}") from exc

    lease_s = _env_float("LEASE_DURATION_S", 30.0, minimum=1.0)

    return AgentConfig(
        mqtt_host=mqtt_host,
        mqtt_port=mqtt_port,
        device_id=device_id,
        ca_file=_require_file("MQTT_CA_FILE"),
        cert_file=_require_file("MQTT_CERT_FILE"),
        key_file=_require_file("MQTT_KEY_FILE"),
        agent_version=package_version(),
        instance_id=os.getenv("AGENT_INSTANCE_ID") or default_instance_id(device_id),
        allowed_commands=_parse_allow_list(os.getenv("ALLOWED_COMMANDS", "")),
        redis_url=os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0"),
        keepalive_s=_env_int("MQTT_KEEPALIVE_S", 60, minimum=5),
        connect_timeout_s=_env_float("MQTT_CONNECT_TIMEOUT_S", 30.0, minimum=1.0),
        outbound_queue_size=_env_int("MQTT_OUTBOUND_QUEUE", 1000, minimum=1),
        max_concurrent_jobs=_env_int("MAX_CONCURRENT_JOBS", 4, minimum=1),
        lease_duration_s=lease_s,
        terminal_ttl_s=_env_int("TERMINAL_TTL_S", 86400, minimum=1),
        backoff=backoff,
        admission_buffer_size=_env_int("ADMISSION_BUFFER_SIZE", 100, minimum=1),
        publish_timeout_s=_env_float("PUBLISH_TIMEOUT_S", 10.0, minimum=0.1),
        publish_max_retries=_env_int("PUBLISH_MAX_RETRIES", 5, minimum=0),
        kill_grace_s=_env_float("KILL_GRACE_S", 5.0, minimum=0.0),
        chunk_max_bytes=_env_int("CHUNK_MAX_BYTES", 4096, minimum=1),
        chunk_flush_interval_s=_env_float("CHUNK_FLUSH_INTERVAL_S", 0.2, minimum=0.0),
        boss_api_url=os.getenv("BOSS_API_URL") or None,
        boss_api_token=os.getenv("BOSS_API_TOKEN") or None,
        boss_api_timeout_s=_env_float("BOSS_API_TIMEOUT_S", 5.0, minimum=0.1),
        mqtt_logs_enabled=_env_bool("MQTT_LOGS_ENABLED", False),
    )
