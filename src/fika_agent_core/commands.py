"""
Inbound command schema and allow-list policy.

Command (devices/<id>/commands):
    {"jobId": str, "exec": str, "args": [str], "env": {str: str}?, "cwd": str?, "timeoutSeconds": int}
Cancel (devices/<id>/commands/cancel):
    {"jobId": str}

Parsing is strict: unknown keys, wrong types and empty identifiers are rejected.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from fika_agent_core.errors import MalformedRequest, PolicyViolation

_COMMAND_KEYS = frozenset({"jobId", "exec", "args", "env", "cwd", "timeoutSeconds"})
_COMMAND_REQUIRED = ("jobId", "exec", "args", "timeoutSeconds")
_CANCEL_KEYS = frozenset({"jobId"})

MAX_JOB_ID_LEN = 128


@dataclass(frozen=True, slots=True)
class CommandSpec:
    exec: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    timeout_seconds: int = 60

    @property
    def argv(self) -> list[str]:
        return [self.exec, *self.args]


@dataclass(frozen=True, slots=True)
class JobRequest:
    job_id: str
    command: CommandSpec
    received_at: float
    source_topic: str


@dataclass(frozen=True, slots=True)
class CancelRequest:
    job_id: str
    received_at: float
    source_topic: str


def _load_object(raw_payload: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw_payload)
    except json.JSONDecodeError as exc:
        raise MalformedRequest(f"payload must be valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedRequest("payload must be a JSON object")
    return payload


def _job_id(payload: dict[str, Any]) -> str:
    job_id = payload.get("jobId")
    if not isinstance(job_id, str) or not job_id:
        raise MalformedRequest("jobId must be a non-empty string")
    if len(job_id) > MAX_JOB_ID_LEN:
        raise MalformedRequest(f"jobId longer than {MAX_JOB_ID_LEN} characters")
    return job_id


def job_id_best_effort(raw_payload: str) -> str:
    """Pull a jobId out of a payload that failed validation, for the rejection result."""
    try:
        obj = json.loads(raw_payload)
    except (json.JSONDecodeError, TypeError):
        return ""
    if isinstance(obj, dict) and isinstance(obj.get("jobId"), str):
        return obj["jobId"]
    return ""


def parse_command(raw_payload: str, *, topic: str, received_at: Optional[float] = None) -> JobRequest:
    """Validate a command payload. Raises MalformedRequest."""
    payload = _load_object(raw_payload)
    try:
        return _parse_command(payload, topic, received_at)
    except MalformedRequest as exc:
        exc.job_id = job_id_best_effort(raw_payload)
        raise


def _parse_command(payload: dict[str, Any], topic: str, received_at: Optional[float]) -> JobRequest:
    for key in _COMMAND_REQUIRED:
        if key not in payload:
            raise MalformedRequest(f"missing required key: {key}")
    unknown = sorted(set(payload) - _COMMAND_KEYS)
    if unknown:
        raise MalformedRequest(f"unknown keys: {', '.join(unknown)}")

    job_id = _job_id(payload)

    exe = payload["exec"]
    if not isinstance(exe, str) or not exe:
        raise MalformedRequest("exec must be a non-empty string")

    args = payload["args"]
    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        raise MalformedRequest("args must be a list of strings")

    env = payload.get("env")
    if env is None:
        env = {}
    elif not isinstance(env, dict) or not all(
        isinstance(k, str) and k and isinstance(v, str) for k, v in env.items()
    ):
        raise MalformedRequest("env must be an object of string values")

    cwd = payload.get("cwd")
    if cwd is not None and (not isinstance(cwd, str) or not cwd):
        raise MalformedRequest("cwd must be a non-empty string")

    timeout = payload["timeoutSeconds"]
    # bool is an int subclass; reject it explicitly
    if isinstance(timeout, bool) or not isinstance(timeout, int):
        raise MalformedRequest("timeoutSeconds must be an integer")
    if timeout <= 0:
        raise MalformedRequest("timeoutSeconds must be > 0")

    return JobRequest(
        job_id=job_id,
        command=CommandSpec(
            exec=exe,
            args=tuple(args),
            env=dict(env),
            cwd=cwd,
            timeout_seconds=timeout,
        ),
        received_at=received_at if received_at is not None else time.time(),
        source_topic=topic,
    )


def parse_cancel(raw_payload: str, *, topic: str, received_at: Optional[float] = None) -> CancelRequest:
    """Validate a cancel payload. Raises MalformedRequest."""
    payload = _load_object(raw_payload)
    unknown = sorted(set(payload) - _CANCEL_KEYS)
    if unknown:
        raise MalformedRequest(f"unknown keys: {', '.join(unknown)}", job_id=job_id_best_effort(raw_payload))
    return CancelRequest(
        job_id=_job_id(payload),
        received_at=received_at if received_at is not None else time.time(),
        source_topic=topic,
    )


class AllowListPolicy:
    """Only executables named in the allow-list may run. Exact string match."""

    def __init__(self, allowed: Iterable[str]) -> None:
        self.allowed = frozenset(allowed)

    def check(self, request: JobRequest) -> None:
        if request.command.exec not in self.allowed:
            raise PolicyViolation(
                f"executable not permitted: {request.command.exec}",
                job_id=request.job_id,
            )
