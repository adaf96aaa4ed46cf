"""
Job state store backed by Redis.

Key layout:
    job:<job_id>    JSON JobRecord (lease fields inline; TTL once terminal)
    jobs:history    capped list of terminal job ids, newest first

Every write is a compare-and-set under WATCH/MULTI/EXEC, so concurrent claim
attempts from duplicate deliveries or other agent instances sharing the store
resolve to at most one live owner per job id.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Optional, Union

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from fika_agent_core.errors import ClaimLost, StoreUnavailable

logger = logging.getLogger(__name__)

STREAMS = ("stdout", "stderr")


class JobState(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED}
)


def _initial_seq() -> dict[str, int]:
    return {stream: 0 for stream in STREAMS}


@dataclass(slots=True)
class JobRecord:
    job_id: str
    state: JobState
    owner: str
    lease_expires_at: float
    claimed_at: float
    attempts: int = 1
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    output_offset: int = 0
    next_seq: dict[str, int] = field(default_factory=_initial_seq)
    publish_failed: bool = False
    publish_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def lease_expired(self, now: float) -> bool:
        return now >= self.lease_expires_at

    def to_json(self) -> str:
        data = asdict(self)
        data["state"] = self.state.value
        return json.dumps(data, sort_keys=True)

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "JobRecord":
        data: dict[str, Any] = json.loads(raw)
        data["state"] = JobState(data["state"])
        seq = _initial_seq()
        seq.update({k: int(v) for k, v in (data.get("next_seq") or {}).items()})
        data["next_seq"] = seq
        return cls(**data)


@dataclass(frozen=True, slots=True)
class Claimed:
    record: JobRecord


@dataclass(frozen=True, slots=True)
class AlreadyClaimed:
    existing: JobRecord


ClaimResult = Union[Claimed, AlreadyClaimed]


class StateStore:
    """
    Typed access to job records.

    `try_claim` is the atomicity boundary: create-if-absent, or overwrite if the
    current claim's lease has expired. Terminal records are never reclaimed.
    `update` only writes while the caller still owns the record.
    """

    KEY_PREFIX = "job:"
    HISTORY_KEY = "jobs:history"

    def __init__(
        self,
        client: redis.Redis,
        *,
        terminal_ttl_s: int = 86400,
        history_limit: int = 200,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = client
        self.terminal_ttl_s = terminal_ttl_s
        self.history_limit = history_limit
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "StateStore":
        client = redis.Redis.from_url(
            url,
            socket_timeout=5,
            socket_connect_timeout=5,
            health_check_interval=30,
        )
        return cls(client, **kwargs)

    @classmethod
    def key(cls, job_id: str) -> str:
        return f"{cls.KEY_PREFIX}{job_id}"

    @contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable(f"state store {op} failed: {exc}") from exc

    @staticmethod
    def _decode(raw: Optional[Union[str, bytes]]) -> Optional[JobRecord]:
        if raw is None:
            return None
        return JobRecord.from_json(raw)

    def ping(self) -> None:
        with self._guard("ping"):
            self._redis.ping()

    def get(self, job_id: str) -> Optional[JobRecord]:
        """Return the stored record, or None if the job is unknown."""
        with self._guard("get"):
            return self._decode(self._redis.get(self.key(job_id)))

    def try_claim(self, job_id: str, owner_id: str, lease_s: float) -> ClaimResult:
        key = self.key(job_id)
        with self._guard("claim"), self._redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    existing = self._decode(pipe.get(key))
                    now = self._clock()
                    if existing is not None and (
                        existing.is_terminal or not existing.lease_expired(now)
                    ):
                        pipe.unwatch()
                        return AlreadyClaimed(existing)

                    record = JobRecord(
                        job_id=job_id,
                        state=JobState.PENDING,
                        owner=owner_id,
                        lease_expires_at=now + lease_s,
                        claimed_at=now,
                    )
                    if existing is not None:
                        # Lease expired: previous owner crashed or stalled.
                        record.attempts = existing.attempts + 1
                        record.output_offset = existing.output_offset
                        record.next_seq = dict(existing.next_seq)
                        logger.warning(
                            "Reclaiming job %s from %s (lease expired, attempt %d)",
                            job_id,
                            existing.owner,
                            record.attempts,
                        )

                    pipe.multi()
                    pipe.set(key, record.to_json())
                    pipe.execute()
                    return Claimed(record)
                except WatchError:
                    logger.debug("Claim race on %s; retrying", key)
                    continue

    def update(
        self,
        job_id: str,
        owner_id: str,
        mutation: Callable[[JobRecord], None],
    ) -> JobRecord:
        """
        Apply `mutation` to a fresh copy of the record and write it back.

        Raises ClaimLost if the record is gone or owned by someone else.
        Entering a terminal state applies the terminal TTL and appends the
        job id to the history list.
        """
        key = self.key(job_id)
        with self._guard("update"), self._redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    record = self._decode(pipe.get(key))
                    if record is None:
                        pipe.unwatch()
                        raise ClaimLost(f"job {job_id} has no record")
                    if record.owner != owner_id:
                        pipe.unwatch()
                        raise ClaimLost(f"job {job_id} is owned by {record.owner}")

                    was_terminal = record.is_terminal
                    mutation(record)

                    pipe.multi()
                    if record.is_terminal:
                        pipe.set(key, record.to_json(), ex=self.terminal_ttl_s)
                        if not was_terminal:
                            pipe.lpush(self.HISTORY_KEY, job_id)
                            pipe.ltrim(self.HISTORY_KEY, 0, self.history_limit - 1)
                    else:
                        pipe.set(key, record.to_json())
                    pipe.execute()
                    return record
                except WatchError:
                    logger.debug("Update race on %s; retrying", key)
                    continue

    def renew(self, job_id: str, owner_id: str, lease_s: float) -> JobRecord:
        now = self._clock()

        def _extend(record: JobRecord) -> None:
            record.lease_expires_at = now + lease_s

        return self.update(job_id, owner_id, _extend)

    def history(self, limit: int = 20) -> list[str]:
        """Most recent terminal job ids, newest first."""
        with self._guard("history"):
            raw = self._redis.lrange(self.HISTORY_KEY, 0, limit - 1)
        return [item.decode("utf-8") if isinstance(item, bytes) else item for item in raw]
