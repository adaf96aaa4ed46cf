"""
Result publisher.

Maps job state transitions to result messages (devices/<id>/results) and
output chunks to output messages (devices/<id>/output). Publishes go through
the session with backoff retries; terminal results that still cannot be
delivered are recorded on the JobRecord so the store stays authoritative.
"""

from __future__ import annotations

import base64
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from fika_agent_core.backoff import BackoffPolicy, retry_call
from fika_agent_core.errors import ClaimLost, PublishTimeout, StoreUnavailable
from fika_agent_core.mqtt_topics import TopicSchema
from fika_agent_core.reporter import BossReporter, ReportError
from fika_agent_core.state_store import STREAMS, JobRecord, StateStore

logger = logging.getLogger(__name__)

REJECTED = "Rejected"


@dataclass(frozen=True, slots=True)
class OutputChunk:
    job_id: str
    stream: str
    seq: int
    data: bytes

    def to_message(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "stream": self.stream,
            "seq": self.seq,
            "data": base64.b64encode(self.data).decode("ascii"),
        }


def result_message(record: JobRecord) -> dict[str, Any]:
    msg: dict[str, Any] = {"jobId": record.job_id, "state": record.state.value}
    if record.exit_code is not None:
        msg["exitCode"] = record.exit_code
    if record.reason:
        msg["reason"] = record.reason
    return msg


def rejection_message(job_id: str, reason: str) -> dict[str, Any]:
    return {"jobId": job_id, "state": REJECTED, "reason": reason}


class ChunkBatcher:
    """
    Per-stream byte accumulator.

    A stream's buffer is emitted once it reaches max_bytes, or once its oldest
    pending byte is older than flush_interval_s. Emitted pieces never exceed
    max_bytes.
    """

    def __init__(
        self,
        *,
        max_bytes: int = 4096,
        flush_interval_s: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_bytes < 1:
            raise ValueError("max_bytes must be >= 1")
        self.max_bytes = max_bytes
        self.flush_interval_s = flush_interval_s
        self._clock = clock
        self._buffers: dict[str, bytearray] = {s: bytearray() for s in STREAMS}
        self._since: dict[str, Optional[float]] = {s: None for s in STREAMS}

    def add(self, stream: str, data: bytes) -> list[tuple[str, bytes]]:
        buf = self._buffers[stream]
        if not buf:
            self._since[stream] = self._clock()
        buf.extend(data)
        ready: list[tuple[str, bytes]] = []
        while len(buf) >= self.max_bytes:
            ready.append((stream, bytes(buf[: self.max_bytes])))
            del buf[: self.max_bytes]
        if not buf:
            self._since[stream] = None
        return ready

    def due(self) -> list[tuple[str, bytes]]:
        now = self._clock()
        ready: list[tuple[str, bytes]] = []
        for stream in STREAMS:
            since = self._since[stream]
            if since is not None and now - since >= self.flush_interval_s:
                ready.extend(self._drain(stream))
        return ready

    def flush(self) -> list[tuple[str, bytes]]:
        ready: list[tuple[str, bytes]] = []
        for stream in STREAMS:
            ready.extend(self._drain(stream))
        return ready

    def discard(self) -> None:
        for stream in STREAMS:
            self._buffers[stream].clear()
            self._since[stream] = None

    def _drain(self, stream: str) -> list[tuple[str, bytes]]:
        buf = self._buffers[stream]
        self._since[stream] = None
        if not buf:
            return []
        data = bytes(buf)
        buf.clear()
        return [(stream, data)]


class ResultPublisher:
    def __init__(
        self,
        session: Any,
        store: StateStore,
        topics: TopicSchema,
        *,
        owner_id: str,
        backoff: BackoffPolicy = BackoffPolicy(),
        max_retries: int = 5,
        publish_timeout_s: float = 10.0,
        reporter: Optional[BossReporter] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.session = session
        self.store = store
        self.topics = topics
        self.owner_id = owner_id
        self.backoff = backoff
        self.max_retries = max_retries
        self.publish_timeout_s = publish_timeout_s
        self.reporter = reporter
        self._stop = stop_event

    def _publish(self, topic: str, payload: dict[str, Any], deadline: Optional[float] = None) -> None:
        """Publish with retries; with a deadline (time.monotonic()) no attempt runs past it."""

        def _attempt() -> None:
            timeout_s = self.publish_timeout_s
            if deadline is not None:
                timeout_s = min(timeout_s, deadline - time.monotonic())
                if timeout_s <= 0:
                    raise PublishTimeout(f"publish to {topic}: deadline passed")
            self.session.publish(topic, payload, qos=1, timeout_s=timeout_s)

        retry_call(
            _attempt,
            policy=self.backoff,
            retry_on=(PublishTimeout,),
            max_attempts=self.max_retries + 1,
            stop_event=self._stop,
            deadline=deadline,
        )

    def _report(self, payload: dict[str, Any]) -> None:
        if self.reporter is None:
            return
        try:
            self.reporter.report(payload)
        except ReportError as exc:
            logger.warning("boss-api report failed for job %s: %s", payload.get("jobId"), exc)

    def publish_running(self, record: JobRecord, *, deadline: Optional[float] = None) -> bool:
        payload = result_message(record)
        try:
            self._publish(self.topics.results(), payload, deadline)
        except PublishTimeout as exc:
            logger.warning("Running status for job %s not delivered: %s", record.job_id, exc)
            return False
        self._report(payload)
        return True

    def publish_result(self, record: JobRecord) -> bool:
        """
        Publish a terminal result. Returns True once acknowledged.

        After max_retries the failure is written to the record
        (publish_failed/publish_error); returns False.
        """
        payload = result_message(record)
        try:
            self._publish(self.topics.results(), payload)
        except PublishTimeout as exc:
            logger.error(
                "Result for job %s (%s) not delivered after %d attempts: %s",
                record.job_id,
                record.state.value,
                self.max_retries + 1,
                exc,
            )
            self._mark_publish_failed(record, str(exc))
            return False

        logger.info("Published result job=%s state=%s", record.job_id, record.state.value)
        self._report(payload)
        return True

    def _mark_publish_failed(self, record: JobRecord, error: str) -> None:
        def _mark(rec: JobRecord) -> None:
            rec.publish_failed = True
            rec.publish_error = error

        try:
            self.store.update(record.job_id, self.owner_id, _mark)
        except ClaimLost:
            # republishing a record owned by another instance
            logger.warning("Not recording publish failure for job %s: not the owner", record.job_id)
        except StoreUnavailable as exc:
            logger.error("Could not record publish failure for job %s: %s", record.job_id, exc)

    def publish_rejection(self, job_id: str, reason: str, detail: str = "") -> bool:
        payload = rejection_message(job_id, reason)
        try:
            self._publish(self.topics.results(), payload)
        except PublishTimeout as exc:
            logger.error("Rejection for job %r not delivered: %s", job_id, exc)
            return False
        logger.info("Rejected job=%r reason=%s: %s", job_id, reason, detail)
        self._report(payload)
        return True

    def publish_chunk(self, chunk: OutputChunk, *, deadline: Optional[float] = None) -> bool:
        try:
            self._publish(self.topics.output(), chunk.to_message(), deadline)
        except PublishTimeout as exc:
            logger.warning(
                "Chunk job=%s stream=%s seq=%d not delivered: %s",
                chunk.job_id,
                chunk.stream,
                chunk.seq,
                exc,
            )
            return False
        return True
