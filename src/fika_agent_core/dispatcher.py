"""
Command dispatcher.

Inbound messages are queued in arrival order and admitted by a single thread:

    parse -> allow-list -> try_claim -> executor

Admission is gated: while the session is not Connected, or the state store
reported itself unavailable, messages wait in a bounded FIFO. When the FIFO is
full the oldest entry is dropped (BackpressureDrop). Store recovery is checked
with the shared backoff policy, and buffered messages resume in order.
"""

from __future__ import annotations

import collections
import logging
import threading
from typing import Optional

from fika_agent_core.backoff import Backoff, BackoffPolicy
from fika_agent_core.commands import AllowListPolicy, parse_cancel, parse_command
from fika_agent_core.errors import RequestError, StoreUnavailable
from fika_agent_core.executor import JobExecutor
from fika_agent_core.mqtt_topics import TopicSchema
from fika_agent_core.publisher import ResultPublisher
from fika_agent_core.session import ConnectivityState, InboundMessage
from fika_agent_core.state_store import Claimed, StateStore

logger = logging.getLogger(__name__)


class CommandDispatcher:
    def __init__(
        self,
        store: StateStore,
        executor: JobExecutor,
        publisher: ResultPublisher,
        topics: TopicSchema,
        policy: AllowListPolicy,
        *,
        owner_id: str,
        lease_s: float = 30.0,
        buffer_size: int = 100,
        backoff: BackoffPolicy = BackoffPolicy(),
        connected: bool = False,
    ) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self.store = store
        self.executor = executor
        self.publisher = publisher
        self.topics = topics
        self.policy = policy
        self.owner_id = owner_id
        self.lease_s = lease_s
        self.buffer_size = buffer_size

        self.backpressure_drops = 0
        self.admitted = 0

        self._buffer: collections.deque[InboundMessage] = collections.deque()
        self._cond = threading.Condition()
        self._connected = connected
        self._store_down = False
        self._busy = False
        self._store_backoff = Backoff(backoff)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -------------------------
    # Lifecycle
    # -------------------------
    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="dispatcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None

    # -------------------------
    # Inputs
    # -------------------------
    def on_message(self, message: InboundMessage) -> None:
        """Queue one inbound message for admission. Never blocks on the store or broker."""
        with self._cond:
            self._append(message)
            self._cond.notify_all()

    def on_connectivity_change(self, state: ConnectivityState) -> None:
        with self._cond:
            self._connected = state is ConnectivityState.CONNECTED
            if self._connected:
                logger.info("Admission resumed (connected), %d buffered", len(self._buffer))
            else:
                logger.info("Admission paused (%s)", state.value)
            self._cond.notify_all()

    def _append(self, message: InboundMessage) -> None:
        self._buffer.append(message)
        self._trim()

    def _trim(self) -> None:
        while len(self._buffer) > self.buffer_size:
            dropped = self._buffer.popleft()
            self.backpressure_drops += 1
            logger.warning(
                "BackpressureDrop: admission buffer full (%d), dropped oldest message on %s (total drops=%d)",
                self.buffer_size,
                dropped.topic,
                self.backpressure_drops,
            )

    # -------------------------
    # Introspection
    # -------------------------
    @property
    def buffered(self) -> int:
        with self._cond:
            return len(self._buffer)

    @property
    def paused(self) -> bool:
        with self._cond:
            return self._paused_locked()

    def _paused_locked(self) -> bool:
        return not self._connected or self._store_down

    def wait_idle(self, timeout_s: Optional[float] = None) -> bool:
        """Block until the buffer is empty and nothing is mid-admission."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._buffer and not self._busy, timeout=timeout_s)

    # -------------------------
    # Admission loop
    # -------------------------
    def _loop(self) -> None:
        while not self._stop.is_set():
            with self._cond:
                self._cond.wait_for(
                    lambda: self._stop.is_set() or (self._buffer and not self._paused_locked()),
                    timeout=0.5,
                )
                if self._stop.is_set():
                    return
                if not self._buffer or self._paused_locked():
                    continue
                message = self._buffer.popleft()
                self._busy = True

            try:
                self._dispatch(message)
            except StoreUnavailable as exc:
                self._store_unavailable(message, exc)
            except Exception:
                logger.exception("Dispatch failed for message on %s", message.topic)
            finally:
                with self._cond:
                    self._busy = False
                    self._cond.notify_all()

    def _store_unavailable(self, message: InboundMessage, exc: StoreUnavailable) -> None:
        delay = self._store_backoff.next_delay()
        logger.warning("State store unavailable (%s); admission paused, probing in %.2fs", exc, delay)
        with self._cond:
            # put it back at the head so buffered order is kept
            self._buffer.appendleft(message)
            self._trim()
            self._store_down = True
            self._cond.notify_all()

        while not self._stop.wait(timeout=delay):
            try:
                self.store.ping()
            except StoreUnavailable as ping_exc:
                delay = self._store_backoff.next_delay()
                logger.warning("State store still unavailable (%s); next check in %.2fs", ping_exc, delay)
                continue
            break

        self._store_backoff.reset()
        with self._cond:
            self._store_down = False
            logger.info("State store recovered; admitting %d buffered message(s)", len(self._buffer))
            self._cond.notify_all()

    def _dispatch(self, message: InboundMessage) -> None:
        try:
            raw = message.payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            self.publisher.publish_rejection("", "MalformedRequest", f"payload is not UTF-8: {exc}")
            return

        if message.topic == self.topics.commands_cancel():
            self._dispatch_cancel(raw, message)
            return
        self.admit(raw, message)

    def _dispatch_cancel(self, raw: str, message: InboundMessage) -> None:
        try:
            cancel = parse_cancel(raw, topic=message.topic, received_at=message.received_at)
        except RequestError as exc:
            logger.warning("Ignoring malformed cancel request: %s", exc)
            return
        self.executor.cancel(cancel.job_id)

    def admit(self, raw: str, message: InboundMessage) -> bool:
        """
        Admit at most one job for a command payload. Returns True if a new
        execution was started. Raises StoreUnavailable from the claim.
        """
        try:
            request = parse_command(raw, topic=message.topic, received_at=message.received_at)
            self.policy.check(request)
        except RequestError as exc:
            logger.warning("Rejected command job=%r: %s", exc.job_id, exc)
            self.publisher.publish_rejection(exc.job_id, exc.reason, str(exc))
            return False

        result = self.store.try_claim(request.job_id, self.owner_id, self.lease_s)
        if isinstance(result, Claimed):
            self.admitted += 1
            logger.info("Admitted job %s: %s", request.job_id, request.command.argv)
            self.executor.submit(request, result.record)
            return True

        existing = result.existing
        if existing.is_terminal:
            logger.info(
                "Duplicate of finished job %s (%s); republishing result",
                request.job_id,
                existing.state.value,
            )
            self.publisher.publish_result(existing)
        else:
            logger.debug(
                "Duplicate of in-flight job %s (owner=%s); dropped",
                request.job_id,
                existing.owner,
            )
        return False
