"""
Exponential backoff shared by the session reconnect loop, store-recovery
probing in the dispatcher, and publish retries.

delay(attempt) = min(base * factor ** attempt, max_delay) +/- jitter * delay
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1  # 0 disables

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if not (0 <= self.jitter <= 1):
            raise ValueError("jitter must be between 0 and 1")

    def get_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        delay = min(self.base_delay * (self.factor ** attempt), self.max_delay)
        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay += random.uniform(-jitter_range, jitter_range)
        return max(0.0, delay)


class Backoff:
    """Stateful attempt counter over a BackoffPolicy."""

    def __init__(self, policy: BackoffPolicy) -> None:
        self.policy = policy
        self.attempt = 0

    def next_delay(self) -> float:
        delay = self.policy.get_delay(self.attempt)
        self.attempt += 1
        return delay

    def reset(self) -> None:
        self.attempt = 0


def retry_call(
    fn: Callable[[], T],
    *,
    policy: BackoffPolicy,
    retry_on: tuple[type[BaseException], ...],
    max_attempts: int,
    stop_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
    deadline: Optional[float] = None,
) -> T:
    """
    Call fn until it succeeds, retrying `retry_on` errors with backoff.

    Raises the last error once max_attempts calls have failed, when the next
    retry would start after `deadline` (time.monotonic()), or immediately if
    stop_event is set while waiting.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    backoff = Backoff(policy)
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except retry_on as exc:
            if attempt >= max_attempts:
                raise
            delay = backoff.next_delay()
            if deadline is not None and time.monotonic() + delay >= deadline:
                raise
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt,
                max_attempts,
                exc,
                delay,
            )
            if stop_event is not None:
                if stop_event.wait(timeout=delay):
                    raise
            else:
                sleep(delay)
