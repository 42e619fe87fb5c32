from __future__ import annotations

import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

import anyio

from s3kv.errors import ErrorKind, KvStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Outcome(Enum):
    SUCCESS = "success"
    NETWORK_UNAVAILABLE = "network_unavailable"
    SERVER_ERROR = "server_error"
    THROTTLED = "throttled"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self in (Outcome.NETWORK_UNAVAILABLE, Outcome.SERVER_ERROR, Outcome.THROTTLED)

    @classmethod
    def from_status(cls, status_code: int) -> Outcome:
        if status_code < 400:
            return cls.SUCCESS
        if status_code in (429, 503):
            return cls.THROTTLED
        if status_code >= 500:
            return cls.SERVER_ERROR
        return cls.FATAL

    @classmethod
    def from_error(cls, error: KvStoreError) -> Outcome:
        if error.kind is ErrorKind.THROTTLED:
            return cls.THROTTLED
        if error.kind is ErrorKind.UNAVAILABLE:
            # no status means the request never got a response
            return cls.NETWORK_UNAVAILABLE if error.status_code is None else cls.SERVER_ERROR
        return cls.FATAL


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient failures.

    Delays are in seconds. ``attempt`` counts the attempts already made, so
    the first retry waits ``initial_delay``.
    """

    max_retries: int = 32
    initial_delay: float = 1.0
    max_delay: float = 32.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_retries <= 0:
            raise ValueError(f"max_retries must be > 0, got {self.max_retries}")
        if self.initial_delay <= 0:
            raise ValueError(f"initial_delay must be > 0, got {self.initial_delay}")
        if self.max_delay <= 0:
            raise ValueError(f"max_delay must be > 0, got {self.max_delay}")

    def backoff(self, attempt: int) -> float:
        exponent = max(attempt - 1, 0)
        # avoid float overflow for very large attempt counts
        if exponent > 62:
            return self.max_delay
        return min(self.max_delay, self.initial_delay * 2**exponent)

    def next_delay(self, attempt: int, outcome: Outcome) -> float | None:
        if not outcome.retryable:
            return None
        if attempt >= self.max_retries:
            return None
        delay = self.backoff(attempt)
        if self.jitter:
            delay = min(self.max_delay, delay + random.uniform(0, delay))
        return delay


@dataclass
class RetryState:
    attempt: int = 0
    deadline: float | None = None
    last_error: KvStoreError | None = None
    total_delay: float = 0.0
    started: float = field(default_factory=time.monotonic)

    @classmethod
    def with_timeout(cls, timeout: float | None) -> RetryState:
        deadline = None if timeout is None else time.monotonic() + timeout
        return cls(deadline=deadline)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


async def run_with_retry(
    operation: Callable[[RetryState], Awaitable[T]],
    policy: RetryPolicy,
    *,
    timeout: float | None = None,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or fails terminally.

    The operation is re-invoked from scratch on each attempt so that it can
    rebuild and re-sign its request. Transient KvStoreErrors are retried per
    ``policy``; the last one is re-raised once the budget is spent. Crossing
    ``timeout`` raises DEADLINE_EXCEEDED.
    """
    state = RetryState.with_timeout(timeout)
    while True:
        if state.expired():
            raise _deadline_error(description, state)
        state.attempt += 1
        remaining = state.remaining()
        try:
            if remaining is None:
                return await operation(state)
            with anyio.move_on_after(remaining):
                return await operation(state)
            raise _deadline_error(description, state)
        except KvStoreError as e:
            state.last_error = e
            outcome = Outcome.from_error(e)
            delay = policy.next_delay(state.attempt, outcome)
            if delay is None:
                if outcome.retryable:
                    logger.warning(
                        "%s failed after %d attempts: %s", description, state.attempt, e
                    )
                raise
            remaining = state.remaining()
            if remaining is not None:
                if remaining <= 0:
                    raise _deadline_error(description, state) from e
                delay = min(delay, remaining)
            logger.warning(
                "%s attempt %d failed (%s), retrying in %.3fs",
                description,
                state.attempt,
                e,
                delay,
            )
            state.total_delay += delay
            await anyio.sleep(delay)


def _deadline_error(description: str, state: RetryState) -> KvStoreError:
    message = f"{description} exceeded its deadline after {state.attempt} attempts"
    if state.last_error is not None:
        message += f"; last error: {state.last_error}"
    return KvStoreError.deadline_exceeded(message, attempts=state.attempt)
