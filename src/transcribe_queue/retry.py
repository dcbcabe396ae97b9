from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from transcribe_queue.errors import NetworkError, RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FailureKind(Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, RateLimited):
        return FailureKind.RATE_LIMITED
    if isinstance(exc, NetworkError):
        return FailureKind.TRANSIENT
    return FailureKind.FATAL


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 3.0
    multiplier: float = 2.0
    rate_limit_factor: float = 2.0
    jitter_seconds: float = 0.5
    classify: Callable[[BaseException], FailureKind] = field(default=classify_failure)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.jitter_seconds < 0:
            raise ValueError("delays must not be negative")
        if self.multiplier < 1 or self.rate_limit_factor < 1:
            raise ValueError("multiplier and rate_limit_factor must be >= 1")

    def backoff(self, attempt: int, kind: FailureKind) -> float:
        """Delay before retrying after failed ``attempt`` (1-based), without jitter."""
        delay = self.base_delay_seconds * self.multiplier ** (attempt - 1)
        if kind is FailureKind.RATE_LIMITED:
            delay *= self.rate_limit_factor
        return delay


class RetriesExhausted(Exception):
    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RetryingCaller:
    """Runs a fallible call under a ``RetryPolicy``.

    Retryable failures are retried until ``max_attempts`` calls have been
    made. Fatal failures propagate immediately. After the last retryable
    failure the ``fallback`` result is returned when one is given, otherwise
    the last error is re-raised.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def call(
        self,
        fn: Callable[[], T],
        *,
        fallback: Callable[[RetriesExhausted], T] | None = None,
        label: str = "remote call",
    ) -> T:
        policy = self.policy
        previous_delay = 0.0
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return fn()
            except Exception as exc:  # pylint: disable=broad-except
                kind = policy.classify(exc)
                if kind is FailureKind.FATAL:
                    raise
                if attempt == policy.max_attempts:
                    logger.warning("%s failed after %d attempt(s): %s", label, attempt, exc)
                    if fallback is None:
                        raise
                    return fallback(RetriesExhausted(attempt, exc))

                delay = policy.backoff(attempt, kind)
                if policy.jitter_seconds:
                    delay += self._rng.uniform(0.0, policy.jitter_seconds)
                delay = max(delay, previous_delay)
                previous_delay = delay
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %.2fs: %s",
                    label,
                    attempt,
                    policy.max_attempts,
                    kind.value,
                    delay,
                    exc,
                )
                self._sleep(delay)

        raise AssertionError("unreachable")
