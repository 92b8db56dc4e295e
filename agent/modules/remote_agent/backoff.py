"""Retry with exponential backoff and jitter for remote calls."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from shared.config import Settings

logger = structlog.get_logger()

T = TypeVar("T")

# Errors that will never resolve on retry; surfaced immediately
_NON_RETRYABLE_PATTERNS = (
    "permission denied",
    "authentication failed",
    "no such file",
    "command not found",
    "no such container",
    "no such image",
    "not a git repository",
    "does not exist",
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.25  # fraction of the computed delay

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            multiplier=settings.retry_backoff_multiplier,
            jitter=settings.retry_jitter,
        )


DEFAULT_POLICY = RetryPolicy()


class RetryExhaustedError(Exception):
    """Raised after the final attempt of a retried operation fails."""

    def __init__(self, label: str, attempts: int, last_error: BaseException) -> None:
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{label} failed after {attempts} attempt(s): {last_error}")


def is_retryable(error: BaseException) -> bool:
    """Classify an error: auth, permission and missing resources are final."""
    if isinstance(error, (PermissionError, FileNotFoundError)):
        return False
    message = str(error).lower()
    return not any(pattern in message for pattern in _NON_RETRYABLE_PATTERNS)


def compute_delay(
    attempt: int,
    policy: RetryPolicy = DEFAULT_POLICY,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds before retrying after failed attempt ``attempt`` (1-based).

    ``base * multiplier^(attempt-1)`` clamped to ``max_delay``, then
    perturbed by up to ±``jitter`` of that value.
    """
    delay = min(policy.base_delay * policy.multiplier ** (attempt - 1), policy.max_delay)
    offset = delay * policy.jitter * (rand() * 2 - 1)
    return max(0.0, delay + offset)


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_POLICY,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Run ``operation``, retrying retryable failures per ``policy``.

    Non-retryable errors propagate unchanged after the first attempt.
    When every attempt fails, :class:`RetryExhaustedError` is raised with
    the last error chained as its cause.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                logger.error("retry_non_retryable", label=label, attempt=attempt, error=str(e))
                raise
            if attempt == attempts:
                logger.error("retry_exhausted", label=label, attempts=attempt, error=str(e))
                raise RetryExhaustedError(label, attempt, e) from e

            delay = compute_delay(attempt, policy)
            logger.warning(
                "retry_scheduled",
                label=label,
                attempt=attempt,
                max_attempts=attempts,
                delay_seconds=round(delay, 3),
                error=str(e),
            )
            await sleep(delay)

    raise AssertionError("unreachable")
