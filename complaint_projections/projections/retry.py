"""Retry policy and failure classification for the projector.

Failures fall into five classes:

- PERMANENT: the envelope can never be applied (malformed, failed payload
  validation, unknown aggregate). Quarantined at once.
- ISOLATION: the envelope or scope crosses a tenant boundary. Never retried.
- TRANSIENT: a store or the broker is unreachable. Aborts the whole batch,
  which is retried as a unit and eventually pauses the partition.
- FATAL: the worker no longer owns the partition (checkpoint conflict,
  lost lease). The partition is abandoned.
- RETRYABLE: anything else raised while projecting one event. Retried in
  place with backoff, then quarantined.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, TypeVar

from pydantic import ValidationError
from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from complaint_projections.core.exceptions import (
    CheckpointConflictError,
    IsolationViolationError,
    LeaseLostError,
    PoisonMessageError,
    ProjectionError,
    TransientInfrastructureError,
)
from complaint_projections.infra.metrics.prometheus import retry_attempts_total, retry_exhausted_total
from complaint_projections.utils.retry import RetryStrategy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from complaint_projections.core.settings.retry import RetrySettings

T = TypeVar("T")

logger = logging.getLogger(__name__)


class FailureKind(StrEnum):
    PERMANENT = "permanent"
    ISOLATION = "isolation"
    TRANSIENT = "transient"
    FATAL = "fatal"
    RETRYABLE = "retryable"


_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientInfrastructureError,
    OperationalError,
    DisconnectionError,
    PoolTimeoutError,
    DBAPIError,
    OSError,
    TimeoutError,
)


def classify(exc: BaseException) -> FailureKind:
    """Map an exception to the projector's failure classes."""
    if isinstance(exc, IsolationViolationError):
        return FailureKind.ISOLATION
    if isinstance(exc, CheckpointConflictError | LeaseLostError):
        return FailureKind.FATAL
    if isinstance(exc, PoisonMessageError | ValidationError):
        return FailureKind.PERMANENT
    if isinstance(exc, _TRANSIENT_ERRORS):
        return FailureKind.TRANSIENT
    return FailureKind.RETRYABLE


class RetriesExhaustedError(ProjectionError):
    """One event kept failing for the whole retry budget."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Failed after {attempts} attempts: {type(last_error).__name__}: {last_error}",
            details={"attempts": attempts, "last_error_type": type(last_error).__name__},
        )


class RetryManager:
    """Backoff policy shared by per-event and whole-batch retries.

    Args:
        max_attempts: Total attempts, first try included.
        initial_delay: Seconds before the first retry.
        max_delay: Cap of any single delay.
        multiplier: Exponential growth factor.
        jitter: Randomise delays within ``jitter_range``.
        jitter_range: Fractional spread (0.5 means +/-50%).
        sleep: Awaitable sleep, injectable for tests.

    Example:
        manager = RetryManager(max_attempts=3, initial_delay=0.1)
        projection = await manager.call(lambda: compute_projection(envelope, state))
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        initial_delay: float = 0.1,
        max_delay: float = 5.0,
        multiplier: float = 2.0,
        jitter: bool = True,
        jitter_range: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max_attempts
        self._strategy = RetryStrategy(
            initial_delay=initial_delay,
            max_delay=max_delay,
            exponential_base=multiplier,
            jitter=jitter,
            jitter_spread=jitter_range,
        )
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: RetrySettings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> RetryManager:
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay=settings.initial_delay_ms / 1000,
            max_delay=settings.max_delay_ms / 1000,
            multiplier=settings.multiplier,
            jitter=settings.jitter,
            jitter_range=settings.jitter_range,
            sleep=sleep,
        )

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1 for the first retry)."""
        return self._strategy.delay_for(retry_number)

    async def backoff(self, retry_number: int) -> float:
        delay = self.delay_for(retry_number)
        await self._sleep(delay)
        return delay

    async def call(self, operation: Callable[[], T | Awaitable[T]], *, name: str = "apply_event") -> T:
        """Run ``operation`` with per-event retries.

        Only RETRYABLE failures are retried; every other class propagates
        unchanged on the first occurrence.

        Raises:
            RetriesExhaustedError: ``max_attempts`` RETRYABLE failures in a row.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
                return result  # type: ignore[return-value]
            except Exception as exc:
                if classify(exc) is not FailureKind.RETRYABLE:
                    raise
                if attempt >= self.max_attempts:
                    retry_exhausted_total.labels(function=name).inc()
                    raise RetriesExhaustedError(attempt, exc) from exc
                retry_attempts_total.labels(function=name).inc()
                delay = self.delay_for(attempt)
                logger.warning(
                    "Retrying after failure",
                    extra={
                        "function": name,
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "delay": delay,
                        "exception": str(exc),
                    },
                )
                await self._sleep(delay)

        msg = "Retry logic error: exhausted all attempts"
        raise RuntimeError(msg)


__all__ = ["FailureKind", "RetriesExhaustedError", "RetryManager", "classify"]
