from __future__ import annotations

import asyncio
import logging
import time
from functools import wraps
from typing import TYPE_CHECKING, ParamSpec, TypeVar

from complaint_projections.infra.metrics.prometheus import retry_attempts_total, retry_exhausted_total

from .exceptions import RetryError
from .strategies import RetryStrategy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


def retry(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    exceptions: tuple[type[Exception], ...] = (OSError,),
    operation: str | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Keep calling an async operation until a backing service answers.

    Guards startup connectivity (store pings, broker connect) where the
    database or broker may come up after this service. Only ``exceptions``
    are retried; anything else propagates on the first occurrence.

    Args:
        operation: Label for logs and the retry counters. Defaults to the
            wrapped function's qualified name.

    Raises:
        RetryError: ``max_attempts`` consecutive failures.
    """
    if max_attempts < 1:
        msg = "max_attempts must be at least 1"
        raise ValueError(msg)
    strategy = RetryStrategy(
        initial_delay=initial_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
        jitter=jitter,
    )

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        label = operation or func.__qualname__

        @wraps(func)
        async def guarded(*args: P.args, **kwargs: P.kwargs) -> R:
            started = time.monotonic()
            attempt = 0
            while True:
                attempt += 1
                try:
                    return await func(*args, **kwargs)
                except exceptions as exc:
                    if attempt >= max_attempts:
                        retry_exhausted_total.labels(function=label).inc()
                        logger.error(
                            "Giving up on unreachable dependency",
                            extra={"operation": label, "attempts": attempt, "error": str(exc)},
                        )
                        raise RetryError(label, attempt, exc, elapsed=time.monotonic() - started) from exc
                    delay = strategy.delay_for(attempt)
                    retry_attempts_total.labels(function=label).inc()
                    logger.warning(
                        "Dependency not ready, retrying",
                        extra={
                            "operation": label,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "delay": round(delay, 3),
                            "error": str(exc),
                        },
                    )
                    await sleep(delay)

        return guarded

    return decorator
