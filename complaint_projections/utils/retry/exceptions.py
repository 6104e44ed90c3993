"""Failure raised when a backing service stays unreachable."""

from __future__ import annotations

from complaint_projections.core.exceptions import TransientInfrastructureError


class RetryError(TransientInfrastructureError):
    """A guarded operation kept failing for its whole retry budget.

    Still transient: the dependency may come back, so callers surface it as
    503 or let a supervisor try again later.
    """

    def __init__(self, operation: str, attempts: int, last_exception: Exception, *, elapsed: float = 0.0) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_exception = last_exception
        self.elapsed = elapsed
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_exception}",
            details={"operation": operation, "attempts": attempts, "elapsed_seconds": round(elapsed, 3)},
        )
