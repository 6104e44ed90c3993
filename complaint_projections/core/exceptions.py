"""Exception classes for the projection engine and its HTTP surface.

Two families live here:

- ``ProjectionError`` and its subclasses classify every failure the engine
  handles internally (retry, quarantine, fail closed, abandon partition).
- ``AppException`` and its subclasses are RFC 7807 problems raised by the
  operator and read-model API.
"""

from __future__ import annotations

from typing import Any

# ============================================================================
# Engine error taxonomy
# ============================================================================


class ProjectionError(Exception):
    """Base class for all engine errors.

    Attributes:
        message: Human-readable description.
        tenant_id: Tenant the failure relates to, when known.
        event_id: Event the failure relates to, when known.
        details: Additional structured context for logs.
    """

    def __init__(
        self,
        message: str,
        *,
        tenant_id: str | None = None,
        event_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.tenant_id = tenant_id
        self.event_id = event_id
        self.details = details or {}
        super().__init__(message)

    def to_log_extra(self) -> dict[str, Any]:
        """Return the error context as a logging ``extra`` mapping."""
        return {
            "error_type": type(self).__name__,
            "tenant_id": self.tenant_id,
            "event_id": self.event_id,
            **self.details,
        }


class TransientInfrastructureError(ProjectionError):
    """A broker or store is temporarily unreachable.

    Retried with backoff; never surfaced to end users beyond staleness.
    """


class NamespaceUnavailableError(TransientInfrastructureError):
    """The tenant's resolved namespace could not be reached.

    Fails the operation closed. It never falls back to another namespace.
    """


class PoisonMessageError(ProjectionError):
    """An envelope can never be applied and must be quarantined."""


class MalformedEnvelopeError(PoisonMessageError):
    """The wire body is unparsable or lacks a mandatory field."""


class UnknownAggregateError(PoisonMessageError):
    """A follow-up event refers to an aggregate the projection never saw created."""


class IsolationViolationError(ProjectionError):
    """Missing, unknown or mismatched tenant identifier.

    Fails closed immediately, is never retried and is always logged on the
    security channel.
    """


class MissingTenantError(IsolationViolationError):
    """No tenant identifier was supplied."""


class UnknownTenantError(IsolationViolationError):
    """The tenant identifier is malformed, unregistered or deactivated."""


class TenantMismatchError(IsolationViolationError):
    """Data carrying one tenant's identifier reached another tenant's scope."""

    def __init__(
        self,
        expected: str,
        actual: str,
        *,
        event_id: str | None = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Tenant mismatch: scope is {expected!r}, data carries {actual!r}",
            tenant_id=expected,
            event_id=event_id,
            details={"expected_tenant": expected, "actual_tenant": actual},
        )


class CheckpointConflictError(ProjectionError):
    """A worker tried to move a checkpoint backwards.

    Signals that another worker owns the partition. The current worker must
    abandon its claim; this is not a data error.
    """

    def __init__(
        self,
        tenant_id: str,
        consumer: str,
        *,
        stored_sequence: int | None,
        attempted_sequence: int,
    ) -> None:
        self.consumer = consumer
        self.stored_sequence = stored_sequence
        self.attempted_sequence = attempted_sequence
        super().__init__(
            f"Checkpoint for {tenant_id}/{consumer} is at {stored_sequence}, "
            f"refusing to advance to {attempted_sequence}",
            tenant_id=tenant_id,
            details={
                "consumer": consumer,
                "stored_sequence": stored_sequence,
                "attempted_sequence": attempted_sequence,
            },
        )


class LeaseLostError(ProjectionError):
    """The worker no longer holds the partition lease."""


class DeadLetterStateError(ProjectionError):
    """An operator action is not valid for the entry's current status."""


class DeadLetterNotFoundError(ProjectionError):
    """No dead-letter entry has the requested id."""


# ============================================================================
# HTTP problem exceptions (RFC 7807)
# ============================================================================


class AppException(Exception):
    """Base application exception rendered as an RFC 7807 problem.

    Attributes:
        status_code: HTTP status code for the error.
        detail: Human-readable error message.
        type: Error type identifier.
        title: Short, human-readable summary of the problem type.
        instance: URI reference that identifies the specific occurrence.
        extra: Additional context-specific information about the error.
    """

    def __init__(
        self,
        status_code: int,
        detail: str,
        type: str = "about:blank",
        title: str | None = None,
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.status_code = status_code
        self.detail = detail
        self.type = type
        self.title = title or self._default_title(status_code)
        self.instance = instance
        self.extra = extra or {}
        super().__init__(detail)

    @staticmethod
    def _default_title(status_code: int) -> str:
        titles = {
            400: "Bad Request",
            403: "Forbidden",
            404: "Not Found",
            409: "Conflict",
            422: "Unprocessable Entity",
            500: "Internal Server Error",
            503: "Service Unavailable",
        }
        return titles.get(status_code, "Error")


class NotFoundException(AppException):
    """Raised when a requested resource does not exist."""

    def __init__(self, detail: str, type: str = "not-found", extra: dict[str, Any] | None = None) -> None:
        super().__init__(status_code=404, detail=detail, type=type, title="Not Found", extra=extra)


class ConflictException(AppException):
    """Raised when a request conflicts with the resource's current state."""

    def __init__(self, detail: str, type: str = "conflict", extra: dict[str, Any] | None = None) -> None:
        super().__init__(status_code=409, detail=detail, type=type, title="Conflict", extra=extra)


class ForbiddenException(AppException):
    """Raised when the caller's tenant scope does not permit the request."""

    def __init__(self, detail: str, type: str = "forbidden", extra: dict[str, Any] | None = None) -> None:
        super().__init__(status_code=403, detail=detail, type=type, title="Forbidden", extra=extra)


class ServiceUnavailableException(AppException):
    """Raised when a backing store cannot be reached."""

    def __init__(
        self,
        detail: str,
        type: str = "service-unavailable",
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(status_code=503, detail=detail, type=type, title="Service Unavailable", extra=extra)


__all__ = [
    "AppException",
    "CheckpointConflictError",
    "ConflictException",
    "DeadLetterNotFoundError",
    "DeadLetterStateError",
    "ForbiddenException",
    "IsolationViolationError",
    "LeaseLostError",
    "MalformedEnvelopeError",
    "MissingTenantError",
    "NamespaceUnavailableError",
    "NotFoundException",
    "PoisonMessageError",
    "ProjectionError",
    "ServiceUnavailableException",
    "TenantMismatchError",
    "TransientInfrastructureError",
    "UnknownAggregateError",
    "UnknownTenantError",
]
