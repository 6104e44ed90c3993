"""Global exception handlers rendering RFC 7807 problem responses."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from complaint_projections.core.exceptions import (
    AppException,
    DeadLetterNotFoundError,
    DeadLetterStateError,
    IsolationViolationError,
    ProjectionError,
    TransientInfrastructureError,
)
from complaint_projections.core.schemas.problem_details import (
    FieldError,
    ProblemDetails,
    ValidationProblemDetails,
)

logger = logging.getLogger(__name__)

_TITLES = {
    400: "Bad Request",
    403: "Forbidden",
    404: "Not Found",
    409: "Conflict",
    422: "Unprocessable Entity",
    500: "Internal Server Error",
    503: "Service Unavailable",
}

# Most specific first
_PROJECTION_ERROR_STATUS: tuple[tuple[type[ProjectionError], int, str], ...] = (
    (DeadLetterNotFoundError, status.HTTP_404_NOT_FOUND, "dead-letter-not-found"),
    (DeadLetterStateError, status.HTTP_409_CONFLICT, "dead-letter-state"),
    (IsolationViolationError, status.HTTP_403_FORBIDDEN, "isolation-violation"),
    (TransientInfrastructureError, status.HTTP_503_SERVICE_UNAVAILABLE, "service-unavailable"),
)


def _problem(
    status_code: int,
    detail: str,
    *,
    type_: str = "about:blank",
    title: str | None = None,
    instance: str | None = None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    problem = ProblemDetails(
        type=type_,
        title=title or _TITLES.get(status_code, "Error"),
        status=status_code,
        detail=detail,
        instance=instance,
    )
    data = problem.model_dump(exclude_none=True)
    if extra:
        data.update(jsonable_encoder(extra))
    return data


def problem_for(exc: ProjectionError) -> tuple[int, str]:
    """HTTP status and problem type of an engine error."""
    for error_type, status_code, problem_type in _PROJECTION_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, problem_type
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "projection-error"


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        "Application exception occurred",
        extra={
            "path": request.url.path,
            "method": request.method,
            "exception_type": exc.type,
            "status_code": exc.status_code,
            "detail": exc.detail,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_problem(
            exc.status_code,
            exc.detail,
            type_=exc.type,
            title=exc.title,
            instance=exc.instance or request.url.path,
            extra=exc.extra,
        ),
    )


async def projection_exception_handler(request: Request, exc: ProjectionError) -> JSONResponse:
    """Map engine errors to problems.

    Isolation violations answer 403 without echoing the other tenant's
    identifier; the router already logged them on the security channel.
    """
    status_code, problem_type = problem_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Engine error in request",
        extra={"path": request.url.path, "method": request.method, "status_code": status_code, **exc.to_log_extra()},
    )
    if isinstance(exc, IsolationViolationError):
        detail = "The request is not permitted for this tenant scope"
        extra = None
    else:
        detail = exc.message
        extra = {key: value for key, value in exc.details.items() if key in ("entry_id", "status")} or None
    return JSONResponse(
        status_code=status_code,
        content=_problem(status_code, detail, type_=problem_type, instance=request.url.path, extra=extra),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        FieldError(
            field=".".join(str(loc) for loc in error["loc"]),
            message=error["msg"],
            type=error["type"],
            value=jsonable_encoder(error.get("input")),
        )
        for error in exc.errors()
    ]
    logger.warning(
        "Request validation failed",
        extra={"path": request.url.path, "method": request.method, "error_count": len(errors)},
    )
    problem = ValidationProblemDetails(
        type="validation-error",
        title="Validation Error",
        status=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=f"Request validation failed for {len(errors)} field(s)",
        instance=request.url.path,
        errors=errors,
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=jsonable_encoder(problem.model_dump(exclude_none=True)),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unexpected exception occurred",
        extra={
            "path": request.url.path,
            "method": request.method,
            "exception_type": type(exc).__name__,
            "exception_message": str(exc),
        },
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_problem(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "An unexpected error occurred while processing your request",
            type_="internal-error",
            instance=request.url.path,
        ),
    )


def configure_exception_handlers(app: FastAPI) -> None:
    """Register every problem-rendering handler on ``app``."""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(ProjectionError, projection_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
    logger.debug("Exception handlers configured")


__all__ = ["configure_exception_handlers", "problem_for"]
