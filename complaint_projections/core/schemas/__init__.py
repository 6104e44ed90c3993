"""Shared API schemas."""

from __future__ import annotations

from .base import CustomBase, PaginatedResponse
from .problem_details import FieldError, ProblemDetails, ValidationProblemDetails

__all__ = [
    "CustomBase",
    "FieldError",
    "PaginatedResponse",
    "ProblemDetails",
    "ValidationProblemDetails",
]
