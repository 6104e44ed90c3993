"""Startup retries for the stores and the broker."""

from __future__ import annotations

from complaint_projections.utils.retry.decorator import retry
from complaint_projections.utils.retry.exceptions import RetryError
from complaint_projections.utils.retry.strategies import RetryStrategy

__all__ = ["RetryError", "RetryStrategy", "retry"]
