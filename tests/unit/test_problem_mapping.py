"""Unit tests for mapping engine errors to HTTP problems."""

from __future__ import annotations

import pytest

from complaint_projections.app.exception_handlers import problem_for
from complaint_projections.core.exceptions import (
    CheckpointConflictError,
    DeadLetterNotFoundError,
    DeadLetterStateError,
    MissingTenantError,
    NamespaceUnavailableError,
    TenantMismatchError,
    UnknownTenantError,
)
from complaint_projections.infra.messaging.broker import BrokerUnavailableError


@pytest.mark.unit
@pytest.mark.parametrize(
    ("exc", "status_code", "problem_type"),
    [
        (DeadLetterNotFoundError("missing"), 404, "dead-letter-not-found"),
        (DeadLetterStateError("replayed"), 409, "dead-letter-state"),
        (MissingTenantError("no tenant"), 403, "isolation-violation"),
        (UnknownTenantError("unknown"), 403, "isolation-violation"),
        (TenantMismatchError("acme", "globex"), 403, "isolation-violation"),
        (NamespaceUnavailableError("down"), 503, "service-unavailable"),
        (BrokerUnavailableError("down"), 503, "service-unavailable"),
        (CheckpointConflictError("acme", "stats", stored_sequence=2, attempted_sequence=1), 500, "projection-error"),
    ],
)
def test_problem_for(exc, status_code, problem_type):
    assert problem_for(exc) == (status_code, problem_type)


@pytest.mark.unit
def test_tenant_mismatch_log_extra_names_both_tenants():
    extra = TenantMismatchError("acme", "globex", event_id="evt-1").to_log_extra()

    assert extra["expected_tenant"] == "acme"
    assert extra["actual_tenant"] == "globex"
    assert extra["event_id"] == "evt-1"
