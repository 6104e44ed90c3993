"""HTTP API tests against a runtime on SQLite stores and the in-memory broker."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator

from httpx import ASGITransport, AsyncClient
import pytest

from complaint_projections.app.main import create_app
from complaint_projections.core.settings.database import DatabaseSettings
from complaint_projections.infra.messaging import InMemoryBroker, event_topic
from complaint_projections.projections import PartitionProjector, RetryManager, ViewWriter
from complaint_projections.runtime import Runtime
from tests.conftest import no_sleep

ACME = {"X-Tenant-ID": "acme"}
GLOBEX = {"X-Tenant-ID": "globex"}


@pytest.fixture
async def runtime(sqlite_urls) -> AsyncGenerator[Runtime]:
    runtime = Runtime.from_settings(
        db=DatabaseSettings(
            write_url=sqlite_urls["write"],
            read_url=sqlite_urls["read"],
            quarantine_url=sqlite_urls["quarantine"],
        ),
        broker=InMemoryBroker(),
        owner_id="api-test",
    )
    await runtime.open()
    for tenant_id in ("acme", "globex"):
        await runtime.router.provision(tenant_id)
    yield runtime
    await runtime.close()


@pytest.fixture
async def client(runtime) -> AsyncGenerator[AsyncClient]:
    app = create_app(runtime)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def project(runtime):
    """Run one projector batch for a tenant of the runtime."""

    async def _project(tenant_id: str = "acme"):
        projector = PartitionProjector(
            tenant_id,
            router=runtime.router,
            broker=runtime.broker,
            checkpoints=runtime.checkpoints,
            views=ViewWriter(runtime.consumer),
            dead_letters=runtime.dead_letters,
            retry=RetryManager(max_attempts=2, initial_delay=0, max_delay=0, jitter=False, sleep=no_sleep),
            consumer=runtime.consumer,
            fetch_timeout=0.05,
            idle_poll_interval=0,
            pause_seconds=0,
            sleep=no_sleep,
        )
        try:
            return await projector.run_once()
        finally:
            await projector.close()

    return _project


@pytest.fixture
def publish_to_runtime(runtime):
    async def _publish(*envelopes, raw: bytes | None = None, tenant_id: str = "acme"):
        pattern = f"complaints.{tenant_id}.*"
        await runtime.broker.subscribe(pattern, runtime.consumer)
        for envelope in envelopes:
            await runtime.broker.publish(event_topic(envelope.tenant_id, envelope.event_type.value), envelope)
        if raw is not None:
            await runtime.broker.publish_raw(event_topic(tenant_id, "ComplaintCreated"), raw)

    return _publish


@pytest.mark.integration
class TestHealth:
    async def test_liveness(self, client):
        response = await client.get("/api/v1/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    async def test_ready(self, client):
        response = await client.get("/api/v1/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["ready"] is True
        assert body["checks"] == {"write": True, "read": True, "quarantine": True, "broker": True}

    async def test_not_ready_without_broker(self, client, runtime):
        runtime.broker.available = False

        response = await client.get("/api/v1/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["broker"] is False

    async def test_metrics(self, client):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "projection_events_total" in response.text


@pytest.mark.integration
class TestTenantScoping:
    async def test_missing_tenant_header(self, client):
        response = await client.get("/api/v1/stats/daily")

        assert response.status_code == 403
        assert response.json()["type"] == "isolation-violation"

    @pytest.mark.parametrize("tenant_id", ["initech", "acme;drop"])
    async def test_unknown_tenant_does_not_echo_identifier(self, client, tenant_id):
        response = await client.get("/api/v1/stats/status", headers={"X-Tenant-ID": tenant_id})

        assert response.status_code == 403
        body = response.json()
        assert body["type"] == "isolation-violation"
        assert tenant_id not in body["detail"]

    async def test_deactivated_tenant_is_refused(self, client, runtime):
        await runtime.router.deactivate("globex")

        response = await client.get("/api/v1/freshness", headers=GLOBEX)

        assert response.status_code == 403

    async def test_tenants_see_only_their_views(self, client, events, publish_to_runtime, project):
        await publish_to_runtime(events.created("c-1"))
        await project("acme")

        acme = (await client.get("/api/v1/stats/daily", headers=ACME)).json()
        globex = (await client.get("/api/v1/stats/daily", headers=GLOBEX)).json()

        assert len(acme["items"]) == 1
        assert globex["items"] == []
        assert globex["freshness"]["status"] == "unknown"


@pytest.mark.integration
class TestStats:
    async def test_daily_stats(self, client, events, publish_to_runtime, project):
        await publish_to_runtime(
            events.created("c-1"),
            events.status_changed("c-1", "NEW", "RESOLVED", sequence=2),
            events.created("c-2", priority="LOW"),
        )
        await project()

        response = await client.get("/api/v1/stats/daily", headers=ACME, params={"priority": "HIGH"})

        assert response.status_code == 200
        body = response.json()
        assert body["tenant_id"] == "acme"
        assert body["freshness"]["status"] == "fresh"
        assert body["freshness"]["data_as_of"] is not None
        [item] = body["items"]
        assert item["day"] == "2024-03-01"
        assert item["total_complaints"] == 1
        assert item["resolved_complaints"] == 1
        assert item["average_resolution_seconds"] == pytest.approx(7200)

    async def test_inverted_range(self, client):
        response = await client.get(
            "/api/v1/stats/daily",
            headers=ACME,
            params={"start": "2024-03-02", "end": "2024-03-01"},
        )

        assert response.status_code == 400
        assert response.json()["type"] == "invalid-range"

    async def test_invalid_priority(self, client):
        response = await client.get("/api/v1/stats/daily", headers=ACME, params={"priority": "URGENT!"})

        assert response.status_code == 422
        assert response.json()["type"] == "validation-error"

    async def test_status_counts(self, client, events, publish_to_runtime, project):
        await publish_to_runtime(events.created("c-1"), events.created("c-2", status="ASSIGNED"))
        await project()

        response = await client.get("/api/v1/stats/status", headers=ACME)

        assert response.status_code == 200
        assert response.json()["counts"] == {"ASSIGNED": 1, "NEW": 1}

    async def test_freshness(self, client, events, publish_to_runtime, project):
        await publish_to_runtime(events.created("c-1"))
        await project()

        body = (await client.get("/api/v1/freshness", headers=ACME)).json()

        assert body["status"] == "fresh"
        assert body["consumer"] == "complaint_stats"
        assert body["staleness_sla_seconds"] == 5


@pytest.mark.integration
class TestOperations:
    async def test_lag(self, client, events, publish_to_runtime, project):
        await publish_to_runtime(events.created("c-1"))
        await project()

        reports = (await client.get("/api/v1/ops/lag")).json()
        single = (await client.get("/api/v1/ops/lag/acme")).json()

        assert {r["tenant_id"]: r["status"] for r in reports} == {"acme": "fresh", "globex": "unknown"}
        assert single["position"] == 1

    async def test_partitions(self, client):
        body = (await client.get("/api/v1/ops/partitions")).json()

        assert body["consumer"] == "complaint_stats"
        assert body["owner_id"] == "api-test"
        assert body["supervisor_running"] is False
        assert body["partitions"] == []

    async def test_dead_letter_lifecycle(self, client, publish_to_runtime, project):
        await publish_to_runtime(raw=b"not json")
        await project()

        page = (await client.get("/api/v1/ops/dead-letters", params={"tenant_id": "acme"})).json()
        assert page["total"] == 1
        assert (page["limit"], page["offset"]) == (50, 0)
        entry_id = page["items"][0]["id"]

        detail = (await client.get(f"/api/v1/ops/dead-letters/{entry_id}")).json()
        assert detail["body"] == "not json"
        assert detail["reason"] == "poison"

        replayed = await client.post(
            f"/api/v1/ops/dead-letters/{entry_id}/replay", headers={"X-Operator": "ops@example.com"}
        )
        assert replayed.status_code == 200
        assert replayed.json()["status"] == "replayed"
        assert replayed.json()["resolved_by"] == "ops@example.com"

        again = await client.post(f"/api/v1/ops/dead-letters/{entry_id}/replay")
        assert again.status_code == 409
        assert again.json()["type"] == "dead-letter-state"

    async def test_discard_with_note(self, client, publish_to_runtime, project):
        await publish_to_runtime(raw=b"{}")
        await project()
        [entry] = (await client.get("/api/v1/ops/dead-letters")).json()["items"]

        response = await client.post(
            f"/api/v1/ops/dead-letters/{entry['id']}/discard",
            json={"note": "test traffic"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "discarded"
        assert response.json()["resolution_note"] == "test traffic"
        remaining = (await client.get("/api/v1/ops/dead-letters", params={"status": "quarantined"})).json()
        assert remaining["total"] == 0

    async def test_unknown_dead_letter(self, client):
        missing = uuid.uuid4()

        assert (await client.get(f"/api/v1/ops/dead-letters/{missing}")).status_code == 404
        response = await client.post(f"/api/v1/ops/dead-letters/{missing}/discard")
        assert response.status_code == 404
        assert response.json()["type"] == "dead-letter-not-found"

    async def test_malformed_dead_letter_id(self, client):
        response = await client.get("/api/v1/ops/dead-letters/not-a-uuid")

        assert response.status_code == 422
