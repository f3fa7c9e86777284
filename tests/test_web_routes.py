"""Tests for the HTTP trigger API.

Uses httpx AsyncClient over ASGITransport with a prebuilt Services
container, so no scheduler or queue consumer is started.
"""

from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from mailflow.jobs.payloads import BULK_FETCH, DIGEST_SEND, SWEEP_SCHEDULED_ACTIONS
from mailflow.services import Services
from mailflow.web.app import create_app

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _noop_lifespan(app: FastAPI):
    yield


@pytest.fixture
def app(services: Services) -> FastAPI:
    return create_app(services)


@pytest.fixture
async def client(app: FastAPI) -> AsyncClient:
    """Return an httpx AsyncClient for the test app."""
    app.router.lifespan_context = _noop_lifespan
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


async def test_health(client: AsyncClient) -> None:
    response = await client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["scheduled_actions"]["PENDING"] == 0
    assert data["scheduled_actions"]["overdue"] == 0


async def test_services_missing_returns_503() -> None:
    app = create_app()
    app.router.lifespan_context = _noop_lifespan
    app.state.services = None
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        response = await c.get("/api/health")

    assert response.status_code == 503


# ---------------------------------------------------------------------------
# Bulk processing
# ---------------------------------------------------------------------------


class TestBulkProcess:
    async def test_start_and_inspect(self, client, services, account) -> None:
        response = await client.post(
            "/api/bulk-process/start",
            json={"account_id": account.id, "start_date": "2026-01-01T00:00:00Z"},
        )

        assert response.status_code == 200
        job_id = response.json()["job_id"]
        assert response.json()["status"] == "RUNNING"
        assert len(await services.queue.list_jobs(name=BULK_FETCH)) == 1

        status = await client.get(f"/api/bulk-process/{job_id}")
        assert status.status_code == 200
        body = status.json()
        assert body["only_unread"] is True
        assert body["progress"] is None
        assert body["start_date"].startswith("2026-01-01T00:00:00")

        active = await client.get(f"/api/accounts/{account.id}/bulk-process/active")
        assert active.json()["job"]["id"] == job_id

    async def test_second_start_conflicts(self, client, account) -> None:
        body = {"account_id": account.id, "start_date": "2026-01-01T00:00:00Z"}
        first = await client.post("/api/bulk-process/start", json=body)

        second = await client.post("/api/bulk-process/start", json=body)

        assert second.status_code == 409
        assert second.json()["detail"]["active_job_id"] == first.json()["job_id"]

    async def test_unknown_account(self, client) -> None:
        response = await client.post(
            "/api/bulk-process/start",
            json={"account_id": "nobody", "start_date": "2026-01-01T00:00:00Z"},
        )
        assert response.status_code == 404

    async def test_invalid_body(self, client) -> None:
        response = await client.post("/api/bulk-process/start", json={"account_id": ""})
        assert response.status_code == 422

    async def test_cancel(self, client, account) -> None:
        started = await client.post(
            "/api/bulk-process/start",
            json={"account_id": account.id, "start_date": "2026-01-01T00:00:00Z"},
        )
        job_id = started.json()["job_id"]

        response = await client.post(f"/api/bulk-process/{job_id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        active = await client.get(f"/api/accounts/{account.id}/bulk-process/active")
        assert active.json() == {"job": None}

    async def test_unknown_job(self, client) -> None:
        assert (await client.get("/api/bulk-process/missing")).status_code == 404
        assert (await client.post("/api/bulk-process/missing/cancel")).status_code == 404


# ---------------------------------------------------------------------------
# Scheduled actions and digests
# ---------------------------------------------------------------------------


async def test_kickstart_sweeper_is_idempotent(client, services) -> None:
    first = await client.post("/api/scheduled-actions/sweeper/kickstart")
    second = await client.post("/api/scheduled-actions/sweeper/kickstart")

    assert first.json()["job_id"] == second.json()["job_id"]
    assert len(await services.queue.list_jobs(name=SWEEP_SCHEDULED_ACTIONS)) == 1


async def test_scheduled_actions_status(client) -> None:
    response = await client.get("/api/scheduled-actions/status")

    assert response.status_code == 200
    assert set(response.json()) >= {"PENDING", "EXECUTING", "COMPLETED", "overdue"}


async def test_send_digest_queues_job(client, services, account) -> None:
    response = await client.post(f"/api/accounts/{account.id}/digest/send?force=true")

    assert response.status_code == 200
    job = await services.queue.get_job(response.json()["job_id"])
    assert job.name == DIGEST_SEND
    assert job.payload == {"accountId": account.id, "force": True}


async def test_send_digest_unknown_account(client) -> None:
    response = await client.post("/api/accounts/nobody/digest/send")
    assert response.status_code == 404
