"""
Tests for the HTTP API.

The runtime is built directly against the test database; ASGITransport
does not run the application lifespan.
"""

import asyncio
import uuid
from datetime import date

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from arena.api.main import create_app
from arena.api.run_manager import build_runtime
from arena.core.errors import RunStateError
from arena.models.run import RunParams
from arena.services.ai.factory import ProviderRegistry

from conftest import ScriptedProvider

RUN_BODY = {"start_date": "2024-01-02", "end_date": "2024-01-03"}


class BlockingProvider(ScriptedProvider):
    """Holds every call until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def complete(self, context: str) -> str:
        self.entered.set()
        await self.release.wait()
        return await super().complete(context)


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def runtime(session_factory, settings, provider):
    return build_runtime(session_factory, settings, ProviderRegistry.single(provider))


@pytest_asyncio.fixture
async def client(runtime):
    app = create_app(runtime=runtime)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def start_and_wait(client, runtime, body=None) -> str:
    response = await client.post("/api/runs", json=body or RUN_BODY)
    assert response.status_code == 202
    run_id = response.json()["run_id"]
    await runtime.runs.wait(uuid.UUID(run_id))
    return run_id


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_detailed_health(self, client):
        response = await client.get("/health/detailed")
        body = response.json()
        assert body["status"] == "healthy"
        assert body["components"]["database"] == "up"
        assert body["active_runs"] == []

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "arena_" in response.text

    @pytest.mark.asyncio
    async def test_ws_stats(self, client):
        response = await client.get("/ws/stats")
        assert response.json() == {"total_connections": 0, "dropped_events": 0}


class TestRuns:

    @pytest.mark.asyncio
    async def test_run_completes(self, client, runtime, alpha, beta):
        run_id = await start_and_wait(client, runtime)

        response = await client.get(f"/api/runs/{run_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "COMPLETED"
        assert body["trading_days"] == 2
        assert body["is_active"] is False
        assert [(r["agent_name"], r["rank"]) for r in body["results"]] == [("Alpha", 1), ("Beta", 2)]
        assert len(body["snapshots"]) == 4

    @pytest.mark.asyncio
    async def test_list_runs(self, client, runtime, alpha):
        run_id = await start_and_wait(client, runtime)

        response = await client.get("/api/runs")

        assert [r["id"] for r in response.json()] == [run_id]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"start_date": "2024-01-05", "end_date": "2024-01-02"},
            {"start_date": "2024-01-02", "end_date": "2024-01-03", "interval_minutes": 0},
            {"start_date": "not a date", "end_date": "2024-01-03"},
            {"start_date": "2024-01-06", "end_date": "2024-01-07"},
        ],
    )
    async def test_invalid_params(self, client, body):
        response = await client.post("/api/runs", json=body)
        assert response.status_code == 422
        assert (await client.get("/api/runs")).json() == []

    @pytest.mark.asyncio
    async def test_unknown_run(self, client):
        assert (await client.get(f"/api/runs/{uuid.uuid4()}")).status_code == 404
        assert (await client.get("/api/runs/not-a-uuid")).status_code == 404
        assert (await client.post(f"/api/runs/{uuid.uuid4()}/cancel")).status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_finished_run_conflicts(self, client, runtime, alpha):
        run_id = await start_and_wait(client, runtime)

        response = await client.post(f"/api/runs/{run_id}/cancel")

        assert response.status_code == 409


class TestActiveRun:

    @pytest.fixture
    def provider(self):
        return BlockingProvider()

    @pytest.mark.asyncio
    async def test_single_active_run_and_cancel(self, client, runtime, provider, alpha):
        body = {"start_date": "2024-01-02", "end_date": "2024-01-05"}
        response = await client.post("/api/runs", json=body)
        run_id = response.json()["run_id"]
        await provider.entered.wait()

        second = await client.post("/api/runs", json=body)
        assert second.status_code == 409

        cancel = await client.post(f"/api/runs/{run_id}/cancel")
        assert cancel.json() == {"run_id": run_id, "status": "cancelling"}

        provider.release.set()
        await runtime.runs.wait(uuid.UUID(run_id))

        detail = (await client.get(f"/api/runs/{run_id}")).json()
        assert detail["status"] == "CANCELLED"
        assert detail["failure_reason"] == "Run cancelled by client"
        # the day in progress finishes before the token is observed
        assert detail["trading_days"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_starts_admit_one_run(self, runtime, provider, alpha):
        params = RunParams(start_date=date(2024, 1, 2), end_date=date(2024, 1, 5))

        outcomes = await asyncio.gather(
            runtime.runs.start(params), runtime.runs.start(params), return_exceptions=True
        )

        run_ids = [o for o in outcomes if isinstance(o, uuid.UUID)]
        assert len(run_ids) == 1
        assert [type(o) for o in outcomes if not isinstance(o, uuid.UUID)] == [RunStateError]
        assert runtime.runs.active_run_ids == run_ids

        provider.release.set()
        await runtime.runs.wait(run_ids[0])

        assert runtime.runs.active_run_ids == []
        # finished runs are not kept around
        assert runtime.runs._tasks == {}
        assert runtime.runs._tokens == {}


class TestLeaderboard:

    @pytest.mark.asyncio
    async def test_ranks_active_agents(self, client, alpha, beta):
        response = await client.get("/api/leaderboard")

        entries = response.json()
        assert [(e["rank"], e["agent_name"]) for e in entries] == [(1, "Alpha"), (2, "Beta")]
        assert entries[0]["total_value"] == 100000.0
        assert entries[0]["positions"] == []

    @pytest.mark.asyncio
    async def test_agent_history_after_run(self, client, runtime, alpha):
        await start_and_wait(client, runtime)

        response = await client.get(f"/api/agents/{alpha.id}/history")

        body = response.json()
        assert body["agent_name"] == "Alpha"
        assert len(body["points"]) == 2
        assert body["max_drawdown_pct"] == 0.0

    @pytest.mark.asyncio
    async def test_agent_decisions_after_run(self, client, runtime, alpha):
        await start_and_wait(client, runtime)

        response = await client.get(f"/api/agents/{alpha.id}/decisions")

        records = response.json()
        assert len(records) == 2
        assert all(r["action"] == "HOLD" for r in records)

    @pytest.mark.asyncio
    async def test_unknown_agent_history(self, client):
        response = await client.get(f"/api/agents/{uuid.uuid4()}/history")
        assert response.status_code == 404
