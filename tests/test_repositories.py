"""
Tests for the repository layer.
"""

from datetime import UTC, date, datetime

import pytest

from arena.core.errors import ExecutionError, RunStateError, TradeStateError
from arena.db.repositories import (
    AgentRepository,
    LedgerRepository,
    RunRepository,
    TradeRepository,
)
from arena.db.seed import DEFAULT_AGENTS, seed_agents
from arena.models.run import RunParams, RunStatus
from arena.models.trade import TradeSide, TradeStatus

from conftest import create_agent

NOW = datetime(2024, 1, 2, 10, 0, tzinfo=UTC)
PARAMS = RunParams(start_date=date(2024, 1, 2), end_date=date(2024, 1, 4))


class TestAgentRepository:

    @pytest.mark.asyncio
    async def test_sort_order_follows_insertion(self, session_factory):
        for name in ("C", "A", "B"):
            await create_agent(session_factory, name)

        async with session_factory() as session:
            agents = await AgentRepository(session).list_all()

        assert [a.name for a in agents] == ["C", "A", "B"]
        assert [a.sort_order for a in agents] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_create_normalizes_config(self, session_factory):
        agent = await create_agent(
            session_factory, "Norm", watchlist=["tcs", "reliance"], allowed_leverage=[10, 1, 10]
        )
        assert agent.watchlist == ("TCS", "RELIANCE")
        assert agent.allowed_leverage == (1, 10)

    @pytest.mark.asyncio
    async def test_ledger_created_with_agent(self, session_factory):
        agent = await create_agent(session_factory, "Funded", initial_capital=5000.0)
        async with session_factory() as session:
            ledger = await LedgerRepository(session).get_by_agent(agent.id)
        assert ledger.cash_balance == 5000.0
        assert ledger.initial_capital == 5000.0
        assert ledger.positions == []

    @pytest.mark.asyncio
    async def test_update_risk_config_bumps_version(self, session_factory, alpha):
        async with session_factory() as session, session.begin():
            repo = AgentRepository(session)
            updated = await repo.update_risk_config(alpha.id, max_trades_per_day=2)
            assert updated.config_version == 2

            unchanged = await repo.update_risk_config(alpha.id, max_trades_per_day=2)
            assert unchanged.config_version == 2

            with pytest.raises(ValueError):
                await repo.update_risk_config(alpha.id, name="Renamed")

    @pytest.mark.asyncio
    async def test_list_active(self, session_factory, alpha, beta):
        async with session_factory() as session, session.begin():
            repo = AgentRepository(session)
            await repo.set_active(alpha.id, False)
            active = await repo.list_active()
        assert [a.name for a in active] == ["Beta"]


class TestLedgerRepository:

    @pytest.mark.asyncio
    async def test_apply_fill_buy_then_sell(self, session_factory, alpha):
        async with session_factory() as session, session.begin():
            repo = LedgerRepository(session)
            ledger = await repo.get_by_agent(alpha.id)

            repo.apply_fill(ledger, TradeSide.BUY, "TCS", 10, 3600.0)
            repo.apply_fill(ledger, TradeSide.BUY, "TCS", 10, 3800.0)
            repo.apply_fill(ledger, TradeSide.SELL, "TCS", 5, 4000.0)

            [position] = ledger.positions
            assert position.shares == 15
            assert position.avg_cost == pytest.approx(3700.0)
            assert ledger.cash_balance == pytest.approx(100000 - 36000 - 38000 + 20000)

    @pytest.mark.asyncio
    async def test_oversell_raises(self, session_factory, alpha):
        async with session_factory() as session, session.begin():
            repo = LedgerRepository(session)
            ledger = await repo.get_by_agent(alpha.id)
            repo.apply_fill(ledger, TradeSide.BUY, "TCS", 2, 3600.0)

            with pytest.raises(ExecutionError) as exc:
                repo.apply_fill(ledger, TradeSide.SELL, "TCS", 3, 3600.0)

            assert exc.value.details == {"ticker": "TCS", "held": 2, "requested": 3}
            assert ledger.positions[0].shares == 2

    @pytest.mark.asyncio
    async def test_invalid_fill_raises(self, session_factory, alpha):
        async with session_factory() as session:
            repo = LedgerRepository(session)
            ledger = await repo.get_by_agent(alpha.id)
            with pytest.raises(ExecutionError):
                repo.apply_fill(ledger, TradeSide.BUY, "TCS", 0, 3600.0)

    @pytest.mark.asyncio
    async def test_reset(self, session_factory, alpha):
        async with session_factory() as session, session.begin():
            repo = LedgerRepository(session)
            ledger = await repo.get_by_agent(alpha.id)
            repo.apply_fill(ledger, TradeSide.BUY, "TCS", 2, 3600.0)
            await repo.reset(ledger)

        async with session_factory() as session:
            ledger = await LedgerRepository(session).get_by_agent(alpha.id)
            assert ledger.cash_balance == 100000.0
            assert ledger.positions == []


class TestRunRepository:

    @pytest.mark.asyncio
    async def test_lifecycle(self, session_factory):
        async with session_factory() as session, session.begin():
            repo = RunRepository(session)
            run = await repo.create(PARAMS, planned_trading_days=3)
            assert run.status == RunStatus.PENDING.value

            repo.transition(run, RunStatus.RUNNING, NOW)
            repo.transition(run, RunStatus.COMPLETED, NOW, trading_days=3)

            assert run.started_at == NOW
            assert run.completed_at == NOW
            assert run.trading_days == 3

    @pytest.mark.asyncio
    async def test_terminal_runs_never_change(self, session_factory):
        async with session_factory() as session, session.begin():
            repo = RunRepository(session)
            run = await repo.create(PARAMS, planned_trading_days=3)
            repo.transition(run, RunStatus.CANCELLED, NOW)

            with pytest.raises(RunStateError) as exc:
                repo.transition(run, RunStatus.RUNNING, NOW)

            assert "cannot move from CANCELLED to RUNNING" in exc.value.message
            assert exc.value.status_code == 409

    @pytest.mark.asyncio
    async def test_failed_sets_failed_at(self, session_factory):
        async with session_factory() as session, session.begin():
            repo = RunRepository(session)
            run = await repo.create(PARAMS, planned_trading_days=3)
            repo.transition(run, RunStatus.RUNNING, NOW)
            repo.transition(run, RunStatus.FAILED, NOW, failure_reason="boom")
            assert run.failed_at == NOW
            assert run.failure_reason == "boom"

    @pytest.mark.asyncio
    async def test_upsert_agent_result_and_ranks(self, session_factory, alpha, beta):
        async with session_factory() as session, session.begin():
            repo = RunRepository(session)
            run = await repo.create(PARAMS, planned_trading_days=3)
            for agent in (alpha, beta):
                await repo.upsert_agent_result(run.id, agent.id, 100000.0, 0.0, 100000.0, 0.0, [], 0)
            await repo.upsert_agent_result(run.id, alpha.id, 90000.0, 12000.0, 102000.0, 2.0, [], 1)

            results = await repo.list_results(run.id)
            assert len(results) == 2
            assert all(r.rank is None for r in results)

            await repo.assign_ranks(run.id, [alpha.id, beta.id])
            ranked = await repo.list_results(run.id)
            assert [(r.agent_id, r.rank) for r in ranked] == [(alpha.id, 1), (beta.id, 2)]
            assert ranked[0].total_value == 102000.0


class TestTradeRepository:

    async def _pending(self, session, agent, trade_date=date(2024, 1, 2)):
        return await TradeRepository(session).create_pending(
            agent_id=agent.id,
            ticker="TCS",
            side=TradeSide.BUY,
            shares=1,
            quote_price=3650.0,
            trade_date=trade_date,
            created_at=NOW,
        )

    @pytest.mark.asyncio
    async def test_single_terminal_status(self, session_factory, alpha):
        async with session_factory() as session, session.begin():
            repo = TradeRepository(session)
            trade = await self._pending(session, alpha)
            assert trade.status == TradeStatus.PENDING.value

            repo.mark_filled(trade, 3660.0, NOW, broker_order_id="SIM-1")
            assert trade.total_value == 3660.0

            with pytest.raises(TradeStateError):
                repo.mark_rejected(trade, "too late")
            with pytest.raises(TradeStateError):
                repo.mark_cancelled(trade, "too late")

    @pytest.mark.asyncio
    async def test_count_filled_on(self, session_factory, alpha):
        async with session_factory() as session, session.begin():
            repo = TradeRepository(session)
            filled = await self._pending(session, alpha)
            repo.mark_filled(filled, 3650.0, NOW)
            rejected = await self._pending(session, alpha)
            repo.mark_rejected(rejected, "no")
            other_day = await self._pending(session, alpha, trade_date=date(2024, 1, 3))
            repo.mark_filled(other_day, 3650.0, NOW)
            await session.flush()

            assert await repo.count_filled_on(alpha.id, date(2024, 1, 2)) == 1
            assert await repo.count_filled_on(alpha.id, date(2024, 1, 3)) == 1


class TestSeed:

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, session_factory, settings):
        created = await seed_agents(session_factory, settings)
        again = await seed_agents(session_factory, settings)

        assert created == [entry["name"] for entry in DEFAULT_AGENTS]
        assert again == []

        async with session_factory() as session:
            agents = await AgentRepository(session).list_all()
        assert [a.name for a in agents] == created
        assert agents[1].model == "gpt-4o-mini"
        assert agents[0].allowed_leverage == [1, 5, 10, 20]
        assert all(a.ledger.cash_balance == settings.initial_capital for a in agents)
