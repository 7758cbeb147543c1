"""
Run Orchestrator - drives cycles across a date range.

State machine: PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED

Per trading day:
1. One or more intraday cycles at simulated times
2. End of day: value every active agent, upsert RunAgentResult, append a
   RunSnapshot, bump the run's counters, publish ``eod_summary``

Each day is committed on its own, so a later failure or cancellation keeps
every earlier day's rows. Ranks are written only on normal completion.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime, time as dtime
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, get_settings
from ..core.errors import InvalidRunError, RunNotFoundError
from ..db.repositories.agent import AgentRepository
from ..db.repositories.ledger import LedgerRepository
from ..db.repositories.run import RunRepository
from ..db.repositories.trade import TradeRepository
from ..gateways.base import BrokerGateway, MarketFeed
from ..models.agent import AgentProfile, LedgerState
from ..models.run import RunParams, RunStatus, RunSummary
from ..monitoring.metrics import MetricsCollector, get_metrics_collector
from ..services.ai.factory import ProviderRegistry
from ..services.cycle import TradingCycle
from ..services.decision_engine import DecisionEngine
from ..services.events import EventSink, EventType, safe_publish
from ..services.market_features import MarketFeatureService
from ..services.prompt_builder import PromptBuilder
from .cancellation import CancellationToken
from .schedule import cycle_times, cycles_per_day, iter_trading_days

logger = logging.getLogger(__name__)

CANCELLED_REASON = "Run cancelled by client"


@dataclass(frozen=True)
class RunReport:
    """Final state of a run as returned to the caller"""

    run_id: uuid.UUID
    status: RunStatus
    summary: RunSummary
    error: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {
            "run_id": str(self.run_id),
            "status": self.status.value,
            "summary": self.summary.to_payload(),
        }
        if self.error:
            payload["error"] = self.error
        return payload


class RunOrchestrator:
    """
    Multi-day backtest runner.

    Collaborators are injected once; a fresh TradingCycle (prompt options,
    feature history) is built for every run.

    Usage:
        orchestrator = RunOrchestrator(session_factory, feed, broker, providers, events=sink)
        token = CancellationToken()
        report = await orchestrator.run(params, cancel_token=token)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: MarketFeed,
        broker: BrokerGateway,
        providers: ProviderRegistry,
        secondary_feed: Optional[MarketFeed] = None,
        settings: Optional[Settings] = None,
        events: Optional[EventSink] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.feed = feed
        self.secondary_feed = secondary_feed
        self.broker = broker
        self.providers = providers
        self.settings = settings or get_settings()
        self.events = events
        self.metrics = metrics or get_metrics_collector()
        self._sleep = sleep
        self._tz = ZoneInfo(self.settings.market_timezone)

    def build_cycle(self, params: RunParams) -> TradingCycle:
        engine = DecisionEngine(
            self.session_factory,
            self.providers,
            prompt_builder=PromptBuilder(enriched=params.enriched, use_tools=params.use_tools),
            settings=self.settings,
            events=self.events,
            metrics=self.metrics,
            sleep=self._sleep,
        )
        return TradingCycle(
            self.session_factory,
            self.feed,
            self.broker,
            engine,
            features=MarketFeatureService(self.settings.feature_history_length),
            secondary_feed=self.secondary_feed,
            settings=self.settings,
            events=self.events,
            metrics=self.metrics,
        )

    async def run(
        self,
        params: RunParams,
        cancel_token: Optional[CancellationToken] = None,
        on_run_created: Optional[Callable[[uuid.UUID], None]] = None,
    ) -> RunReport:
        """
        Execute a run end to end.

        Args:
            params: Date range, interval and prompt options
            cancel_token: Checked between days and between cycles
            on_run_created: Called with the run id as soon as the row exists

        Returns:
            RunReport for a COMPLETED or CANCELLED run

        Raises:
            InvalidRunError: the range holds no trading day (no run row is created)
            Exception: whatever failed the run, after it was marked FAILED
        """
        token = cancel_token or CancellationToken()
        started = time.monotonic()
        days = list(iter_trading_days(params.start_date, params.end_date, self.settings.market_holidays))
        per_day = cycles_per_day(params.interval_minutes, self.settings.session_minutes)
        if not days:
            raise InvalidRunError(
                f"No trading days between {params.start_date} and {params.end_date}",
                details={
                    "start_date": params.start_date.isoformat(),
                    "end_date": params.end_date.isoformat(),
                },
            )

        async with self.session_factory() as session, session.begin():
            run = await RunRepository(session).create(params, planned_trading_days=len(days))
            run_id = run.id

        logger.info(
            f"Run {run_id} created: {params.start_date} to {params.end_date}, "
            f"{len(days)} trading days x {per_day} cycles"
        )
        if on_run_created is not None:
            on_run_created(run_id)

        trading_days = 0
        try:
            agents = await self._start(run_id, params)
            safe_publish(
                self.events,
                EventType.RUN_STARTED,
                {
                    "run_id": str(run_id),
                    "status": RunStatus.RUNNING.value,
                    "params": params.model_dump(mode="json"),
                    "planned_trading_days": len(days),
                    "cycles_per_day": per_day,
                    "agents": [
                        {"id": str(a.id), "name": a.name, "provider": a.provider} for a in agents
                    ],
                },
            )

            cycle = self.build_cycle(params)
            cancelled = False
            for day in days:
                if token.is_cancelled:
                    cancelled = True
                    break

                for index, slot in enumerate(
                    cycle_times(day, params.interval_minutes, self.settings), start=1
                ):
                    if token.is_cancelled:
                        cancelled = True
                        break
                    safe_publish(
                        self.events,
                        EventType.CYCLE_STARTED,
                        {
                            "run_id": str(run_id),
                            "date": day.isoformat(),
                            "time": slot.strftime("%H:%M:%S"),
                            "cycle_index": index,
                            "cycles_per_day": per_day,
                        },
                    )
                    await cycle.execute(simulated_time=slot, run_id=run_id)

                # A day interrupted mid-way is not summarized
                if cancelled:
                    break

                await self._end_of_day(run_id, day, cycle)
                trading_days += 1

            if cancelled:
                return await self._finish_cancelled(run_id, params, len(days), trading_days, started, token)
            return await self._finish_completed(run_id, params, len(days), trading_days, started, agents)

        except asyncio.CancelledError:
            logger.warning(f"Run {run_id} task cancelled")
            await self._finish_cancelled(
                run_id, params, len(days), trading_days, started, token, reason="Run task cancelled"
            )
            raise
        except Exception as e:
            logger.error(f"Run {run_id} failed: {e}", exc_info=True)
            await self._finish_failed(run_id, params, len(days), trading_days, started, e)
            raise

    # ==================== Phases ====================

    async def _start(self, run_id: uuid.UUID, params: RunParams) -> list[AgentProfile]:
        """PENDING -> RUNNING, reset ledgers and simulated collaborators."""
        async with self.session_factory() as session, session.begin():
            runs = RunRepository(session)
            run = await runs.get_by_id(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            runs.transition(run, RunStatus.RUNNING, at=datetime.now(UTC))

            agents = [AgentProfile.from_db(a) for a in await AgentRepository(session).list_active()]

            if params.reset_ledgers:
                ledgers = LedgerRepository(session)
                for ledger in await ledgers.list_all():
                    await ledgers.reset(ledger)

        self.feed.reset()
        if self.secondary_feed is not None:
            self.secondary_feed.reset()
        self.broker.reset()
        self.providers.reset()
        logger.info(f"Run {run_id} RUNNING with {len(agents)} agents")
        return agents

    async def _end_of_day(self, run_id: uuid.UUID, day: date, cycle: TradingCycle) -> None:
        """Persist per-agent results for the day and publish the summary."""
        async with self.session_factory() as session:
            pairs = [
                (AgentProfile.from_db(a), LedgerState.from_db(a.ledger))
                for a in await AgentRepository(session).list_active()
                if a.ledger is not None
            ]

        valuations = [(agent, await cycle.valuator.value(ledger)) for agent, ledger in pairs]

        portfolios = []
        async with self.session_factory() as session, session.begin():
            runs = RunRepository(session)
            trades = TradeRepository(session)
            for agent, valuation in valuations:
                trades_count = await trades.count_for_run(run_id, agent_id=agent.id)
                trades_today = await trades.count_for_run(run_id, agent_id=agent.id, trade_date=day)
                positions = [{"ticker": p.ticker, "shares": p.shares} for p in valuation.positions]

                await runs.upsert_agent_result(
                    run_id=run_id,
                    agent_id=agent.id,
                    final_cash=valuation.cash_balance,
                    positions_value=valuation.positions_value,
                    total_value=valuation.total_value,
                    return_pct=valuation.return_pct,
                    positions=positions,
                    trades_count=trades_count,
                )
                await runs.add_snapshot(
                    run_id=run_id,
                    agent_id=agent.id,
                    trading_date=day,
                    cash_balance=valuation.cash_balance,
                    positions_value=valuation.positions_value,
                    total_value=valuation.total_value,
                    return_pct=valuation.return_pct,
                    trades_today=trades_today,
                )
                portfolios.append(
                    {
                        "agent_id": str(agent.id),
                        "agent_name": agent.name,
                        "cash": round(valuation.cash_balance, 2),
                        "positions_value": round(valuation.positions_value, 2),
                        "total_value": round(valuation.total_value, 2),
                        "return_pct": round(valuation.return_pct, 4),
                        "positions": positions,
                    }
                )

            run = await runs.get_by_id(run_id)
            run.trading_days += 1
            run.total_trades = await trades.count_for_run(run_id)
            day_trades = await trades.count_for_run(run_id, trade_date=day)

        logger.info(f"Run {run_id} end of day {day}: {day_trades} trades")
        safe_publish(
            self.events,
            EventType.EOD_SUMMARY,
            {
                "run_id": str(run_id),
                "date": day.isoformat(),
                "timestamp": datetime.combine(day, dtime(23, 59, 59), tzinfo=self._tz).isoformat(),
                "trades_count": day_trades,
                "portfolios": portfolios,
            },
        )

    async def _finish_completed(
        self,
        run_id: uuid.UUID,
        params: RunParams,
        planned: int,
        trading_days: int,
        started: float,
        agents: list[AgentProfile],
    ) -> RunReport:
        order = {a.id: a.sort_order for a in agents}
        async with self.session_factory() as session, session.begin():
            runs = RunRepository(session)
            results = await runs.list_results(run_id)

            ranked = sorted(results, key=lambda r: order.get(r.agent_id, len(order)))
            ranked.sort(key=lambda r: r.total_value, reverse=True)
            await runs.assign_ranks(run_id, [r.agent_id for r in ranked])

            summary = await self._close(
                runs, session, run_id, params, planned, trading_days, started, RunStatus.COMPLETED
            )

        logger.info(
            f"Run {run_id} COMPLETED: {trading_days} days, {summary.total_trades} trades, "
            f"winner={ranked[0].agent_id if ranked else None}"
        )
        return self._report(run_id, RunStatus.COMPLETED, summary)

    async def _finish_cancelled(
        self,
        run_id: uuid.UUID,
        params: RunParams,
        planned: int,
        trading_days: int,
        started: float,
        token: CancellationToken,
        reason: Optional[str] = None,
    ) -> RunReport:
        reason = reason or token.reason or CANCELLED_REASON
        async with self.session_factory() as session, session.begin():
            summary = await self._close(
                RunRepository(session), session, run_id, params, planned, trading_days, started,
                RunStatus.CANCELLED, failure_reason=reason,
            )
        logger.info(f"Run {run_id} CANCELLED after {trading_days} days")
        return self._report(run_id, RunStatus.CANCELLED, summary)

    async def _finish_failed(
        self,
        run_id: uuid.UUID,
        params: RunParams,
        planned: int,
        trading_days: int,
        started: float,
        error: Exception,
    ) -> None:
        reason = str(error) or type(error).__name__
        try:
            async with self.session_factory() as session, session.begin():
                summary = await self._close(
                    RunRepository(session), session, run_id, params, planned, trading_days, started,
                    RunStatus.FAILED, failure_reason=reason,
                )
        except Exception as e:
            logger.error(f"Could not mark run {run_id} FAILED: {e}", exc_info=True)
            summary = self._summary(params, planned, trading_days, 0, started)

        safe_publish(self.events, EventType.ERROR, {"run_id": str(run_id), "message": reason})
        self._report(run_id, RunStatus.FAILED, summary, error=reason)

    async def _close(
        self,
        runs: RunRepository,
        session: AsyncSession,
        run_id: uuid.UUID,
        params: RunParams,
        planned: int,
        trading_days: int,
        started: float,
        status: RunStatus,
        failure_reason: Optional[str] = None,
    ) -> RunSummary:
        """Write the terminal status and final counters."""
        total_trades = await TradeRepository(session).count_for_run(run_id)
        summary = self._summary(params, planned, trading_days, total_trades, started)

        run = await runs.get_by_id(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        runs.transition(
            run,
            status,
            at=datetime.now(UTC),
            trading_days=trading_days,
            total_trades=total_trades,
            duration_ms=summary.duration_ms,
            failure_reason=failure_reason,
        )
        return summary

    def _summary(
        self, params: RunParams, planned: int, trading_days: int, total_trades: int, started: float
    ) -> RunSummary:
        return RunSummary(
            trading_days=trading_days,
            planned_trading_days=planned,
            total_trades=total_trades,
            start_date=params.start_date,
            end_date=params.end_date,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def _report(
        self,
        run_id: uuid.UUID,
        status: RunStatus,
        summary: RunSummary,
        error: Optional[str] = None,
    ) -> RunReport:
        """Build the report, publish ``run_complete`` and count the outcome."""
        report = RunReport(run_id=run_id, status=status, summary=summary, error=error)
        safe_publish(self.events, EventType.RUN_COMPLETE, report.to_payload())
        self.metrics.track_run(status.value)
        return report
