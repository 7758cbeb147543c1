"""
Trading Cycle - one tick across all active agents.

Lifecycle:
1. (Live only) skip when the market is closed
2. Fetch quotes and news once for every agent
3. Per agent, in insertion order: decide -> validate -> execute, with up
   to ``agent_max_attempts`` revisions after a rejection, then a forced HOLD
4. Per agent, unconditionally: write a ValuationSnapshot

One agent's failure is logged and does not stop the others. Only a total
market-data outage aborts the cycle (DataFetchError).
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..backtest.schedule import is_market_open
from ..core.config import Settings, get_settings
from ..core.errors import DataFetchError, LedgerNotFoundError
from ..db.repositories.agent import AgentRepository
from ..db.repositories.ledger import LedgerRepository
from ..db.repositories.market import MarketQuoteRepository, SystemLogRepository
from ..db.repositories.trade import TradeRepository
from ..gateways.base import BrokerGateway, MarketFeed
from ..models.agent import AgentProfile, LedgerState
from ..models.decision import TradeDecision
from ..models.market import MarketState, NewsArticle, Quote
from ..models.trade import ExecutionResult
from ..monitoring.metrics import MetricsCollector, get_metrics_collector
from .agent_fsm import AgentAttempt, AgentEvent, AgentPhase
from .constraint_validator import ConstraintValidator, ValidationContext
from .decision_engine import DecisionEngine, Proposal
from .events import EventSink, EventType, safe_publish
from .market_features import MarketFeatureService
from .trade_executor import TradeExecutor
from .valuation import PortfolioValuator, Valuation

logger = logging.getLogger(__name__)


@dataclass
class AgentOutcome:
    """What happened to one agent in one cycle"""

    agent: AgentProfile
    decision: Optional[TradeDecision] = None
    attempts: int = 0
    forced_hold: bool = False
    execution: Optional[ExecutionResult] = None
    rejections: list[str] = field(default_factory=list)
    error: Optional[str] = None
    valuation: Optional[Valuation] = None

    @property
    def executed(self) -> bool:
        return self.execution is not None and self.execution.filled


@dataclass
class CycleResult:
    """Counters for one cycle"""

    processed: int = 0
    executed: int = 0
    rejected: int = 0
    holds: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    skipped: bool = False
    as_of: Optional[datetime] = None
    outcomes: list[AgentOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.errors == 0

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "executed": self.executed,
            "rejected": self.rejected,
            "holds": self.holds,
            "errors": self.errors,
            "duration_seconds": round(self.duration_seconds, 3),
            "skipped": self.skipped,
        }


class TradingCycle:
    """
    Runs one decision cycle for every active agent.

    Usage:
        cycle = TradingCycle(session_factory, feed, broker, engine)
        result = await cycle.execute()                       # live tick
        result = await cycle.execute(simulated_time=t, run_id=run.id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: MarketFeed,
        broker: BrokerGateway,
        engine: DecisionEngine,
        validator: Optional[ConstraintValidator] = None,
        executor: Optional[TradeExecutor] = None,
        valuator: Optional[PortfolioValuator] = None,
        features: Optional[MarketFeatureService] = None,
        secondary_feed: Optional[MarketFeed] = None,
        settings: Optional[Settings] = None,
        events: Optional[EventSink] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.session_factory = session_factory
        self.feed = feed
        self.secondary_feed = secondary_feed
        self.broker = broker
        self.engine = engine
        self.settings = settings or get_settings()
        self.validator = validator or ConstraintValidator()
        self.metrics = metrics or get_metrics_collector()
        self.executor = executor or TradeExecutor(session_factory, broker, self.metrics)
        self.valuator = valuator or PortfolioValuator(session_factory, feed)
        self.features = features
        self.events = events
        self._tz = ZoneInfo(self.settings.market_timezone)

    async def execute(
        self,
        simulated_time: Optional[datetime] = None,
        run_id: Optional[uuid.UUID] = None,
    ) -> CycleResult:
        """
        Run the cycle.

        Args:
            simulated_time: Cycle time for backtests; None means a live tick
            run_id: Owning run, stamped on trades, decisions and snapshots

        Returns:
            CycleResult counters

        Raises:
            DataFetchError: no quote could be resolved for any ticker
        """
        started = time.monotonic()
        as_of = simulated_time or datetime.now(UTC)
        result = CycleResult(as_of=as_of)

        if simulated_time is None and not is_market_open(as_of, self.settings):
            logger.info(f"Market is closed at {as_of.astimezone(self._tz):%H:%M} ({self.settings.market_timezone})")
            await self._system_log(
                "INFO",
                "Trading cycle skipped - market closed",
                {"market_time": as_of.astimezone(self._tz).isoformat()},
            )
            self.metrics.track_cycle("skipped")
            result.skipped = True
            return result

        agents = await self._load_agents()
        if not agents:
            logger.warning("No active agents found")
            result.duration_seconds = time.monotonic() - started
            return result

        tickers = list(dict.fromkeys(t for a in agents for t in a.watchlist))
        try:
            market = await self._fetch_market(tickers, as_of)
        except DataFetchError as e:
            logger.error(f"Trading cycle failed: {e.message}")
            await self._system_log("ERROR", "Trading cycle failed", {"error": e.message})
            safe_publish(
                self.events,
                EventType.ERROR,
                {"run_id": _str(run_id), "message": e.message, "timestamp": as_of.isoformat()},
            )
            self.metrics.track_cycle("error")
            raise

        self.broker.set_prices(market.prices)
        self.valuator.clear_cache()
        self.valuator.update_cache(market.prices)
        trade_date = as_of.astimezone(self._tz).date()

        logger.info(
            f"Cycle at {as_of.isoformat()}: {len(agents)} agents, "
            f"{len(market.quotes)} quotes ({len(market.stale_tickers)} stale), {len(market.news)} news"
        )

        for agent in agents:
            outcome = await self._process_agent(agent, market, trade_date, run_id)
            result.outcomes.append(outcome)

            if outcome.error is not None:
                result.errors += 1
            else:
                result.processed += 1
            if outcome.executed:
                result.executed += 1
            elif outcome.execution is not None:
                result.rejected += 1
            if outcome.decision is not None and outcome.decision.is_hold:
                result.holds += 1

        result.duration_seconds = time.monotonic() - started
        self.metrics.track_cycle("success" if result.success else "error")
        logger.info(
            f"Cycle completed in {result.duration_seconds:.2f}s: "
            f"processed={result.processed}/{len(agents)} executed={result.executed} "
            f"holds={result.holds} errors={result.errors}"
        )
        await self._system_log("INFO", "Trading cycle completed", {**result.to_dict(), "run_id": _str(run_id)})
        return result

    # ==================== Market data ====================

    async def _fetch_market(self, tickers: list[str], as_of: datetime) -> MarketState:
        """Primary feed, then secondary feed, then last persisted quotes."""
        quotes: dict[str, Quote] = {}
        for feed in (self.feed, self.secondary_feed):
            if feed is None:
                continue
            missing = [t for t in tickers if t not in quotes]
            if not missing:
                break
            feed.set_clock(as_of)
            try:
                for quote in await feed.get_quotes(missing):
                    quotes[quote.ticker] = quote
            except Exception as e:
                logger.warning(f"Market feed '{feed.name}' failed: {e}")

        fresh = list(quotes.values())
        stale: list[str] = []
        missing = [t for t in tickers if t not in quotes]
        async with self.session_factory() as session, session.begin():
            repo = MarketQuoteRepository(session)
            if missing:
                cached = await repo.get_quotes(missing)
                quotes.update(cached)
                stale = list(cached)
                if cached:
                    logger.warning(f"Using last cached quotes for {', '.join(stale)}")
            if fresh:
                await repo.upsert_many(fresh, as_of)

        if not quotes:
            raise DataFetchError(
                "No market data available for any ticker",
                details={"tickers": tickers},
            )

        news: list[NewsArticle] = []
        try:
            news = await self.feed.get_news(self.settings.news_limit)
        except Exception as e:
            logger.warning(f"News unavailable: {e}")

        if self.features is not None:
            self.features.update(fresh, as_of)

        return MarketState(
            quotes={t: quotes[t] for t in tickers if t in quotes},
            as_of=as_of,
            news=news,
            features=self.features,
            stale_tickers=stale,
        )

    # ==================== Agents ====================

    async def _load_agents(self) -> list[AgentProfile]:
        async with self.session_factory() as session:
            agents = await AgentRepository(session).list_active()
            return [AgentProfile.from_db(a) for a in agents]

    async def _load_ledger(self, agent: AgentProfile) -> LedgerState:
        async with self.session_factory() as session:
            ledger = await LedgerRepository(session).get_by_agent(agent.id)
            if ledger is None:
                raise LedgerNotFoundError(agent.id)
            return LedgerState.from_db(ledger)

    async def _trades_today(
        self, agent: AgentProfile, trade_date: date, run_id: Optional[uuid.UUID]
    ) -> int:
        async with self.session_factory() as session:
            repo = TradeRepository(session)
            if run_id is not None:
                return await repo.count_for_run(run_id, agent_id=agent.id, trade_date=trade_date)
            return await repo.count_filled_on(agent.id, trade_date)

    async def _process_agent(
        self,
        agent: AgentProfile,
        market: MarketState,
        trade_date: date,
        run_id: Optional[uuid.UUID],
    ) -> AgentOutcome:
        fsm = AgentAttempt(max_attempts=self.settings.agent_max_attempts)
        outcome = AgentOutcome(agent=agent)

        try:
            await self._drive(agent, fsm, outcome, market, trade_date, run_id)
        except Exception as e:
            outcome.error = str(e) or type(e).__name__
            logger.error(f"Error processing agent {agent.name}: {e}", exc_info=True)
            await self._system_log(
                "ERROR",
                f"Failed to process agent {agent.name}",
                {"agent_id": str(agent.id), "error": outcome.error, "run_id": _str(run_id)},
            )
            safe_publish(
                self.events,
                EventType.ERROR,
                {
                    "run_id": _str(run_id),
                    "agent_id": str(agent.id),
                    "agent_name": agent.name,
                    "message": outcome.error,
                    "timestamp": market.as_of.isoformat(),
                },
            )

        outcome.attempts = fsm.attempt
        outcome.decision = fsm.decision
        outcome.rejections = [r.reason for r in fsm.rejections]

        try:
            outcome.valuation = await self._settle(agent, market.as_of, run_id)
        except Exception as e:
            if outcome.error is None:
                outcome.error = f"Snapshot failed: {e}"
            logger.error(f"Failed to snapshot {agent.name}: {e}", exc_info=True)
            return outcome

        if fsm.phase == AgentPhase.SETTLE:
            self._publish_outcome(outcome, market, run_id)
            fsm.fire(AgentEvent.SETTLED)
        return outcome

    async def _drive(
        self,
        agent: AgentProfile,
        fsm: AgentAttempt,
        outcome: AgentOutcome,
        market: MarketState,
        trade_date: date,
        run_id: Optional[uuid.UUID],
    ) -> None:
        """Advance the agent's state machine up to SETTLE."""
        ledger: Optional[LedgerState] = None
        proposal: Optional[Proposal] = None

        while fsm.phase != AgentPhase.SETTLE:
            if fsm.phase == AgentPhase.AWAIT_DECISION:
                ledger = await self._load_ledger(agent)
                proposal = await self.engine.propose(
                    agent,
                    ledger,
                    market,
                    prior_attempt=fsm.prior_attempt,
                    run_id=run_id,
                    attempt=fsm.attempt,
                )
                fsm.decided(proposal.decision)

            elif fsm.phase == AgentPhase.VALIDATE:
                valuation = await self.valuator.value(ledger)
                context = ValidationContext(
                    prices=market.prices,
                    total_value=valuation.total_value,
                    trades_today=await self._trades_today(agent, trade_date, run_id),
                )
                verdict = self.validator.validate(agent, ledger, fsm.decision, context)
                if verdict.accepted:
                    fsm.accept()
                else:
                    self.metrics.track_rejection(verdict.rule)
                    fsm.reject(verdict.reason)

            elif fsm.phase == AgentPhase.EXECUTE:
                decision = fsm.decision
                outcome.execution = await self.executor.execute(
                    agent,
                    decision,
                    quote_price=market.price(decision.ticker),
                    as_of=market.as_of,
                    run_id=run_id,
                    decision_id=proposal.record_id if proposal else None,
                    trade_date=trade_date,
                    prices=market.prices,
                )
                fsm.fire(AgentEvent.EXECUTED)

            elif fsm.phase == AgentPhase.FORCE_HOLD:
                last = fsm.prior_attempt
                logger.info(f"[{agent.name}] Forced HOLD after {fsm.attempt} rejected attempts")
                outcome.forced_hold = True
                fsm.force_hold(
                    f"Forced HOLD after {fsm.attempt} rejected attempts"
                    + (f": {last.reason}" if last else "")
                )

    async def _settle(
        self, agent: AgentProfile, as_of: datetime, run_id: Optional[uuid.UUID]
    ) -> Valuation:
        ledger = await self._load_ledger(agent)
        valuation = await self.valuator.snapshot(ledger, as_of, run_id)
        self.metrics.set_agent_value(agent.name, valuation.total_value)
        return valuation

    def _publish_outcome(
        self, outcome: AgentOutcome, market: MarketState, run_id: Optional[uuid.UUID]
    ) -> None:
        decision = outcome.decision
        valuation = outcome.valuation
        base = {
            "run_id": _str(run_id),
            "agent_id": str(outcome.agent.id),
            "agent_name": outcome.agent.name,
            "timestamp": market.as_of.isoformat(),
            "attempts": outcome.attempts,
            "reasoning": decision.reasoning,
            "cash_balance": round(valuation.cash_balance, 2),
            "total_value": round(valuation.total_value, 2),
            "return_pct": round(valuation.return_pct, 4),
        }

        if outcome.execution is None:
            safe_publish(
                self.events,
                EventType.PORTFOLIO,
                {**base, "action": decision.action.value, "forced": outcome.forced_hold,
                 "rejections": outcome.rejections},
            )
            return

        execution = outcome.execution
        safe_publish(
            self.events,
            EventType.TRADE,
            {
                **base,
                "trade_id": _str(execution.trade_id),
                "action": decision.action.value,
                "ticker": decision.ticker,
                "shares": decision.shares,
                "leverage": decision.leverage,
                "status": "FILLED" if execution.filled else "REJECTED",
                "price": execution.fill_price,
                "trade_value": execution.total_value,
                "reason": execution.reason or None,
            },
        )

    async def _system_log(self, level: str, message: str, context: Optional[dict] = None) -> None:
        try:
            async with self.session_factory() as session, session.begin():
                await SystemLogRepository(session).log(level, message, context)
        except Exception as e:
            logger.warning(f"Failed to write system log '{message}': {e}")


def _str(value: Optional[uuid.UUID]) -> Optional[str]:
    return str(value) if value is not None else None
