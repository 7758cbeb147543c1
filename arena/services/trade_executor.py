"""
Trade Executor - submits validated decisions and settles confirmed fills.

Order of operations:
1. A PENDING trade row is committed (with the ledger state before the trade)
2. The order goes to the broker
3. On a COMPLETE fill the trade is marked FILLED and the ledger updated in
   one transaction; anything else marks the trade REJECTED and leaves the
   ledger untouched (CANCELLED if the task is cancelled mid-order)
"""

import asyncio
import logging
import uuid
from datetime import date, datetime
from typing import Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import ExecutionError, LedgerNotFoundError
from ..db.repositories.ledger import LedgerRepository
from ..db.repositories.trade import TradeRepository
from ..gateways.base import BrokerGateway, OrderRequest, OrderResult, TradeError
from ..models.agent import AgentProfile, LedgerState
from ..models.decision import ActionType, TradeDecision
from ..models.trade import ExecutionResult, TradeSide, TradeStatus
from ..monitoring.metrics import MetricsCollector, get_metrics_collector

logger = logging.getLogger(__name__)


class TradeExecutor:
    """
    Executes BUY/SELL decisions against a broker.

    Usage:
        executor = TradeExecutor(session_factory, broker)
        result = await executor.execute(agent, decision, quote_price=2450.0, as_of=now)
        if result.filled:
            print(result.fill_price)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broker: BrokerGateway,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.session_factory = session_factory
        self.broker = broker
        self.metrics = metrics or get_metrics_collector()

    async def execute(
        self,
        agent: AgentProfile,
        decision: TradeDecision,
        quote_price: float,
        as_of: datetime,
        run_id: Optional[uuid.UUID] = None,
        decision_id: Optional[uuid.UUID] = None,
        trade_date: Optional[date] = None,
        prices: Optional[Mapping[str, float]] = None,
    ) -> ExecutionResult:
        """
        Execute a validated non-HOLD decision.

        Args:
            agent: Trading agent
            decision: Validated BUY/SELL decision
            quote_price: Cycle price used for the PENDING row
            as_of: Cycle time (simulated in backtests)
            run_id: Owning run, if any
            decision_id: DecisionRecord that produced this trade
            trade_date: Trading day for daily counts (defaults to as_of's date)
            prices: Cycle prices, used for the post-trade portfolio value

        Returns:
            ExecutionResult, filled or rejected

        Raises:
            ValueError: decision is a HOLD
            LedgerNotFoundError: the agent has no ledger
        """
        if decision.action == ActionType.HOLD or not decision.ticker:
            raise ValueError("Only BUY/SELL decisions with a ticker can be executed")

        side = TradeSide(decision.action.value)
        trade_id = await self._create_pending(
            agent, decision, side, quote_price, as_of, run_id, decision_id,
            trade_date or as_of.date(),
        )

        order = OrderRequest(ticker=decision.ticker, side=side, shares=decision.shares)
        try:
            result = await self.broker.submit_order(order)
        except asyncio.CancelledError:
            logger.warning(f"[{agent.name}] {decision.describe()} cancelled while in flight")
            await self._cancel(trade_id, side, "Cancelled before the broker confirmed the order")
            raise
        except TradeError as e:
            logger.warning(f"[{agent.name}] Broker refused {decision.describe()}: {e.message}")
            return await self._reject(trade_id, side, f"Broker error: {e.message}")
        except Exception as e:
            logger.error(
                f"[{agent.name}] Broker failure on {decision.describe()}: {e}", exc_info=True
            )
            return await self._reject(trade_id, side, f"Broker failure: {e}")

        if not result.is_complete:
            reason = f"Order {result.status.value}" + (f": {result.message}" if result.message else "")
            logger.info(f"[{agent.name}] {decision.describe()} not filled ({reason})")
            return await self._reject(trade_id, side, reason, result.order_id)

        try:
            return await self._settle(agent, trade_id, side, result, as_of, prices or {})
        except ExecutionError as e:
            logger.error(f"[{agent.name}] Could not apply fill for {decision.describe()}: {e.message}")
            return await self._reject(trade_id, side, e.message, result.order_id)
        except Exception as e:
            # The settle transaction rolled back, so the trade is still PENDING
            logger.error(
                f"[{agent.name}] Settlement failed for {decision.describe()}: {e}", exc_info=True
            )
            return await self._reject(trade_id, side, f"Settlement failure: {e}", result.order_id)

    async def _create_pending(
        self,
        agent: AgentProfile,
        decision: TradeDecision,
        side: TradeSide,
        quote_price: float,
        as_of: datetime,
        run_id: Optional[uuid.UUID],
        decision_id: Optional[uuid.UUID],
        trade_date: date,
    ) -> uuid.UUID:
        async with self.session_factory() as session, session.begin():
            ledger = await LedgerRepository(session).get_by_agent(agent.id)
            if ledger is None:
                raise LedgerNotFoundError(agent.id)

            trade = await TradeRepository(session).create_pending(
                agent_id=agent.id,
                ticker=decision.ticker,
                side=side,
                shares=decision.shares,
                quote_price=quote_price,
                trade_date=trade_date,
                created_at=as_of,
                leverage=decision.leverage,
                run_id=run_id,
                decision_id=decision_id,
                ledger_before=LedgerState.from_db(ledger).to_dict(),
            )
            return trade.id

    async def _settle(
        self,
        agent: AgentProfile,
        trade_id: uuid.UUID,
        side: TradeSide,
        order: OrderResult,
        as_of: datetime,
        prices: Mapping[str, float],
    ) -> ExecutionResult:
        """Mark FILLED and apply the fill to the ledger atomically."""
        async with self.session_factory() as session, session.begin():
            trades = TradeRepository(session)
            ledgers = LedgerRepository(session)

            trade = await trades.get_by_id(trade_id)
            ledger = await ledgers.get_by_agent(agent.id)
            if trade is None or ledger is None:
                raise ExecutionError(f"Trade {trade_id} or its ledger disappeared before settlement")

            ledgers.apply_fill(ledger, side, trade.ticker, trade.shares, order.fill_price)
            state = LedgerState.from_db(ledger)
            prices = {**prices, trade.ticker: order.fill_price}
            portfolio_value = state.cash_balance + sum(
                p.shares * prices.get(p.ticker, p.avg_cost) for p in state.positions.values()
            )
            trades.mark_filled(
                trade,
                price=order.fill_price,
                executed_at=as_of,
                broker_order_id=order.order_id,
                cash_after=state.cash_balance,
                portfolio_value_after=portfolio_value,
                ledger_after=state.to_dict(),
            )
            total_value = trade.total_value

        self.metrics.track_trade(side.value, TradeStatus.FILLED.value)
        logger.info(
            f"[{agent.name}] FILLED {side.value} {trade.shares} {trade.ticker} "
            f"@ ₹{order.fill_price:.2f} (cash ₹{state.cash_balance:,.2f})"
        )
        return ExecutionResult(
            filled=True,
            trade_id=trade_id,
            fill_price=order.fill_price,
            total_value=total_value,
            cash_after=state.cash_balance,
        )

    async def _reject(
        self,
        trade_id: uuid.UUID,
        side: TradeSide,
        reason: str,
        broker_order_id: Optional[str] = None,
    ) -> ExecutionResult:
        async with self.session_factory() as session, session.begin():
            repo = TradeRepository(session)
            trade = await repo.get_by_id(trade_id)
            if trade is not None:
                repo.mark_rejected(trade, reason, broker_order_id)

        self.metrics.track_trade(side.value, TradeStatus.REJECTED.value)
        return ExecutionResult.rejected(reason, trade_id)

    async def _cancel(self, trade_id: uuid.UUID, side: TradeSide, reason: str) -> None:
        async with self.session_factory() as session, session.begin():
            repo = TradeRepository(session)
            trade = await repo.get_by_id(trade_id)
            if trade is not None:
                repo.mark_cancelled(trade, reason)

        self.metrics.track_trade(side.value, TradeStatus.CANCELLED.value)
