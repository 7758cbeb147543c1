"""Trade repository for database operations

Trades are created PENDING before submission and moved to exactly one
terminal status afterwards.
"""

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ...core.errors import TradeStateError
from ...models.trade import TradeSide, TradeStatus
from ..models import AgentDB, TradeDB


class TradeRepository:
    """Repository for Trade CRUD operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_pending(
        self,
        agent_id: uuid.UUID,
        ticker: str,
        side: TradeSide,
        shares: int,
        quote_price: float,
        trade_date: date,
        created_at: datetime,
        leverage: int = 1,
        run_id: Optional[uuid.UUID] = None,
        decision_id: Optional[uuid.UUID] = None,
        ledger_before: Optional[dict] = None,
    ) -> TradeDB:
        """Create a PENDING trade row"""
        trade = TradeDB(
            agent_id=agent_id,
            run_id=run_id,
            decision_id=decision_id,
            ticker=ticker,
            side=side.value,
            shares=shares,
            leverage=leverage,
            quote_price=quote_price,
            status=TradeStatus.PENDING.value,
            trade_date=trade_date,
            created_at=created_at,
            ledger_before=ledger_before,
        )
        self.session.add(trade)
        await self.session.flush()
        await self.session.refresh(trade)
        return trade

    async def get_by_id(self, trade_id: uuid.UUID) -> Optional[TradeDB]:
        result = await self.session.execute(
            select(TradeDB).where(TradeDB.id == trade_id)
        )
        return result.scalar_one_or_none()

    def _ensure_pending(self, trade: TradeDB, target: TradeStatus) -> None:
        if trade.status != TradeStatus.PENDING.value:
            raise TradeStateError(
                f"Trade {trade.id} is already {trade.status}; cannot mark {target.value}"
            )

    def mark_filled(
        self,
        trade: TradeDB,
        price: float,
        executed_at: datetime,
        broker_order_id: Optional[str] = None,
        cash_after: Optional[float] = None,
        portfolio_value_after: Optional[float] = None,
        ledger_after: Optional[dict] = None,
    ) -> TradeDB:
        """Set the terminal FILLED status with fill details."""
        self._ensure_pending(trade, TradeStatus.FILLED)
        trade.status = TradeStatus.FILLED.value
        trade.price = price
        trade.total_value = trade.shares * price
        trade.executed_at = executed_at
        trade.broker_order_id = broker_order_id
        trade.cash_after = cash_after
        trade.portfolio_value_after = portfolio_value_after
        trade.ledger_after = ledger_after
        return trade

    def mark_rejected(
        self,
        trade: TradeDB,
        reason: str,
        broker_order_id: Optional[str] = None,
    ) -> TradeDB:
        """Set the terminal REJECTED status; the ledger is never touched."""
        self._ensure_pending(trade, TradeStatus.REJECTED)
        trade.status = TradeStatus.REJECTED.value
        trade.failure_reason = reason
        trade.broker_order_id = broker_order_id
        return trade

    def mark_cancelled(self, trade: TradeDB, reason: str) -> TradeDB:
        self._ensure_pending(trade, TradeStatus.CANCELLED)
        trade.status = TradeStatus.CANCELLED.value
        trade.failure_reason = reason
        return trade

    async def count_filled_on(self, agent_id: uuid.UUID, trade_date: date) -> int:
        """FILLED trades for an agent on a (simulated) trading day."""
        return await self.session.scalar(
            select(func.count(TradeDB.id)).where(
                TradeDB.agent_id == agent_id,
                TradeDB.trade_date == trade_date,
                TradeDB.status == TradeStatus.FILLED.value,
            )
        ) or 0

    async def count_for_run(
        self,
        run_id: uuid.UUID,
        agent_id: Optional[uuid.UUID] = None,
        trade_date: Optional[date] = None,
        status: TradeStatus = TradeStatus.FILLED,
    ) -> int:
        query = select(func.count(TradeDB.id)).where(
            TradeDB.run_id == run_id,
            TradeDB.status == status.value,
        )
        if agent_id is not None:
            query = query.where(TradeDB.agent_id == agent_id)
        if trade_date is not None:
            query = query.where(TradeDB.trade_date == trade_date)
        return await self.session.scalar(query) or 0

    async def list_for_run(self, run_id: uuid.UUID) -> list[TradeDB]:
        """Run trades in execution order (cycle time, then agent order)."""
        result = await self.session.execute(
            select(TradeDB)
            .join(AgentDB, AgentDB.id == TradeDB.agent_id)
            .where(TradeDB.run_id == run_id)
            .order_by(TradeDB.created_at, AgentDB.sort_order)
        )
        return list(result.scalars().all())

    async def list_recent(
        self,
        agent_id: Optional[uuid.UUID] = None,
        limit: int = 50,
    ) -> list[TradeDB]:
        query = select(TradeDB).order_by(TradeDB.created_at.desc()).limit(limit)
        if agent_id is not None:
            query = query.where(TradeDB.agent_id == agent_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())
