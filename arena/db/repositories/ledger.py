"""Ledger repository for database operations

The only place where cash and positions are mutated. ``apply_fill`` is
called by the trade executor after a confirmed fill, inside the same
transaction that marks the trade FILLED.
"""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ...core.errors import ExecutionError
from ...models.trade import TradeSide
from ..models import LedgerDB, PositionDB


class LedgerRepository:
    """Repository for Ledger / Position operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_agent(self, agent_id: uuid.UUID) -> Optional[LedgerDB]:
        """Get an agent's ledger with positions loaded."""
        result = await self.session.execute(
            select(LedgerDB).where(LedgerDB.agent_id == agent_id)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, ledger_id: uuid.UUID) -> Optional[LedgerDB]:
        result = await self.session.execute(
            select(LedgerDB).where(LedgerDB.id == ledger_id)
        )
        return result.scalar_one_or_none()

    async def list_all(self) -> list[LedgerDB]:
        result = await self.session.execute(select(LedgerDB))
        return list(result.scalars().all())

    def apply_fill(
        self,
        ledger: LedgerDB,
        side: TradeSide,
        ticker: str,
        shares: int,
        price: float,
    ) -> None:
        """
        Apply a confirmed fill to the ledger in place.

        BUY: cash decreases by shares * price; the position is created or its
        average cost is re-weighted.
        SELL: cash increases by shares * price; the position shrinks and is
        deleted when it reaches zero. Average cost is unchanged by a SELL.

        Raises:
            ExecutionError: SELL of more shares than held
        """
        if shares <= 0 or price <= 0:
            raise ExecutionError(
                f"Invalid fill for {ticker}: shares={shares} price={price}"
            )

        notional = shares * price
        position = next((p for p in ledger.positions if p.ticker == ticker), None)

        if side == TradeSide.BUY:
            ledger.cash_balance -= notional
            if position is None:
                ledger.positions.append(
                    PositionDB(ticker=ticker, shares=shares, avg_cost=price)
                )
            else:
                total_shares = position.shares + shares
                position.avg_cost = (
                    position.shares * position.avg_cost + notional
                ) / total_shares
                position.shares = total_shares
            return

        if position is None or position.shares < shares:
            held = position.shares if position else 0
            raise ExecutionError(
                f"Cannot sell {shares} {ticker}: only {held} held",
                details={"ticker": ticker, "held": held, "requested": shares},
            )

        ledger.cash_balance += notional
        position.shares -= shares
        if position.shares == 0:
            ledger.positions.remove(position)

    async def reset(self, ledger: LedgerDB, initial_capital: Optional[float] = None) -> None:
        """Restore the ledger to its starting capital with no positions."""
        if initial_capital is not None:
            ledger.initial_capital = initial_capital
        ledger.cash_balance = ledger.initial_capital
        ledger.positions.clear()
        await self.session.flush()
