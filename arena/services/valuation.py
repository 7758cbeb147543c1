"""
Portfolio valuation.

Values a ledger as ``cash + sum(shares x current price)``. Prices resolve
through a chain, first hit wins:

1. Per-cycle cache (the quotes the cycle already fetched)
2. Live MarketFeed quote
3. Last-known persisted price (``market_quotes``)
4. The position's average cost, logged as a warning
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db.repositories.agent import AgentRepository
from ..db.repositories.market import MarketQuoteRepository
from ..db.repositories.snapshot import SnapshotRepository
from ..gateways.base import MarketFeed
from ..models.agent import AgentProfile, LedgerState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionValue:
    ticker: str
    shares: int
    avg_cost: float
    price: float
    value: float
    pnl: float
    pnl_pct: float

    def to_dict(self) -> dict:
        return {
            "ticker": self.ticker,
            "shares": self.shares,
            "avg_cost": round(self.avg_cost, 4),
            "price": round(self.price, 4),
            "value": round(self.value, 4),
            "pnl": round(self.pnl, 4),
            "pnl_pct": round(self.pnl_pct, 4),
        }


@dataclass(frozen=True)
class Valuation:
    """Point-in-time value of one ledger"""

    agent_id: uuid.UUID
    cash_balance: float
    positions_value: float
    total_value: float
    return_pct: float
    positions: list[PositionValue] = field(default_factory=list)

    def positions_payload(self) -> list[dict]:
        return [p.to_dict() for p in self.positions]


@dataclass(frozen=True)
class LeaderboardEntry:
    rank: int
    agent: AgentProfile
    valuation: Valuation

    def to_dict(self) -> dict:
        v = self.valuation
        return {
            "rank": self.rank,
            "agent_id": str(self.agent.id),
            "agent_name": self.agent.name,
            "provider": self.agent.provider,
            "cash_balance": round(v.cash_balance, 2),
            "positions_value": round(v.positions_value, 2),
            "total_value": round(v.total_value, 2),
            "return_pct": round(v.return_pct, 4),
            "positions": v.positions_payload(),
        }


class PortfolioValuator:
    """
    Ledger valuation with a price-resolution chain.

    Usage:
        valuator = PortfolioValuator(session_factory, feed)
        valuator.update_cache(market.prices)
        valuation = await valuator.value(ledger)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: Optional[MarketFeed] = None,
    ):
        self.session_factory = session_factory
        self.feed = feed
        self._cache: dict[str, float] = {}

    # ==================== Price cache ====================

    def update_cache(self, prices: Mapping[str, float]) -> None:
        """Load the cycle's prices into the cache."""
        self._cache.update({t: p for t, p in prices.items() if p and p > 0})

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cached_prices(self) -> dict[str, float]:
        return dict(self._cache)

    async def prime(self, tickers: Iterable[str]) -> dict[str, float]:
        """Resolve and cache prices for tickers not cached yet (feed, then persisted)."""
        missing = [t for t in dict.fromkeys(tickers) if t not in self._cache]
        if missing and self.feed is not None:
            try:
                quotes = await self.feed.get_quotes(missing)
                self.update_cache({q.ticker: q.price for q in quotes})
            except Exception as e:
                logger.warning(f"Price feed unavailable while priming {missing}: {e}")

        missing = [t for t in missing if t not in self._cache]
        if missing:
            async with self.session_factory() as session:
                stored = await MarketQuoteRepository(session).get_quotes(missing)
            self.update_cache({t: q.price for t, q in stored.items()})

        return {t: self._cache[t] for t in tickers if t in self._cache}

    async def resolve_price(self, ticker: str, fallback: Optional[float] = None) -> Optional[float]:
        """
        Resolve a single price through the chain.

        Args:
            ticker: Ticker to price
            fallback: Value used when nothing else resolves (average cost)
        """
        await self.prime([ticker])
        price = self._cache.get(ticker)
        if price is not None:
            return price
        if fallback is not None:
            logger.warning(f"No price for {ticker}; valuing at average cost {fallback:.2f}")
        return fallback

    # ==================== Valuation ====================

    async def value(self, ledger: LedgerState) -> Valuation:
        await self.prime(ledger.positions.keys())

        positions: list[PositionValue] = []
        for pos in ledger.positions.values():
            price = self._cache.get(pos.ticker)
            if price is None:
                logger.warning(
                    f"No price for {pos.ticker}; valuing at average cost {pos.avg_cost:.2f}"
                )
                price = pos.avg_cost
            value = pos.shares * price
            cost = pos.shares * pos.avg_cost
            pnl = value - cost
            positions.append(
                PositionValue(
                    ticker=pos.ticker,
                    shares=pos.shares,
                    avg_cost=pos.avg_cost,
                    price=price,
                    value=value,
                    pnl=pnl,
                    pnl_pct=(pnl / cost * 100) if cost else 0.0,
                )
            )

        positions_value = sum(p.value for p in positions)
        total_value = ledger.cash_balance + positions_value
        return Valuation(
            agent_id=ledger.agent_id,
            cash_balance=ledger.cash_balance,
            positions_value=positions_value,
            total_value=total_value,
            return_pct=_return_pct(total_value, ledger.initial_capital),
            positions=positions,
        )

    async def position_pnl(self, ledger: LedgerState) -> list[PositionValue]:
        """Per-position current value and unrealized P&L."""
        return (await self.value(ledger)).positions

    async def snapshot(
        self,
        ledger: LedgerState,
        as_of: datetime,
        run_id: Optional[uuid.UUID] = None,
    ) -> Valuation:
        """Value the ledger and append a ValuationSnapshot row."""
        valuation = await self.value(ledger)
        async with self.session_factory() as session, session.begin():
            await SnapshotRepository(session).create(
                agent_id=ledger.agent_id,
                cash_balance=valuation.cash_balance,
                positions_value=valuation.positions_value,
                total_value=valuation.total_value,
                return_pct=valuation.return_pct,
                positions=valuation.positions_payload(),
                created_at=as_of,
                run_id=run_id,
            )
        return valuation

    async def leaderboard(self) -> list[LeaderboardEntry]:
        """
        Active agents ranked by total value.

        Ties keep agent insertion order (``sort_order``).
        """
        async with self.session_factory() as session:
            agents = await AgentRepository(session).list_active()
            pairs = [
                (AgentProfile.from_db(a), LedgerState.from_db(a.ledger))
                for a in agents
                if a.ledger is not None
            ]

        valued = [(agent, await self.value(ledger)) for agent, ledger in pairs]
        valued.sort(key=lambda item: item[0].sort_order)
        valued.sort(key=lambda item: item[1].total_value, reverse=True)
        return [
            LeaderboardEntry(rank=i, agent=agent, valuation=valuation)
            for i, (agent, valuation) in enumerate(valued, start=1)
        ]

    @staticmethod
    def max_drawdown(values: Sequence[float]) -> float:
        """Largest peak-to-trough decline, in percent of the peak."""
        peak = None
        worst = 0.0
        for v in values:
            if peak is None or v > peak:
                peak = v
            if peak and peak > 0:
                worst = max(worst, (peak - v) / peak * 100)
        return worst


def _return_pct(total_value: float, initial_capital: float) -> float:
    if not initial_capital:
        return 0.0
    return (total_value - initial_capital) / initial_capital * 100
