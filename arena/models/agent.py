"""
Detached agent and ledger state.

Services load ORM rows inside a short session and hand these plain objects
around, so nothing downstream triggers lazy loads outside a session.
"""

import uuid
from dataclasses import dataclass, field
from typing import Optional

from ..db.models import AgentDB, LedgerDB


@dataclass(frozen=True)
class AgentProfile:
    """Immutable view of an agent's configuration for the duration of a cycle"""

    id: uuid.UUID
    name: str
    provider: str
    model: str
    sort_order: int
    watchlist: tuple[str, ...]
    max_position_size: float
    max_trades_per_day: int
    allowed_leverage: tuple[int, ...]
    is_active: bool = True
    config_version: int = 1

    @classmethod
    def from_db(cls, agent: AgentDB) -> "AgentProfile":
        return cls(
            id=agent.id,
            name=agent.name,
            provider=agent.provider,
            model=agent.model or "",
            sort_order=agent.sort_order,
            watchlist=tuple(t.upper() for t in (agent.watchlist or [])),
            max_position_size=agent.max_position_size,
            max_trades_per_day=agent.max_trades_per_day,
            allowed_leverage=tuple(sorted(agent.allowed_leverage or [1])),
            is_active=agent.is_active,
            config_version=agent.config_version,
        )


@dataclass
class PositionState:
    ticker: str
    shares: int
    avg_cost: float


@dataclass
class LedgerState:
    """Cash and positions of one agent at a point in time"""

    ledger_id: uuid.UUID
    agent_id: uuid.UUID
    cash_balance: float
    initial_capital: float
    positions: dict[str, PositionState] = field(default_factory=dict)

    @classmethod
    def from_db(cls, ledger: LedgerDB) -> "LedgerState":
        return cls(
            ledger_id=ledger.id,
            agent_id=ledger.agent_id,
            cash_balance=ledger.cash_balance,
            initial_capital=ledger.initial_capital,
            positions={
                p.ticker: PositionState(p.ticker, p.shares, p.avg_cost)
                for p in ledger.positions
            },
        )

    def position(self, ticker: str) -> Optional[PositionState]:
        return self.positions.get(ticker)

    def shares_of(self, ticker: str) -> int:
        pos = self.positions.get(ticker)
        return pos.shares if pos else 0

    def to_dict(self) -> dict:
        """JSON-safe form stored on trades (ledger_before / ledger_after)."""
        return {
            "cash_balance": round(self.cash_balance, 4),
            "positions": [
                {"ticker": p.ticker, "shares": p.shares, "avg_cost": round(p.avg_cost, 4)}
                for p in self.positions.values()
            ],
        }
