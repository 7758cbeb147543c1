"""Agent repository for database operations

Handles CRUD for competing agents. Every agent owns exactly one ledger,
created together with the agent.
"""

import uuid
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AgentDB, LedgerDB

# Columns whose change bumps config_version
_RISK_FIELDS = ("watchlist", "max_position_size", "max_trades_per_day", "allowed_leverage")


class AgentRepository:
    """Repository for Agent CRUD operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        name: str,
        provider: str,
        watchlist: list[str],
        initial_capital: float,
        model: str = "",
        max_position_size: float = 0.3,
        max_trades_per_day: int = 10,
        allowed_leverage: Optional[list[int]] = None,
        is_active: bool = True,
    ) -> AgentDB:
        """Create a new agent and its ledger.

        ``sort_order`` is assigned from insertion order and never changes.
        """
        next_order = await self.session.scalar(
            select(func.coalesce(func.max(AgentDB.sort_order), 0))
        )
        agent = AgentDB(
            name=name,
            provider=provider,
            model=model,
            sort_order=(next_order or 0) + 1,
            is_active=is_active,
            watchlist=[t.upper() for t in watchlist],
            max_position_size=max_position_size,
            max_trades_per_day=max_trades_per_day,
            allowed_leverage=sorted(set(allowed_leverage or [1])),
            config_version=1,
        )
        agent.ledger = LedgerDB(
            cash_balance=initial_capital,
            initial_capital=initial_capital,
        )
        self.session.add(agent)
        await self.session.flush()
        await self.session.refresh(agent)
        return agent

    async def get_by_id(self, agent_id: uuid.UUID) -> Optional[AgentDB]:
        """Get agent by ID (ledger and positions are eager-loaded)."""
        result = await self.session.execute(
            select(AgentDB).where(AgentDB.id == agent_id)
        )
        return result.scalar_one_or_none()

    async def get_by_name(self, name: str) -> Optional[AgentDB]:
        result = await self.session.execute(
            select(AgentDB).where(AgentDB.name == name)
        )
        return result.scalar_one_or_none()

    async def list_all(self, active_only: bool = False) -> list[AgentDB]:
        """All agents in insertion order."""
        query = select(AgentDB).order_by(AgentDB.sort_order)
        if active_only:
            query = query.where(AgentDB.is_active.is_(True))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_active(self) -> list[AgentDB]:
        return await self.list_all(active_only=True)

    async def count(self) -> int:
        return await self.session.scalar(select(func.count(AgentDB.id))) or 0

    async def set_active(self, agent_id: uuid.UUID, is_active: bool) -> Optional[AgentDB]:
        """Toggle participation; the only change allowed while a run is active."""
        agent = await self.get_by_id(agent_id)
        if not agent:
            return None
        agent.is_active = is_active
        await self.session.flush()
        return agent

    async def update_risk_config(self, agent_id: uuid.UUID, **changes) -> Optional[AgentDB]:
        """Update risk configuration and bump ``config_version`` if anything changed."""
        agent = await self.get_by_id(agent_id)
        if not agent:
            return None

        changed = False
        for key, value in changes.items():
            if key not in _RISK_FIELDS:
                raise ValueError(f"Unknown risk field: {key}")
            if key == "watchlist":
                value = [t.upper() for t in value]
            elif key == "allowed_leverage":
                value = sorted(set(value))
            if getattr(agent, key) != value:
                setattr(agent, key, value)
                changed = True

        if changed:
            agent.config_version += 1
            await self.session.flush()
        return agent
