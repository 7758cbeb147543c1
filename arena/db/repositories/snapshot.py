"""Valuation snapshot repository"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ValuationSnapshotDB


class SnapshotRepository:
    """Repository for ValuationSnapshot operations (append-only)"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        agent_id: uuid.UUID,
        cash_balance: float,
        positions_value: float,
        total_value: float,
        return_pct: float,
        positions: list,
        created_at: datetime,
        run_id: Optional[uuid.UUID] = None,
    ) -> ValuationSnapshotDB:
        snapshot = ValuationSnapshotDB(
            agent_id=agent_id,
            run_id=run_id,
            cash_balance=cash_balance,
            positions_value=positions_value,
            total_value=total_value,
            return_pct=return_pct,
            positions=positions,
            created_at=created_at,
        )
        self.session.add(snapshot)
        await self.session.flush()
        return snapshot

    async def list_for_agent(
        self,
        agent_id: uuid.UUID,
        run_id: Optional[uuid.UUID] = None,
        limit: Optional[int] = None,
    ) -> list[ValuationSnapshotDB]:
        """Snapshots oldest first."""
        query = (
            select(ValuationSnapshotDB)
            .where(ValuationSnapshotDB.agent_id == agent_id)
            .order_by(ValuationSnapshotDB.created_at)
        )
        if run_id is not None:
            query = query.where(ValuationSnapshotDB.run_id == run_id)
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count(
        self,
        agent_id: Optional[uuid.UUID] = None,
        run_id: Optional[uuid.UUID] = None,
    ) -> int:
        query = select(func.count(ValuationSnapshotDB.id))
        if agent_id is not None:
            query = query.where(ValuationSnapshotDB.agent_id == agent_id)
        if run_id is not None:
            query = query.where(ValuationSnapshotDB.run_id == run_id)
        return await self.session.scalar(query) or 0
