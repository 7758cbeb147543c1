"""Decision record repository for database operations

Decision records are append-only: one row per provider attempt, including
attempts whose output could not be parsed.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import DecisionRecordDB


class DecisionRepository:
    """Repository for DecisionRecord operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        agent_id: uuid.UUID,
        status: str,
        created_at: datetime,
        prompt: str = "",
        raw_response: str = "",
        reasoning: str = "",
        attempt: int = 1,
        call_attempt: int = 1,
        action: Optional[str] = None,
        ticker: Optional[str] = None,
        shares: Optional[int] = None,
        leverage: Optional[int] = None,
        parsed: Optional[dict] = None,
        error: Optional[str] = None,
        used_tools: bool = False,
        latency_ms: int = 0,
        run_id: Optional[uuid.UUID] = None,
    ) -> DecisionRecordDB:
        """Append a decision record"""
        record = DecisionRecordDB(
            agent_id=agent_id,
            run_id=run_id,
            status=status,
            attempt=attempt,
            call_attempt=call_attempt,
            action=action,
            ticker=ticker,
            shares=shares,
            leverage=leverage,
            reasoning=reasoning,
            prompt=prompt,
            raw_response=raw_response,
            parsed=parsed,
            error=error,
            used_tools=used_tools,
            latency_ms=latency_ms,
            created_at=created_at,
        )
        self.session.add(record)
        await self.session.flush()
        await self.session.refresh(record)
        return record

    async def list_for_agent(
        self,
        agent_id: uuid.UUID,
        limit: int = 50,
        run_id: Optional[uuid.UUID] = None,
    ) -> list[DecisionRecordDB]:
        query = (
            select(DecisionRecordDB)
            .where(DecisionRecordDB.agent_id == agent_id)
            .order_by(DecisionRecordDB.created_at.desc())
            .limit(limit)
        )
        if run_id is not None:
            query = query.where(DecisionRecordDB.run_id == run_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count(
        self,
        agent_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
    ) -> int:
        query = select(func.count(DecisionRecordDB.id))
        if agent_id is not None:
            query = query.where(DecisionRecordDB.agent_id == agent_id)
        if status is not None:
            query = query.where(DecisionRecordDB.status == status)
        return await self.session.scalar(query) or 0
