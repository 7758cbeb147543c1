"""Run repository for database operations

Handles run bookkeeping: status transitions, per-agent results (upserted
after every trading day) and the append-only per-day snapshots.
"""

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ...core.errors import RunStateError
from ...models.run import RunParams, RunStatus
from ..models import RunAgentResultDB, RunDB, RunSnapshotDB


class RunRepository:
    """Repository for Run CRUD operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        params: RunParams,
        planned_trading_days: int,
        status: RunStatus = RunStatus.PENDING,
    ) -> RunDB:
        run = RunDB(
            start_date=params.start_date,
            end_date=params.end_date,
            interval_minutes=params.interval_minutes,
            params=params.model_dump(mode="json"),
            status=status.value,
            planned_trading_days=planned_trading_days,
        )
        self.session.add(run)
        await self.session.flush()
        await self.session.refresh(run)
        return run

    async def get_by_id(self, run_id: uuid.UUID) -> Optional[RunDB]:
        result = await self.session.execute(select(RunDB).where(RunDB.id == run_id))
        return result.scalar_one_or_none()

    async def list_recent(self, limit: int = 20, offset: int = 0) -> list[RunDB]:
        result = await self.session.execute(
            select(RunDB).order_by(RunDB.created_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    def transition(self, run: RunDB, target: RunStatus, at: datetime, **fields) -> RunDB:
        """
        Move a run to ``target``.

        Raises:
            RunStateError: the transition is not allowed (terminal runs never change)
        """
        current = RunStatus(run.status)
        if not current.can_transition_to(target):
            raise RunStateError(
                f"Run {run.id} cannot move from {current.value} to {target.value}"
            )

        run.status = target.value
        if target == RunStatus.RUNNING:
            run.started_at = at
        elif target == RunStatus.FAILED:
            run.failed_at = at
            run.completed_at = at
        else:
            run.completed_at = at

        for key, value in fields.items():
            setattr(run, key, value)
        return run

    async def upsert_agent_result(
        self,
        run_id: uuid.UUID,
        agent_id: uuid.UUID,
        final_cash: float,
        positions_value: float,
        total_value: float,
        return_pct: float,
        positions: list,
        trades_count: int,
    ) -> RunAgentResultDB:
        """Insert or update the (run, agent) result row"""
        result = await self.session.execute(
            select(RunAgentResultDB).where(
                RunAgentResultDB.run_id == run_id,
                RunAgentResultDB.agent_id == agent_id,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = RunAgentResultDB(run_id=run_id, agent_id=agent_id)
            self.session.add(row)

        row.final_cash = final_cash
        row.positions_value = positions_value
        row.total_value = total_value
        row.return_pct = return_pct
        row.positions = positions
        row.trades_count = trades_count
        await self.session.flush()
        return row

    async def add_snapshot(
        self,
        run_id: uuid.UUID,
        agent_id: uuid.UUID,
        trading_date: date,
        cash_balance: float,
        positions_value: float,
        total_value: float,
        return_pct: float,
        trades_today: int,
    ) -> RunSnapshotDB:
        snapshot = RunSnapshotDB(
            run_id=run_id,
            agent_id=agent_id,
            trading_date=trading_date,
            cash_balance=cash_balance,
            positions_value=positions_value,
            total_value=total_value,
            return_pct=return_pct,
            trades_today=trades_today,
        )
        self.session.add(snapshot)
        await self.session.flush()
        return snapshot

    async def list_results(self, run_id: uuid.UUID) -> list[RunAgentResultDB]:
        """Results ordered by rank (unranked rows last)."""
        result = await self.session.execute(
            select(RunAgentResultDB)
            .where(RunAgentResultDB.run_id == run_id)
            .order_by(RunAgentResultDB.rank.is_(None), RunAgentResultDB.rank)
        )
        return list(result.scalars().all())

    async def list_snapshots(self, run_id: uuid.UUID) -> list[RunSnapshotDB]:
        result = await self.session.execute(
            select(RunSnapshotDB)
            .where(RunSnapshotDB.run_id == run_id)
            .order_by(RunSnapshotDB.trading_date, RunSnapshotDB.created_at)
        )
        return list(result.scalars().all())

    async def assign_ranks(self, run_id: uuid.UUID, ranked_agent_ids: list[uuid.UUID]) -> None:
        """Write 1-based ranks in the given order."""
        results = {
            row.agent_id: row
            for row in await self.list_results(run_id)
        }
        for position, agent_id in enumerate(ranked_agent_ids, start=1):
            row = results.get(agent_id)
            if row is not None:
                row.rank = position
        await self.session.flush()
