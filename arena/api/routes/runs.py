"""
Run API routes.

Start a backtest in the background, inspect its results, cancel it.
"""

import logging
import uuid
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field, ValidationError

from ...core.errors import AppError, app_error_to_http
from ...db.repositories.agent import AgentRepository
from ...db.repositories.run import RunRepository
from ...models.run import RunParams
from ..dependencies import DbSessionDep, RunManagerDep

router = APIRouter(prefix="/runs", tags=["runs"])
logger = logging.getLogger(__name__)


# ==================== Request / Response Models ====================

class StartRunRequest(BaseModel):
    """Backtest run request"""
    start_date: date
    end_date: date
    interval_minutes: int = Field(default=1440, description="Minutes between cycles (1440 = daily)")
    enriched: bool = Field(default=True, description="Include technical indicators in prompts")
    use_tools: bool = Field(default=True, description="Allow the analysis round trip")
    reset_ledgers: bool = True


class StartRunResponse(BaseModel):
    run_id: str
    status: str = "accepted"


class RunResponse(BaseModel):
    """Run record"""
    id: str
    status: str
    start_date: date
    end_date: date
    interval_minutes: int
    params: dict
    planned_trading_days: int
    trading_days: int
    total_trades: int
    duration_ms: Optional[int] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    is_active: bool = False


class AgentResultResponse(BaseModel):
    """Per-agent result of a run"""
    agent_id: str
    agent_name: str
    final_cash: float
    positions_value: float
    total_value: float
    return_pct: float
    positions: list
    trades_count: int
    rank: Optional[int] = None


class RunSnapshotResponse(BaseModel):
    agent_id: str
    trading_date: date
    cash_balance: float
    positions_value: float
    total_value: float
    return_pct: float
    trades_today: int


class RunDetailResponse(RunResponse):
    results: list[AgentResultResponse] = Field(default_factory=list)
    snapshots: list[RunSnapshotResponse] = Field(default_factory=list)


def _run_to_response(run, is_active: bool = False) -> dict:
    return {
        "id": str(run.id),
        "status": run.status,
        "start_date": run.start_date,
        "end_date": run.end_date,
        "interval_minutes": run.interval_minutes,
        "params": run.params or {},
        "planned_trading_days": run.planned_trading_days,
        "trading_days": run.trading_days,
        "total_trades": run.total_trades,
        "duration_ms": run.duration_ms,
        "failure_reason": run.failure_reason,
        "created_at": run.created_at,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "failed_at": run.failed_at,
        "is_active": is_active,
    }


def _parse_run_id(run_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(run_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")


# ==================== Routes ====================

@router.post("", response_model=StartRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_run(request: StartRunRequest, manager: RunManagerDep):
    """
    Start a backtest run.

    Returns as soon as the run exists; progress is streamed on ``/ws/runs``.
    """
    try:
        params = RunParams(**request.model_dump())
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[{"loc": err["loc"], "msg": err["msg"]} for err in e.errors()],
        )

    try:
        run_id = await manager.start(params)
    except AppError as e:
        raise app_error_to_http(e)

    return StartRunResponse(run_id=str(run_id))


@router.get("", response_model=list[RunResponse])
async def list_runs(
    db: DbSessionDep,
    manager: RunManagerDep,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    """List runs, newest first."""
    runs = await RunRepository(db).list_recent(limit=limit, offset=offset)
    return [_run_to_response(r, manager.is_running(r.id)) for r in runs]


@router.get("/{run_id}", response_model=RunDetailResponse)
async def get_run(run_id: str, db: DbSessionDep, manager: RunManagerDep):
    """Run record with per-agent results (by rank) and daily snapshots."""
    rid = _parse_run_id(run_id)
    repo = RunRepository(db)
    run = await repo.get_by_id(rid)
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")

    names = {a.id: a.name for a in await AgentRepository(db).list_all()}
    results = [
        AgentResultResponse(
            agent_id=str(r.agent_id),
            agent_name=names.get(r.agent_id, "unknown"),
            final_cash=r.final_cash,
            positions_value=r.positions_value,
            total_value=r.total_value,
            return_pct=r.return_pct,
            positions=r.positions or [],
            trades_count=r.trades_count,
            rank=r.rank,
        )
        for r in await repo.list_results(rid)
    ]
    snapshots = [
        RunSnapshotResponse(
            agent_id=str(s.agent_id),
            trading_date=s.trading_date,
            cash_balance=s.cash_balance,
            positions_value=s.positions_value,
            total_value=s.total_value,
            return_pct=s.return_pct,
            trades_today=s.trades_today,
        )
        for s in await repo.list_snapshots(rid)
    ]

    return RunDetailResponse(
        **_run_to_response(run, manager.is_running(rid)),
        results=results,
        snapshots=snapshots,
    )


@router.post("/{run_id}/cancel")
async def cancel_run(run_id: str, db: DbSessionDep, manager: RunManagerDep):
    """
    Request cancellation of an active run.

    The run stops at the next cycle or day boundary.
    """
    rid = _parse_run_id(run_id)
    run = await RunRepository(db).get_by_id(rid)
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")

    if not manager.cancel(rid):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Run is not active (status {run.status})",
        )

    logger.info(f"Cancellation requested for run {rid}")
    return {"run_id": str(rid), "status": "cancelling"}
