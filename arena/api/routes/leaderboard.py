"""Leaderboard and per-agent portfolio routes"""

import uuid
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from ...db.repositories.agent import AgentRepository
from ...db.repositories.decision import DecisionRepository
from ...db.repositories.snapshot import SnapshotRepository
from ...db.repositories.trade import TradeRepository
from ...services.valuation import PortfolioValuator
from ..dependencies import DbSessionDep, RuntimeDep

router = APIRouter(tags=["leaderboard"])


# ==================== Response Models ====================

class LeaderboardEntryResponse(BaseModel):
    rank: int
    agent_id: str
    agent_name: str
    provider: str
    cash_balance: float
    positions_value: float
    total_value: float
    return_pct: float
    positions: list[dict]


class HistoryPointResponse(BaseModel):
    created_at: str
    total_value: float
    return_pct: float
    run_id: Optional[str] = None


class AgentHistoryResponse(BaseModel):
    agent_id: str
    agent_name: str
    points: list[HistoryPointResponse]
    max_drawdown_pct: float


class TradeResponse(BaseModel):
    id: str
    ticker: str
    side: str
    shares: int
    price: Optional[float] = None
    total_value: Optional[float] = None
    leverage: int
    status: str
    failure_reason: Optional[str] = None
    created_at: str


class DecisionResponse(BaseModel):
    id: str
    status: str
    action: Optional[str] = None
    ticker: Optional[str] = None
    shares: Optional[int] = None
    reasoning: Optional[str] = None
    attempt: int
    call_attempt: int
    used_tools: bool
    created_at: str


# ==================== Routes ====================

@router.get("/leaderboard", response_model=list[LeaderboardEntryResponse])
async def get_leaderboard(runtime: RuntimeDep):
    """
    Active agents ranked by current total value.

    Prices come from the last persisted quotes so reading the board never
    advances the simulated feed.
    """
    valuator = PortfolioValuator(runtime.session_factory)
    entries = await valuator.leaderboard()
    return [e.to_dict() for e in entries]


@router.get("/agents/{agent_id}/history", response_model=AgentHistoryResponse)
async def get_agent_history(
    agent_id: uuid.UUID,
    db: DbSessionDep,
    run_id: Optional[uuid.UUID] = None,
    limit: Optional[int] = Query(default=None, ge=1, le=5000),
):
    """Valuation snapshots, oldest first, with the max drawdown over them."""
    agent = await AgentRepository(db).get_by_id(agent_id)
    if not agent:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")

    snapshots = await SnapshotRepository(db).list_for_agent(agent_id, run_id=run_id, limit=limit)
    return AgentHistoryResponse(
        agent_id=str(agent.id),
        agent_name=agent.name,
        points=[
            HistoryPointResponse(
                created_at=s.created_at.isoformat(),
                total_value=s.total_value,
                return_pct=s.return_pct,
                run_id=str(s.run_id) if s.run_id else None,
            )
            for s in snapshots
        ],
        max_drawdown_pct=PortfolioValuator.max_drawdown([s.total_value for s in snapshots]),
    )


@router.get("/agents/{agent_id}/trades", response_model=list[TradeResponse])
async def get_agent_trades(
    agent_id: uuid.UUID,
    db: DbSessionDep,
    limit: int = Query(default=50, ge=1, le=500),
):
    """Most recent trades first."""
    trades = await TradeRepository(db).list_recent(agent_id=agent_id, limit=limit)
    return [
        TradeResponse(
            id=str(t.id),
            ticker=t.ticker,
            side=t.side,
            shares=t.shares,
            price=t.price,
            total_value=t.total_value,
            leverage=t.leverage,
            status=t.status,
            failure_reason=t.failure_reason,
            created_at=t.created_at.isoformat(),
        )
        for t in trades
    ]


@router.get("/agents/{agent_id}/decisions", response_model=list[DecisionResponse])
async def get_agent_decisions(
    agent_id: uuid.UUID,
    db: DbSessionDep,
    run_id: Optional[uuid.UUID] = None,
    limit: int = Query(default=50, ge=1, le=500),
):
    """Most recent decision records first."""
    records = await DecisionRepository(db).list_for_agent(agent_id, limit=limit, run_id=run_id)
    return [
        DecisionResponse(
            id=str(d.id),
            status=d.status,
            action=d.action,
            ticker=d.ticker,
            shares=d.shares,
            reasoning=d.reasoning,
            attempt=d.attempt,
            call_attempt=d.call_attempt,
            used_tools=d.used_tools,
            created_at=d.created_at.isoformat(),
        )
        for d in records
    ]
