"""
SQLAlchemy ORM Models

Database schema for the APEX ARENA trading competition.

Architecture:
- Agent: one LLM-driven competitor with its risk limits and watchlist
- Ledger: the agent's isolated cash + positions (one per agent)
- Trade / DecisionRecord / ValuationSnapshot: per-cycle audit trail
- Run / RunAgentResult / RunSnapshot: multi-day backtest bookkeeping
"""

import uuid
from datetime import UTC, date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models"""
    pass


class AgentDB(Base):
    """
    Trading agent (competitor).

    Risk configuration is immutable during a run; every change made through
    the repository bumps ``config_version``. Only ``is_active`` may toggle
    while a run is in progress.
    """
    __tablename__ = "agents"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    model: Mapped[str] = mapped_column(String(100), default="")

    # Insertion order: deterministic processing order and rank tie-breaker
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Risk configuration
    watchlist: Mapped[list] = mapped_column(JSON, default=list)
    max_position_size: Mapped[float] = mapped_column(Float, default=0.3)
    max_trades_per_day: Mapped[int] = mapped_column(Integer, default=10)
    allowed_leverage: Mapped[list] = mapped_column(JSON, default=lambda: [1])
    config_version: Mapped[int] = mapped_column(Integer, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False
    )

    ledger: Mapped[Optional["LedgerDB"]] = relationship(
        back_populates="agent",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Agent {self.name} ({self.provider})>"


class LedgerDB(Base):
    """
    Per-agent cash balance and position set.

    Cash may only go below zero when a leveraged BUY was accepted, and never
    below ``-(leverage - 1) * initial_capital``.
    """
    __tablename__ = "ledgers"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    cash_balance: Mapped[float] = mapped_column(Float, nullable=False)
    initial_capital: Mapped[float] = mapped_column(Float, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False
    )

    agent: Mapped["AgentDB"] = relationship(back_populates="ledger")
    positions: Mapped[list["PositionDB"]] = relationship(
        back_populates="ledger",
        cascade="all, delete-orphan",
        order_by="PositionDB.ticker",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Ledger agent={self.agent_id} cash={self.cash_balance:.2f}>"


class PositionDB(Base):
    """Open position. Shares are always > 0; a fully sold position is deleted."""
    __tablename__ = "positions"
    __table_args__ = (
        UniqueConstraint("ledger_id", "ticker", name="uq_position_ledger_ticker"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    ledger_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("ledgers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    ticker: Mapped[str] = mapped_column(String(30), nullable=False)
    shares: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_cost: Mapped[float] = mapped_column(Float, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False
    )

    ledger: Mapped["LedgerDB"] = relationship(back_populates="positions")

    def __repr__(self) -> str:
        return f"<Position {self.ticker} x{self.shares} @ {self.avg_cost:.2f}>"


class DecisionRecordDB(Base):
    """
    One DecisionEngine provider attempt (append-only).

    Failed attempts are recorded too, with ``status`` set to
    ``parse_failed`` or ``provider_error``.
    """
    __tablename__ = "decision_records"
    __table_args__ = (
        Index("ix_decision_records_agent_created", "agent_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
    )
    run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    attempt: Mapped[int] = mapped_column(Integer, default=1)  # agent-level
    call_attempt: Mapped[int] = mapped_column(Integer, default=1)  # provider-level
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    used_tools: Mapped[bool] = mapped_column(Boolean, default=False)

    action: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    ticker: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    shares: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    leverage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reasoning: Mapped[str] = mapped_column(Text, default="")

    prompt: Mapped[str] = mapped_column(Text, default="")
    raw_response: Mapped[str] = mapped_column(Text, default="")
    parsed: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )


class TradeDB(Base):
    """
    Trade lifecycle: PENDING -> FILLED | REJECTED | CANCELLED.

    Created PENDING before submission; the terminal status is written once.
    """
    __tablename__ = "trades"
    __table_args__ = (
        Index("ix_trades_agent_date", "agent_id", "trade_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
    )
    run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    decision_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("decision_records.id", ondelete="SET NULL"),
        nullable=True,
    )

    ticker: Mapped[str] = mapped_column(String(30), nullable=False)
    side: Mapped[str] = mapped_column(String(10), nullable=False)  # BUY/SELL
    shares: Mapped[int] = mapped_column(Integer, nullable=False)
    leverage: Mapped[int] = mapped_column(Integer, default=1)
    quote_price: Mapped[float] = mapped_column(Float, nullable=False)
    price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # fill
    total_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", index=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    broker_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Simulated trading day, used for per-day trade limits
    trade_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )
    executed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    # Ledger state around the fill
    cash_after: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    portfolio_value_after: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ledger_before: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    ledger_after: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<Trade {self.side} {self.shares} {self.ticker} {self.status}>"


class ValuationSnapshotDB(Base):
    """Point-in-time valuation of a ledger; written after every processed tick."""
    __tablename__ = "valuation_snapshots"
    __table_args__ = (
        Index("ix_valuation_snapshots_agent_created", "agent_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
    )
    run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    cash_balance: Mapped[float] = mapped_column(Float, nullable=False)
    positions_value: Mapped[float] = mapped_column(Float, nullable=False)
    total_value: Mapped[float] = mapped_column(Float, nullable=False)
    return_pct: Mapped[float] = mapped_column(Float, nullable=False)
    positions: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )


class RunDB(Base):
    """
    Backtest run over a date range.

    Status: PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED (one-way).
    """
    __tablename__ = "runs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    interval_minutes: Mapped[int] = mapped_column(Integer, default=1440)
    params: Mapped[dict] = mapped_column(JSON, default=dict)

    status: Mapped[str] = mapped_column(String(20), default="PENDING", index=True)
    planned_trading_days: Mapped[int] = mapped_column(Integer, default=0)
    trading_days: Mapped[int] = mapped_column(Integer, default=0)
    total_trades: Mapped[int] = mapped_column(Integer, default=0)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    failed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    results: Mapped[list["RunAgentResultDB"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Run {self.id} {self.start_date}..{self.end_date} {self.status}>"


class RunAgentResultDB(Base):
    """Per-agent result for a run; upserted after every trading day."""
    __tablename__ = "run_agent_results"
    __table_args__ = (
        UniqueConstraint("run_id", "agent_id", name="uq_run_agent_result"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
    )
    final_cash: Mapped[float] = mapped_column(Float, nullable=False)
    positions_value: Mapped[float] = mapped_column(Float, nullable=False)
    total_value: Mapped[float] = mapped_column(Float, nullable=False)
    return_pct: Mapped[float] = mapped_column(Float, nullable=False)
    positions: Mapped[list] = mapped_column(JSON, default=list)
    trades_count: Mapped[int] = mapped_column(Integer, default=0)
    rank: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False
    )

    run: Mapped["RunDB"] = relationship(back_populates="results")


class RunSnapshotDB(Base):
    """Per-agent, per-day valuation row for a run (append-only)."""
    __tablename__ = "run_snapshots"
    __table_args__ = (
        Index("ix_run_snapshots_run_date", "run_id", "trading_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
    )
    trading_date: Mapped[date] = mapped_column(Date, nullable=False)
    cash_balance: Mapped[float] = mapped_column(Float, nullable=False)
    positions_value: Mapped[float] = mapped_column(Float, nullable=False)
    total_value: Mapped[float] = mapped_column(Float, nullable=False)
    return_pct: Mapped[float] = mapped_column(Float, nullable=False)
    trades_today: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )


class MarketQuoteDB(Base):
    """Last-known quote per ticker; the final fallback of the price chain."""
    __tablename__ = "market_quotes"

    ticker: Mapped[str] = mapped_column(String(30), primary_key=True)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    change: Mapped[float] = mapped_column(Float, default=0.0)
    change_pct: Mapped[float] = mapped_column(Float, default=0.0)
    volume: Mapped[int] = mapped_column(Integer, default=0)
    as_of: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )


class SystemLogDB(Base):
    """Operational log rows (skipped cycles, cycle failures, agent errors)."""
    __tablename__ = "system_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    level: Mapped[str] = mapped_column(String(10), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )
