"""
Run lifecycle models.
"""

from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class RunStatus(str, Enum):
    """PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED"""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    def can_transition_to(self, target: "RunStatus") -> bool:
        return target in _TRANSITIONS.get(self, ())


_TERMINAL = (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)

_TRANSITIONS: dict[RunStatus, tuple[RunStatus, ...]] = {
    # A run may fail or be cancelled before it ever starts its loop
    RunStatus.PENDING: (RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED),
    RunStatus.RUNNING: _TERMINAL,
}


class RunParams(BaseModel):
    """Parameters of a backtest run"""
    start_date: date
    end_date: date
    interval_minutes: int = Field(
        default=1440,
        ge=1,
        le=1440,
        description="Minutes between cycles; 1440 means one cycle per day"
    )
    enriched: bool = True
    use_tools: bool = True
    reset_ledgers: bool = Field(
        default=True,
        description="Restore every ledger to its initial capital before the first day"
    )

    @model_validator(mode="after")
    def validate_range(self) -> "RunParams":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class RunSummary(BaseModel):
    """Counters reported when a run finishes"""
    trading_days: int
    planned_trading_days: int
    total_trades: int
    start_date: date
    end_date: date
    duration_ms: Optional[int] = None

    def to_payload(self) -> dict:
        return {
            "trading_days": self.trading_days,
            "planned_trading_days": self.planned_trading_days,
            "total_trades": self.total_trades,
            "date_range": {
                "start": self.start_date.isoformat(),
                "end": self.end_date.isoformat(),
            },
            "duration_ms": self.duration_ms,
        }
