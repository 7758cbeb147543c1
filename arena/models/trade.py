"""
Trade lifecycle models.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TradeSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeStatus(str, Enum):
    """PENDING -> FILLED | REJECTED | CANCELLED"""
    PENDING = "PENDING"
    FILLED = "FILLED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self != TradeStatus.PENDING


@dataclass(frozen=True)
class ExecutionResult:
    """
    Outcome of TradeExecutor.execute.

    ``filled`` is True only for a confirmed fill that was applied to the
    ledger; otherwise ``reason`` explains the rejection.
    """

    filled: bool
    trade_id: Optional[uuid.UUID] = None
    fill_price: Optional[float] = None
    total_value: Optional[float] = None
    cash_after: Optional[float] = None
    reason: str = ""

    @classmethod
    def rejected(cls, reason: str, trade_id: Optional[uuid.UUID] = None) -> "ExecutionResult":
        return cls(filled=False, trade_id=trade_id, reason=reason)
