"""
Decision models for agent trading decisions.

The parser never raises on bad agent output: it returns one of the typed
results below so the decision engine can branch on the variant.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_LEVERAGE = 20


class ActionType(str, Enum):
    """Trading action types"""
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class TradeDecision(BaseModel):
    """
    A single decision proposed by an agent for one cycle.

    HOLD decisions are normalized to ``ticker=None, shares=0``.
    """
    action: ActionType
    ticker: Optional[str] = None
    shares: int = Field(default=0, ge=0)
    reasoning: str = ""
    leverage: int = Field(
        default=1,
        ge=1,
        le=MAX_LEVERAGE,
        description="Leverage multiplier requested for a BUY"
    )

    @field_validator("ticker")
    @classmethod
    def normalize_ticker(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().upper()
        return v or None

    @model_validator(mode="after")
    def normalize_hold(self) -> "TradeDecision":
        if self.action == ActionType.HOLD:
            self.ticker = None
            self.shares = 0
            self.leverage = 1
        return self

    @classmethod
    def hold(cls, reasoning: str) -> "TradeDecision":
        """Build a HOLD decision with the given reasoning."""
        return cls(action=ActionType.HOLD, reasoning=reasoning)

    @property
    def is_hold(self) -> bool:
        return self.action == ActionType.HOLD

    def describe(self) -> str:
        """Short human-readable form used in logs and revision feedback."""
        if self.is_hold:
            return "HOLD"
        lev = f" @ {self.leverage}x" if self.leverage > 1 else ""
        return f"{self.action.value} {self.shares} {self.ticker}{lev}"


class DecisionRecordStatus(str, Enum):
    """Status of one persisted decision attempt"""
    PARSED = "parsed"
    TOOL_REQUEST = "tool_request"
    PARSE_FAILED = "parse_failed"
    PROVIDER_ERROR = "provider_error"
    FALLBACK = "fallback"


class AnalysisMetric(str, Enum):
    """Supplementary analysis an agent may request before deciding"""
    HISTORY_30D = "history_30d"
    INDICATORS = "indicators"


class AnalysisRequest(BaseModel):
    """Tool-use request: compute metrics for tickers, then ask again."""
    tickers: list[str] = Field(min_length=1)
    metrics: list[AnalysisMetric] = Field(min_length=1)

    @field_validator("tickers")
    @classmethod
    def normalize_tickers(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for t in v:
            t = str(t).strip().upper()
            if t and t not in seen:
                seen.append(t)
        if not seen:
            raise ValueError("tickers must not be empty")
        return seen


# ==================== Parse results ====================


@dataclass(frozen=True)
class DecisionParsed:
    """The response carried a valid decision."""
    decision: TradeDecision


@dataclass(frozen=True)
class AnalysisRequested:
    """The response asked for supplementary analysis instead of deciding."""
    request: AnalysisRequest


@dataclass(frozen=True)
class ParseFailure:
    """The response could not be turned into a decision or a request."""
    reason: str
    raw_response: str = ""


ParseResult = Union[DecisionParsed, AnalysisRequested, ParseFailure]


@dataclass(frozen=True)
class PriorAttempt:
    """A rejected decision fed back to the agent for revision."""
    decision: TradeDecision
    reason: str
    attempt: int = 1
