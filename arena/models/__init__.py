"""Domain models - decisions, market data, agents, trades, runs"""

from .decision import (
    ActionType,
    AnalysisMetric,
    AnalysisRequest,
    AnalysisRequested,
    DecisionParsed,
    DecisionRecordStatus,
    ParseFailure,
    ParseResult,
    PriorAttempt,
    TradeDecision,
)
from .market import MarketState, NewsArticle, Quote
from .run import RunParams, RunStatus, RunSummary
from .trade import ExecutionResult, TradeSide, TradeStatus

__all__ = [
    "ActionType",
    "AnalysisMetric",
    "AnalysisRequest",
    "AnalysisRequested",
    "DecisionParsed",
    "DecisionRecordStatus",
    "ExecutionResult",
    "MarketState",
    "NewsArticle",
    "ParseFailure",
    "ParseResult",
    "PriorAttempt",
    "Quote",
    "RunParams",
    "RunStatus",
    "RunSummary",
    "TradeDecision",
    "TradeSide",
    "TradeStatus",
]
