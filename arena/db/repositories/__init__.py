"""Repository layer for database operations"""

from .agent import AgentRepository
from .decision import DecisionRepository
from .ledger import LedgerRepository
from .market import MarketQuoteRepository, SystemLogRepository
from .run import RunRepository
from .snapshot import SnapshotRepository
from .trade import TradeRepository

__all__ = [
    "AgentRepository",
    "DecisionRepository",
    "LedgerRepository",
    "MarketQuoteRepository",
    "RunRepository",
    "SnapshotRepository",
    "SystemLogRepository",
    "TradeRepository",
]
