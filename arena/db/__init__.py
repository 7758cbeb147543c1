"""Database module - SQLAlchemy models and database connection"""

from .database import (
    build_engine,
    build_session_factory,
    get_session_factory,
    init_db,
)
from .models import (
    AgentDB,
    Base,
    DecisionRecordDB,
    LedgerDB,
    PositionDB,
    RunDB,
    TradeDB,
)

__all__ = [
    "AgentDB",
    "Base",
    "DecisionRecordDB",
    "LedgerDB",
    "PositionDB",
    "RunDB",
    "TradeDB",
    "build_engine",
    "build_session_factory",
    "get_session_factory",
    "init_db",
]
