"""Backtest runs - trading calendar and cancellation (RunOrchestrator is in ``.orchestrator``)"""

from .cancellation import CancellationToken
from .schedule import (
    count_trading_days,
    cycle_times,
    cycles_per_day,
    is_market_open,
    is_trading_day,
    iter_trading_days,
)

__all__ = [
    "CancellationToken",
    "count_trading_days",
    "cycle_times",
    "cycles_per_day",
    "is_market_open",
    "is_trading_day",
    "iter_trading_days",
]
