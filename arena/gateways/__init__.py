"""Market data and brokerage gateways"""

from .base import (
    BrokerGateway,
    MarketFeed,
    OrderRequest,
    OrderResult,
    OrderStatus,
    TradeError,
)
from .simulated import DEFAULT_WATCHLIST, SimulatedBroker, SimulatedMarketFeed

__all__ = [
    "BrokerGateway",
    "DEFAULT_WATCHLIST",
    "MarketFeed",
    "OrderRequest",
    "OrderResult",
    "OrderStatus",
    "SimulatedBroker",
    "SimulatedMarketFeed",
    "TradeError",
]
