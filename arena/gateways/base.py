"""
Collaborator contracts for market data and order placement.

The engine only depends on these interfaces; concrete feeds and brokers are
selected once by the caller (CLI, API lifespan, tests) and injected.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from ..models.market import NewsArticle, Quote
from ..models.trade import TradeSide


class OrderStatus(str, Enum):
    """Broker-reported order status"""
    COMPLETE = "COMPLETE"
    REJECTED = "REJECTED"
    OPEN = "OPEN"
    CANCELLED = "CANCELLED"


class TradeError(Exception):
    """Order placement error with context"""
    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)


@dataclass(frozen=True)
class OrderRequest:
    ticker: str
    side: TradeSide
    shares: int


@dataclass
class OrderResult:
    """Order execution result"""
    order_id: str
    status: OrderStatus
    fill_price: Optional[float] = None
    message: str = ""

    @property
    def is_complete(self) -> bool:
        return self.status == OrderStatus.COMPLETE and bool(self.fill_price)


class MarketFeed(ABC):
    """
    Market data source.

    Usage:
        feed = SimulatedMarketFeed(seed=42)
        quotes = await feed.get_quotes(["RELIANCE", "TCS"])
    """

    name: str = "feed"

    @abstractmethod
    async def get_quotes(self, tickers: list[str]) -> list[Quote]:
        """
        Current quotes for the given tickers.

        Tickers the feed does not know are omitted from the result.

        Raises:
            Exception: the feed is unavailable
        """
        pass

    async def get_news(self, limit: int = 10) -> list[NewsArticle]:
        """Latest market headlines (optional)."""
        return []

    async def get_history(self, ticker: str, days: int = 60) -> list[float]:
        """Daily closes, oldest first (optional)."""
        return []

    def set_clock(self, as_of: datetime) -> None:
        """Point the feed at a simulated time (backtests). No-op for live feeds."""
        return None

    def reset(self) -> None:
        """Rewind simulated state at the start of a run. No-op for live feeds."""
        return None


class BrokerGateway(ABC):
    """
    Order placement.

    Usage:
        broker = SimulatedBroker()
        result = await broker.submit_order(OrderRequest("TCS", TradeSide.BUY, 5))
    """

    name: str = "broker"

    @abstractmethod
    async def submit_order(self, order: OrderRequest) -> OrderResult:
        """
        Submit a market order.

        Raises:
            TradeError: the broker refused or failed to process the order
        """
        pass

    def set_prices(self, prices: dict[str, float]) -> None:
        """Reference prices for the current cycle (simulated brokers fill here)."""
        return None

    def reset(self) -> None:
        """Rewind simulated state at the start of a run. No-op for real brokers."""
        return None
