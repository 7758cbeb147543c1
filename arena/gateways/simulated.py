"""
Simulated market feed and broker.

Seeded so that two runs with the same seed see identical prices, news and
fills. Used by default in development, backtests and tests.
"""

import itertools
import logging
import random
from datetime import datetime
from typing import Optional

from ..models.market import NewsArticle, Quote
from .base import BrokerGateway, MarketFeed, OrderRequest, OrderResult, OrderStatus, TradeError

logger = logging.getLogger(__name__)

# NSE large caps: base price and absolute volatility per step
DEFAULT_UNIVERSE: dict[str, tuple[float, float]] = {
    "RELIANCE": (2450.0, 50.0),
    "TCS": (3650.0, 40.0),
    "INFY": (1520.0, 30.0),
    "HDFCBANK": (1640.0, 25.0),
    "ICICIBANK": (1050.0, 20.0),
    "SBIN": (610.0, 15.0),
    "BHARTIARTL": (1550.0, 30.0),
    "ITC": (445.0, 10.0),
    "KOTAKBANK": (1750.0, 35.0),
    "LT": (3500.0, 60.0),
}

DEFAULT_WATCHLIST = list(DEFAULT_UNIVERSE)

_HEADLINES = (
    ("Reliance Industries reports strong Q4 results, beats estimates",
     "RIL posts highest-ever quarterly profit driven by retail and telecom growth", ["RELIANCE"]),
    ("Indian IT sector sees 15% growth in exports this quarter",
     "TCS and Infosys lead the charge with strong digital transformation deals", ["TCS", "INFY"]),
    ("HDFC Bank completes merger, becomes largest private bank",
     "Combined entity now holds over 20 lakh crore in assets", ["HDFCBANK"]),
    ("Nifty 50 crosses 22,000 mark on strong FII inflows",
     "Foreign institutional investors pour $2 billion into Indian equities", []),
    ("SEBI announces new regulations for algo trading platforms",
     "New guidelines aim to improve market transparency and investor protection", []),
    ("India's GDP growth projected at 7.5% for FY2024-25",
     "Strong consumption and investment drive economic expansion", []),
    ("Bharti Airtel 5G rollout reaches 100 cities across India",
     "Telecom giant reports 50% increase in data consumption", ["BHARTIARTL"]),
    ("ITC plans major expansion in FMCG and hotel businesses",
     "Diversification strategy to reduce tobacco dependency", ["ITC"]),
)


class SimulatedMarketFeed(MarketFeed):
    """
    Seeded random-walk feed.

    Each ``get_quotes`` call advances every requested ticker by one step:
    a move of -2%..+2% plus a small volatility term, floored at 80% of the
    base price.

    Usage:
        feed = SimulatedMarketFeed(seed=7)
        quotes = await feed.get_quotes(["TCS"])
    """

    name = "simulated"

    def __init__(
        self,
        seed: int = 42,
        universe: Optional[dict[str, tuple[float, float]]] = None,
        history_length: int = 200,
    ):
        self.seed = seed
        self.universe = dict(universe or DEFAULT_UNIVERSE)
        self.history_length = history_length
        self._rng = random.Random(seed)
        self._prices: dict[str, float] = {t: base for t, (base, _) in self.universe.items()}
        self._history: dict[str, list[float]] = {t: [] for t in self.universe}
        self._as_of: Optional[datetime] = None

    def set_clock(self, as_of: datetime) -> None:
        self._as_of = as_of

    def reset(self) -> None:
        """Back to base prices and the initial random state."""
        self._rng = random.Random(self.seed)
        self._prices = {t: base for t, (base, _) in self.universe.items()}
        self._history = {t: [] for t in self.universe}

    async def get_quotes(self, tickers: list[str]) -> list[Quote]:
        quotes: list[Quote] = []
        for ticker in tickers:
            config = self.universe.get(ticker)
            if config is None:
                logger.warning(f"Simulated data not available for {ticker}")
                continue

            base, volatility = config
            previous = self._prices[ticker]
            change_pct = (self._rng.random() - 0.5) * 4
            change = previous * change_pct / 100
            noise = (self._rng.random() - 0.5) * (volatility / 10)
            price = max(previous + change + noise, base * 0.8)
            volume = int(5_000_000 * (0.5 + self._rng.random()))

            self._prices[ticker] = price
            history = self._history[ticker]
            history.append(price)
            if len(history) > self.history_length:
                del history[: len(history) - self.history_length]

            quotes.append(
                Quote(
                    ticker=ticker,
                    price=round(price, 2),
                    change=round(change, 2),
                    change_pct=round(change_pct, 2),
                    volume=volume,
                    timestamp=self._as_of,
                )
            )
        return quotes

    async def get_news(self, limit: int = 10) -> list[NewsArticle]:
        headlines = list(_HEADLINES)
        self._rng.shuffle(headlines)
        return [
            NewsArticle(
                title=title,
                summary=summary,
                source="simulated",
                tickers=tickers,
                published_at=self._as_of,
            )
            for title, summary, tickers in headlines[:limit]
        ]

    async def get_history(self, ticker: str, days: int = 60) -> list[float]:
        return [round(p, 2) for p in self._history.get(ticker, [])[-days:]]


class SimulatedBroker(BrokerGateway):
    """
    Fills market orders at the cycle's reference price.

    ``rejection_rate`` randomly rejects orders (seeded) to exercise the
    rejection path; it defaults to 0 so backtests are fully deterministic.

    Usage:
        broker = SimulatedBroker(seed=1)
        broker.set_prices({"TCS": 3650.0})
        result = await broker.submit_order(OrderRequest("TCS", TradeSide.BUY, 5))
    """

    name = "simulated"

    def __init__(
        self,
        seed: int = 42,
        rejection_rate: float = 0.0,
        slippage: float = 0.0,
    ):
        if not 0 <= rejection_rate <= 1:
            raise ValueError("rejection_rate must be in [0, 1]")
        self.seed = seed
        self._rng = random.Random(seed)
        self.rejection_rate = rejection_rate
        self.slippage = slippage
        self._prices: dict[str, float] = {}
        self._counter = itertools.count(1)

    def set_prices(self, prices: dict[str, float]) -> None:
        self._prices.update(prices)

    def reset(self) -> None:
        self._rng = random.Random(self.seed)
        self._prices = {}
        self._counter = itertools.count(1)

    async def submit_order(self, order: OrderRequest) -> OrderResult:
        order_id = f"SIM-{next(self._counter)}"
        price = self._prices.get(order.ticker)
        if price is None:
            raise TradeError(
                f"No reference price for {order.ticker}",
                code="NO_PRICE",
                details={"ticker": order.ticker},
            )

        if self.rejection_rate and self._rng.random() < self.rejection_rate:
            return OrderResult(order_id=order_id, status=OrderStatus.REJECTED, message="Simulated rejection")

        direction = 1 if order.side.value == "BUY" else -1
        fill_price = round(price * (1 + direction * self.slippage), 2)
        return OrderResult(order_id=order_id, status=OrderStatus.COMPLETE, fill_price=fill_price)
