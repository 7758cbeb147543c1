"""
Market feature service.

Keeps a bounded per-ticker price history (one point per cycle) and derives
the indicators used to enrich agent context and answer analysis requests.
Pure Python, no numeric dependencies.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from ..models.decision import AnalysisMetric, AnalysisRequest
from ..models.market import Quote

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryPoint:
    price: float
    volume: int
    as_of: Optional[datetime] = None


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Indicators for one ticker; None while history is too short"""

    ticker: str
    price: float
    volume: int
    change_pct: Optional[float] = None
    return_5d: Optional[float] = None
    sma20: Optional[float] = None
    sma50: Optional[float] = None
    rsi14: Optional[float] = None
    volatility20: Optional[float] = None  # stdev of % returns
    atr20: Optional[float] = None  # mean abs % return scaled by price

    def describe(self) -> str:
        """One-line indicator summary used in analysis blocks."""
        return (
            f"SMA20={_fmt_int(self.sma20)}, SMA50={_fmt_int(self.sma50)}, "
            f"RSI14={_fmt(self.rsi14)}, Vol20={_fmt(self.volatility20, '%')}"
        )


class MarketFeatureService:
    """
    Rolling history and indicator computation.

    Usage:
        features = MarketFeatureService(max_len=200)
        features.update(quotes, as_of)
        snapshot = features.snapshot(["RELIANCE"])
    """

    def __init__(self, max_len: int = 200):
        self.max_len = max_len
        self._history: dict[str, deque[HistoryPoint]] = {}

    def update(self, quotes: Iterable[Quote], as_of: Optional[datetime] = None) -> None:
        """Append one point per quote."""
        for quote in quotes:
            series = self._history.setdefault(quote.ticker, deque(maxlen=self.max_len))
            series.append(HistoryPoint(quote.price, quote.volume, as_of or quote.timestamp))

    def seed_history(self, ticker: str, closes: list[float]) -> None:
        """Prefill a ticker's history (oldest first), e.g. from a feed's daily closes."""
        series = self._history.setdefault(ticker, deque(maxlen=self.max_len))
        for close in closes:
            series.append(HistoryPoint(close, 0))

    def history(self, ticker: str, last_n: int = 30) -> list[HistoryPoint]:
        series = self._history.get(ticker)
        if not series:
            return []
        return list(series)[-last_n:]

    def clear(self) -> None:
        self._history.clear()

    def snapshot(self, tickers: Iterable[str]) -> list[IndicatorSnapshot]:
        return [self._indicators(t) for t in tickers]

    def _indicators(self, ticker: str) -> IndicatorSnapshot:
        points = list(self._history.get(ticker, ()))
        n = len(points)
        if n == 0:
            return IndicatorSnapshot(ticker=ticker, price=0.0, volume=0)

        prices = [p.price for p in points]
        price = prices[-1]
        returns = [
            (prices[i] - prices[i - 1]) / prices[i - 1] * 100
            for i in range(1, n)
            if prices[i - 1]
        ]
        last20 = returns[-20:]

        return IndicatorSnapshot(
            ticker=ticker,
            price=price,
            volume=points[-1].volume,
            change_pct=returns[-1] if returns else None,
            return_5d=(price / prices[-6] - 1) * 100 if n > 5 else None,
            sma20=_sma(prices, 20),
            sma50=_sma(prices, 50),
            rsi14=_rsi(returns, 14),
            volatility20=_std(last20),
            atr20=(sum(abs(r) for r in last20) / len(last20)) * price / 100 if last20 else None,
        )

    def analysis_blocks(self, request: AnalysisRequest) -> list[str]:
        """
        Render the analysis an agent asked for.

        ``history_30d`` lists rounded closes; ``indicators`` lists the
        indicator summary for each ticker.
        """
        blocks: list[str] = []
        if AnalysisMetric.HISTORY_30D in request.metrics:
            for ticker in request.tickers:
                series = ", ".join(str(round(p.price)) for p in self.history(ticker, 30))
                blocks.append(f"- {ticker} history_30d (close): {series or 'n/a'}")
        if AnalysisMetric.INDICATORS in request.metrics:
            for snap in self.snapshot(request.tickers):
                blocks.append(f"- {snap.ticker} indicators: {snap.describe()}")
        return blocks


def _sma(prices: list[float], k: int) -> Optional[float]:
    if len(prices) < k:
        return None
    return sum(prices[-k:]) / k


def _rsi(returns_pct: list[float], period: int) -> Optional[float]:
    if len(returns_pct) < period:
        return None
    window = returns_pct[-period:]
    gains = [r for r in window if r >= 0]
    losses = [-r for r in window if r < 0]
    avg_gain = sum(gains) / len(gains) if gains else 0.00001
    avg_loss = sum(losses) / len(losses) if losses else 0.00001
    rs = avg_gain / avg_loss
    return 100 - 100 / (1 + rs)


def _std(data: list[float]) -> Optional[float]:
    if not data:
        return None
    mean = sum(data) / len(data)
    return math.sqrt(sum((x - mean) ** 2 for x in data) / len(data))


def _fmt(value: Optional[float], suffix: str = "") -> str:
    return f"{value:.1f}{suffix}" if value is not None else "-"


def _fmt_int(value: Optional[float]) -> str:
    return str(round(value)) if value is not None else "-"
