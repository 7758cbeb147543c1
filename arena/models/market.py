"""
Market data models shared by feeds, the cycle, and the decision engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from ..services.market_features import MarketFeatureService


class Quote(BaseModel):
    """Current price/volume for one ticker"""
    ticker: str
    price: float = Field(gt=0)
    change: float = 0.0
    change_pct: float = 0.0
    volume: int = 0
    timestamp: Optional[datetime] = None


class NewsArticle(BaseModel):
    """Market news headline"""
    title: str
    summary: str = ""
    source: str = ""
    url: str = ""
    published_at: Optional[datetime] = None
    tickers: list[str] = Field(default_factory=list)


@dataclass
class MarketState:
    """
    Market snapshot fetched once per cycle and shared by every agent.

    ``features`` (optional) holds the rolling history used to enrich the
    context and to answer tool-use analysis requests.
    """

    quotes: dict[str, Quote]
    as_of: datetime
    news: list[NewsArticle] = field(default_factory=list)
    features: Optional["MarketFeatureService"] = None
    stale_tickers: list[str] = field(default_factory=list)

    @property
    def prices(self) -> dict[str, float]:
        return {ticker: q.price for ticker, q in self.quotes.items()}

    def price(self, ticker: str) -> Optional[float]:
        quote = self.quotes.get(ticker)
        return quote.price if quote else None
