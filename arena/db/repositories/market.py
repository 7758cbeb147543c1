"""Market quote and system log repositories"""

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ...models.market import Quote
from ..models import MarketQuoteDB, SystemLogDB


class MarketQuoteRepository:
    """Last-known quote per ticker"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert_many(self, quotes: Iterable[Quote], as_of: datetime) -> int:
        """Store the latest quote for each ticker; returns rows written."""
        quotes = list(quotes)
        if not quotes:
            return 0

        existing = {
            row.ticker: row
            for row in (
                await self.session.execute(
                    select(MarketQuoteDB).where(
                        MarketQuoteDB.ticker.in_([q.ticker for q in quotes])
                    )
                )
            ).scalars()
        }
        for quote in quotes:
            row = existing.get(quote.ticker)
            if row is None:
                row = MarketQuoteDB(ticker=quote.ticker)
                self.session.add(row)
            row.price = quote.price
            row.change = quote.change
            row.change_pct = quote.change_pct
            row.volume = quote.volume
            row.as_of = quote.timestamp or as_of
        await self.session.flush()
        return len(quotes)

    async def get_quotes(self, tickers: Iterable[str]) -> dict[str, Quote]:
        result = await self.session.execute(
            select(MarketQuoteDB).where(MarketQuoteDB.ticker.in_(list(tickers)))
        )
        return {
            row.ticker: Quote(
                ticker=row.ticker,
                price=row.price,
                change=row.change,
                change_pct=row.change_pct,
                volume=row.volume,
                timestamp=row.as_of,
            )
            for row in result.scalars()
        }

    async def get_price(self, ticker: str) -> Optional[float]:
        row = await self.session.get(MarketQuoteDB, ticker)
        return row.price if row else None


class SystemLogRepository:
    """Operational log rows"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(
        self,
        level: str,
        message: str,
        context: Optional[dict] = None,
    ) -> SystemLogDB:
        entry = SystemLogDB(level=level.upper(), message=message, context=context)
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_recent(self, limit: int = 100) -> list[SystemLogDB]:
        result = await self.session.execute(
            select(SystemLogDB).order_by(SystemLogDB.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())
