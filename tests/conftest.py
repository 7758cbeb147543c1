"""
Pytest configuration and fixtures for APEX ARENA tests.
"""

import json
from datetime import UTC, datetime
from typing import AsyncGenerator, Optional, Union

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from arena.core.config import Settings
from arena.db.database import build_session_factory
from arena.db.models import Base
from arena.db.repositories import AgentRepository, LedgerRepository
from arena.gateways.base import MarketFeed
from arena.models.agent import AgentProfile, LedgerState
from arena.models.market import MarketState, Quote
from arena.services.ai.base import DecisionProvider
from arena.services.events import EventSink, EventType

# One shared in-memory SQLite connection per test
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

CAPITAL = 100000.0
PRICES = {"RELIANCE": 2450.0, "TCS": 3650.0}


# ==================== Stubs ====================


def decision_json(
    action: str,
    ticker: Optional[str] = None,
    shares: int = 0,
    leverage: int = 1,
    reasoning: str = "test",
) -> str:
    """Tool-aware decision envelope as an agent would send it."""
    return json.dumps(
        {
            "type": "decision",
            "action": action,
            "ticker": ticker,
            "shares": shares,
            "leverage": leverage,
            "reasoning": reasoning,
        }
    )


HOLD = decision_json("HOLD", reasoning="nothing to do")


class ScriptedProvider(DecisionProvider):
    """
    Replays a script of responses; an Exception entry is raised instead.

    Once the script is exhausted every call returns HOLD.
    """

    def __init__(self, *responses: Union[str, Exception]):
        self.responses = list(responses)
        self.contexts: list[str] = []

    async def complete(self, context: str) -> str:
        self.contexts.append(context)
        if not self.responses:
            return HOLD
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    @property
    def calls(self) -> int:
        return len(self.contexts)


class StaticFeed(MarketFeed):
    """Fixed prices, optionally moved by ``step`` on every call."""

    name = "static"

    def __init__(self, prices: Optional[dict[str, float]] = None, step: float = 0.0):
        self.base = dict(prices or PRICES)
        self.step = step
        self.calls = 0

    async def get_quotes(self, tickers: list[str]) -> list[Quote]:
        self.calls += 1
        bump = self.step * (self.calls - 1)
        return [
            Quote(ticker=t, price=self.base[t] + bump)
            for t in tickers
            if t in self.base
        ]

    def reset(self) -> None:
        self.calls = 0


class FailingFeed(MarketFeed):
    """Feed that is always down."""

    name = "failing"

    async def get_quotes(self, tickers: list[str]) -> list[Quote]:
        raise ConnectionError("feed unreachable")


class RecordingSink(EventSink):
    """Keeps every published event in order."""

    def __init__(self):
        self.events: list[tuple[EventType, dict]] = []

    def publish(self, event_type, payload=None) -> None:
        self.events.append((EventType(event_type), payload or {}))

    def of_type(self, event_type: EventType) -> list[dict]:
        return [p for t, p in self.events if t == event_type]

    @property
    def types(self) -> list[EventType]:
        return [t for t, _ in self.events]


class RecordingSleep:
    """Drop-in for asyncio.sleep that returns immediately."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def market_state(prices: Optional[dict[str, float]] = None, features=None) -> MarketState:
    prices = prices or PRICES
    return MarketState(
        quotes={t: Quote(ticker=t, price=p) for t, p in prices.items()},
        as_of=datetime(2024, 1, 2, 10, 0, tzinfo=UTC),
        features=features,
    )


# ==================== Database ====================


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    """Settings that never touch the environment's database or API keys."""
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        use_mock_services=True,
        market_holidays=[],
    )


async def create_agent(
    session_factory: async_sessionmaker[AsyncSession],
    name: str,
    provider: str = "mock",
    watchlist: Optional[list[str]] = None,
    **kwargs,
) -> AgentProfile:
    async with session_factory() as session, session.begin():
        agent = await AgentRepository(session).create(
            name=name,
            provider=provider,
            watchlist=watchlist or list(PRICES),
            initial_capital=kwargs.pop("initial_capital", CAPITAL),
            **kwargs,
        )
        return AgentProfile.from_db(agent)


async def load_ledger(
    session_factory: async_sessionmaker[AsyncSession], agent: AgentProfile
) -> LedgerState:
    async with session_factory() as session:
        ledger = await LedgerRepository(session).get_by_agent(agent.id)
        return LedgerState.from_db(ledger)


@pytest_asyncio.fixture
async def alpha(session_factory) -> AgentProfile:
    """First agent (sort_order 1)."""
    return await create_agent(session_factory, "Alpha", allowed_leverage=[1, 5, 10, 20])


@pytest_asyncio.fixture
async def beta(session_factory, alpha) -> AgentProfile:
    """Second agent (sort_order 2)."""
    return await create_agent(session_factory, "Beta", allowed_leverage=[1, 5, 10, 20])


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()
