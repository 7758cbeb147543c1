"""
Database seed data for initial setup.

Creates the default competitors, each with a fresh ledger.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, get_settings
from ..gateways.simulated import DEFAULT_WATCHLIST
from .repositories import AgentRepository

logger = logging.getLogger(__name__)

DEFAULT_AGENTS = (
    {"name": "Gemini Pro Trader", "provider": "openrouter-gemini"},
    {"name": "GPT-4 Trader", "provider": "openai"},
    {"name": "Claude Sonnet Trader", "provider": "openrouter-claude"},
)


async def seed_agents(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
    agents: tuple[dict, ...] = DEFAULT_AGENTS,
) -> list[str]:
    """
    Create the default agents if they do not exist yet.

    Returns:
        Names of the agents that were created
    """
    settings = settings or get_settings()
    created: list[str] = []

    async with session_factory() as session, session.begin():
        repo = AgentRepository(session)
        for entry in agents:
            if await repo.get_by_name(entry["name"]):
                logger.info(f"Seed: agent already exists: {entry['name']}")
                continue

            await repo.create(
                name=entry["name"],
                provider=entry["provider"],
                model=entry.get("model") or settings.provider_models.get(entry["provider"], ""),
                watchlist=entry.get("watchlist", DEFAULT_WATCHLIST),
                initial_capital=settings.initial_capital,
                max_position_size=settings.default_max_position_size,
                max_trades_per_day=settings.default_max_trades_per_day,
                allowed_leverage=entry.get("allowed_leverage", settings.leverage_tiers),
            )
            created.append(entry["name"])
            logger.info(f"Seed: created agent {entry['name']}")

    return created
