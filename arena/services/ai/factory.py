"""
Decision provider factory.

Maps an agent's provider tag to a concrete client. The registry is built
once by the caller and injected into the decision engine.
"""

import logging
from typing import TYPE_CHECKING, Callable, Optional

from ...core.config import Settings, get_settings
from .base import AIClientConfig, AIClientError, DecisionProvider
from .mock_client import MockDecisionProvider
from .openai_client import OpenAIClient

if TYPE_CHECKING:
    from ...models.agent import AgentProfile

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


def create_client(
    provider_tag: str,
    settings: Optional[Settings] = None,
    model: str = "",
) -> DecisionProvider:
    """
    Create a vendor client for a provider tag.

    Tags starting with ``openrouter`` use the OpenRouter endpoint unless
    ``OPENAI_BASE_URL`` overrides it; ``openai`` uses the official API.

    Raises:
        AIClientError: unknown tag or missing credentials
    """
    settings = settings or get_settings()
    model = model or settings.provider_models.get(provider_tag, "")
    if not model:
        raise AIClientError(f"No model configured for provider '{provider_tag}'")

    if provider_tag == "openai":
        base_url = settings.openai_base_url or None
    elif provider_tag.startswith("openrouter"):
        base_url = settings.openai_base_url or OPENROUTER_BASE_URL
    else:
        raise AIClientError(f"Unknown provider: {provider_tag}")

    config = AIClientConfig(
        api_key=settings.openai_api_key,
        model=model,
        base_url=base_url,
        max_tokens=settings.llm_max_tokens,
        temperature=settings.llm_temperature,
        timeout=settings.llm_timeout,
    )
    return OpenAIClient(config)


class ProviderRegistry:
    """
    Resolves the decision provider for an agent.

    Lookup order: explicit registration by agent name, then by provider
    tag, then the factory (result cached per agent).

    Usage:
        registry = ProviderRegistry.from_settings(settings)
        provider = registry.resolve(agent)
    """

    def __init__(self, factory: Optional[Callable[["AgentProfile"], DecisionProvider]] = None):
        self._factory = factory
        self._by_key: dict[str, DecisionProvider] = {}
        self._cache: dict[str, DecisionProvider] = {}

    @classmethod
    def single(cls, provider: DecisionProvider) -> "ProviderRegistry":
        """Every agent uses the same provider."""
        return cls(factory=lambda agent: provider)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ProviderRegistry":
        """Mock providers (seeded per agent) or real clients, chosen once."""
        settings = settings or get_settings()

        if settings.use_mock_services:
            logger.info("Using mock decision providers")
            return cls(
                factory=lambda agent: MockDecisionProvider(
                    seed=settings.mock_seed + agent.sort_order
                )
            )

        return cls(
            factory=lambda agent: create_client(agent.provider, settings, agent.model)
        )

    def register(self, key: str, provider: DecisionProvider) -> None:
        """Register a provider for an agent name or a provider tag."""
        self._by_key[key] = provider

    def resolve(self, agent: "AgentProfile") -> DecisionProvider:
        if agent.name in self._by_key:
            return self._by_key[agent.name]
        if agent.provider in self._by_key:
            return self._by_key[agent.provider]

        cache_key = str(agent.id)
        if cache_key not in self._cache:
            if self._factory is None:
                raise AIClientError(f"No decision provider for agent {agent.name}")
            self._cache[cache_key] = self._factory(agent)
        return self._cache[cache_key]

    def reset(self) -> None:
        """Drop factory-built providers so the next run starts from fresh (seeded) instances."""
        self._cache.clear()
