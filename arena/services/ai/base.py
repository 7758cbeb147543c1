"""
Decision provider base classes.

A decision provider turns a serialized agent context into raw response
text. Vendor clients implement ``BaseAIClient.generate``; the engine only
ever calls ``complete``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

SYSTEM_PROMPT = (
    "You are an autonomous trading agent competing in an equities trading "
    "competition. Follow the rules in the user message exactly and respond "
    "with a single JSON object."
)


class AIProvider(str, Enum):
    """Supported provider families"""

    OPENAI = "openai"
    OPENROUTER = "openrouter"  # OpenAI-compatible gateway to other vendors
    MOCK = "mock"


@dataclass
class AIClientConfig:
    """Configuration for an AI client instance"""

    api_key: str
    model: str
    base_url: Optional[str] = None  # For OpenAI-compatible endpoints
    max_tokens: int = 1024
    temperature: float = 0.7
    timeout: int = 60
    extra_params: dict = field(default_factory=dict)


@dataclass
class AIResponse:
    """Standardized response from AI clients"""

    content: str
    model: str
    provider: AIProvider
    tokens_used: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    latency_ms: int = 0
    raw_response: Optional[Any] = None


class AIClientError(Exception):
    """Base error for AI client operations"""

    def __init__(self, message: str, provider: Optional[AIProvider] = None):
        self.message = message
        self.provider = provider
        super().__init__(message)


class AIAuthenticationError(AIClientError):
    """Authentication failed with provider"""

    pass


class AIRateLimitError(AIClientError):
    """Rate limit exceeded"""

    pass


class AIConnectionError(AIClientError):
    """Connection to provider failed"""

    pass


class AIInvalidRequestError(AIClientError):
    """Invalid request to provider"""

    pass


class DecisionProvider(ABC):
    """
    Anything that can answer an agent context with raw text.

    Usage:
        text = await provider.complete(context)
    """

    @abstractmethod
    async def complete(self, context: str) -> str:
        """
        Return the raw agent response for a context.

        Raises:
            Exception: the provider failed or timed out
        """
        pass


class BaseAIClient(DecisionProvider):
    """
    Abstract base class for vendor AI clients.

    Usage:
        class MyClient(BaseAIClient):
            async def generate(self, ...) -> AIResponse: ...

        client = MyClient(config)
        text = await client.complete(context)
    """

    def __init__(self, config: AIClientConfig):
        """
        Initialize the AI client.

        Args:
            config: Client configuration including API key, model, etc.
        """
        self.config = config
        self._validate_config()

    def _validate_config(self) -> None:
        """Validate configuration. Override for provider-specific validation."""
        if not self.config.api_key:
            raise AIClientError(f"API key is required for {self.provider.value}", self.provider)

    @property
    @abstractmethod
    def provider(self) -> AIProvider:
        """Return the provider type for this client"""
        pass

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        json_mode: bool = True,
    ) -> AIResponse:
        """
        Generate a response from the AI model.

        Raises:
            AIClientError: On any error from the AI provider
        """
        pass

    async def complete(self, context: str) -> str:
        response = await self.generate(SYSTEM_PROMPT, context)
        return response.content
