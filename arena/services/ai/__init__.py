"""Decision providers (LLM clients)"""

from .base import (
    AIAuthenticationError,
    AIClientConfig,
    AIClientError,
    AIConnectionError,
    AIInvalidRequestError,
    AIProvider,
    AIRateLimitError,
    AIResponse,
    BaseAIClient,
    DecisionProvider,
)
from .factory import ProviderRegistry, create_client
from .mock_client import MockDecisionProvider

__all__ = [
    "AIAuthenticationError",
    "AIClientConfig",
    "AIClientError",
    "AIConnectionError",
    "AIInvalidRequestError",
    "AIProvider",
    "AIRateLimitError",
    "AIResponse",
    "BaseAIClient",
    "DecisionProvider",
    "MockDecisionProvider",
    "ProviderRegistry",
    "create_client",
]
