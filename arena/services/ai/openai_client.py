"""
OpenAI Client Adapter.

Implements the BaseAIClient interface for OpenAI chat models and any
OpenAI-compatible endpoint (OpenRouter and similar gateways).
"""

import time

import openai

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
)


class OpenAIClient(BaseAIClient):
    """
    OpenAI-compatible chat client.

    Usage:
        config = AIClientConfig(api_key="...", model="gpt-4o-mini")
        client = OpenAIClient(config)
        text = await client.complete(context)
    """

    def __init__(self, config: AIClientConfig):
        """Initialize OpenAI client."""
        super().__init__(config)

        client_kwargs = {
            "api_key": config.api_key,
            "timeout": config.timeout,
        }
        if config.base_url:
            client_kwargs["base_url"] = config.base_url
        self._client = openai.AsyncOpenAI(**client_kwargs)

    @property
    def provider(self) -> AIProvider:
        return AIProvider.OPENROUTER if self.config.base_url else AIProvider.OPENAI

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        json_mode: bool = True,
    ) -> AIResponse:
        """
        Generate a response.

        Args:
            system_prompt: System instructions
            user_prompt: Agent context
            json_mode: Request a JSON object response (official API only)

        Returns:
            AIResponse with content and metadata
        """
        start_time = time.time()

        try:
            request_kwargs = {
                "model": self.config.model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "max_tokens": self.config.max_tokens,
                "temperature": self.config.temperature,
                **self.config.extra_params,
            }

            # Gateways do not uniformly support response_format
            if json_mode and not self.config.base_url:
                request_kwargs["response_format"] = {"type": "json_object"}

            response = await self._client.chat.completions.create(**request_kwargs)

            content = response.choices[0].message.content or ""
            input_tokens = response.usage.prompt_tokens if response.usage else 0
            output_tokens = response.usage.completion_tokens if response.usage else 0
            latency_ms = int((time.time() - start_time) * 1000)

            return AIResponse(
                content=content,
                model=response.model,
                provider=self.provider,
                tokens_used=input_tokens + output_tokens,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                stop_reason=response.choices[0].finish_reason or "",
                latency_ms=latency_ms,
                raw_response=response,
            )

        except openai.BadRequestError as e:
            raise AIInvalidRequestError(f"Bad request: {e}", self.provider)
        except openai.AuthenticationError as e:
            raise AIAuthenticationError(f"Authentication failed: {e}", self.provider)
        except openai.RateLimitError as e:
            raise AIRateLimitError(f"Rate limit exceeded: {e}", self.provider)
        except openai.APIConnectionError as e:
            raise AIConnectionError(f"Connection failed: {e}", self.provider)
        except openai.APIStatusError as e:
            raise AIClientError(f"API error: {e}", self.provider)
        except Exception as e:
            raise AIClientError(f"Unexpected error: {e}", self.provider)
