"""Semantic inference oracle backed by OpenAI chat completions.

Azure OpenAI is used when its endpoint and key are configured; otherwise the
standard OpenAI API is used with OPENAI_API_KEY.
"""

import logging
from typing import Any, Optional, Protocol

from openai import AsyncAzureOpenAI, AsyncOpenAI, OpenAIError

from docsplit.config import Settings
from docsplit.errors import ConfigurationError, ExternalServiceFailure

logger = logging.getLogger(__name__)


class InferenceOracle(Protocol):
    """Free-text completion service used for boundaries and missing fields."""

    async def complete(
        self,
        system: str,
        user: str,
        *,
        json_object: bool = False,
        max_tokens: int = 2000,
        temperature: float = 0.1,
    ) -> str: ...


def create_openai_client(settings: Settings) -> tuple[Any, str]:
    """Create an async OpenAI client and the model or deployment to call.

    Raises:
        ConfigurationError: If neither Azure OpenAI nor OpenAI credentials exist
    """
    if settings.azure_openai_configured:
        endpoint = settings.azure_openai_endpoint.rstrip("/")
        if endpoint.endswith("/openai"):
            endpoint = endpoint[: -len("/openai")]
        logger.debug("Creating AzureOpenAI client for %s", endpoint[:30])
        client = AsyncAzureOpenAI(
            api_key=settings.azure_openai_key,
            api_version=settings.azure_openai_api_version,
            azure_endpoint=endpoint,
            timeout=settings.oracle_timeout_seconds,
        )
        return client, settings.azure_openai_deployment

    if settings.openai_api_key:
        logger.debug("Creating standard OpenAI client")
        client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.oracle_timeout_seconds,
        )
        return client, settings.openai_model

    raise ConfigurationError(
        "No OpenAI credentials found. Set either AZURE_OPENAI_ENDPOINT + "
        "AZURE_OPENAI_KEY (Azure OpenAI) or OPENAI_API_KEY (OpenAI)"
    )


class OpenAIOracle:
    """InferenceOracle over the chat completions API."""

    def __init__(self, client: Any, model: str):
        self.client = client
        self.model = model

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIOracle":
        client, model = create_openai_client(settings)
        return cls(client, model)

    async def complete(
        self,
        system: str,
        user: str,
        *,
        json_object: bool = False,
        max_tokens: int = 2000,
        temperature: float = 0.1,
    ) -> str:
        """Run one chat completion and return the reply text.

        Raises:
            ExternalServiceFailure: On any API or transport error
        """
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_object:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            raise ExternalServiceFailure("oracle", str(e)) from e

        content: Optional[str] = response.choices[0].message.content if response.choices else None
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug("Oracle usage: %s tokens", getattr(usage, "total_tokens", "?"))
        return content or ""
