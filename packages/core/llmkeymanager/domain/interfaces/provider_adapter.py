"""ProviderAdapter abstract interface for provider-specific implementations.

This module defines the abstract base class and protocol for provider adapters.
Adapters translate a normalized request into one vendor's wire call and back.
The core only selects which adapter instance to call; it never branches on
provider identity otherwise.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from llmkeymanager.domain.models.key_record import RateLimitData
    from llmkeymanager.domain.models.request import (
        ChatRequest,
        ChatResponse,
        EmbeddingRequest,
        EmbeddingResponse,
    )


class ProviderAdapter(ABC):
    """Abstract interface for provider-specific implementations.

    Adapters raise their provider-native errors unchanged. The Error
    Classifier normalizes them, so an adapter must not swallow failures or
    convert them into successful responses.

    Example Usage:
        ```python
        class OpenAIAdapter(ProviderAdapter):
            provider_id = "openai"
            base_url = "https://api.openai.com/v1"
            model_prefixes = ("gpt-", "o1", "o3", "text-embedding-")

            async def probe_health(self, secret, base_url=None):
                response = await self._client.get(f"{base_url or self.base_url}/models",
                                                  headers={"Authorization": f"Bearer {secret}"})
                response.raise_for_status()
                return parse_rate_limit_headers(response.headers)
            ...
        ```
    """

    provider_id: str = ""
    base_url: str = ""
    model_prefixes: tuple[str, ...] = ()

    def serves_model(self, model_id: str) -> bool:
        """Return True if this provider claims ``model_id``.

        Default implementation matches ``model_prefixes``. Adapters with a
        dynamic catalog may override it.
        """
        return model_id.startswith(self.model_prefixes) if self.model_prefixes else False

    @abstractmethod
    async def probe_health(self, secret: str, base_url: str | None = None) -> RateLimitData:
        """Run a lightweight, non traffic-bearing check of a credential.

        Args:
            secret: Decrypted API key. Must not be retained after the call.
            base_url: Optional override of the provider endpoint.

        Returns:
            Rate-limit snapshot reported by the provider.

        Raises:
            Exception: Provider-native error on failure.
        """

    @abstractmethod
    async def complete(
        self,
        secret: str,
        request: ChatRequest | EmbeddingRequest,
    ) -> ChatResponse | EmbeddingResponse:
        """Execute a normalized request against a concrete model.

        ``request.model`` always holds a concrete model id when this is
        called.

        Args:
            secret: Decrypted API key. Must not be retained after the call.
            request: Normalized chat or embedding request.

        Returns:
            Normalized response with token usage filled in.

        Raises:
            Exception: Provider-native error on failure.
        """

    @abstractmethod
    async def list_models(self, secret: str) -> list[str]:
        """List model ids the credential can access.

        Raises:
            Exception: Provider-native error on failure.
        """

    def detect_tier(self, rate_limits: RateLimitData) -> str | None:
        """Infer the account tier from rate limits, if the provider allows it."""
        return None


class ProviderAdapterProtocol(Protocol):
    """Structural type of a provider adapter, for duck-typed implementations."""

    provider_id: str
    base_url: str

    def serves_model(self, model_id: str) -> bool: ...

    async def probe_health(self, secret: str, base_url: str | None = None) -> RateLimitData: ...

    async def complete(
        self,
        secret: str,
        request: ChatRequest | EmbeddingRequest,
    ) -> ChatResponse | EmbeddingResponse: ...

    async def list_models(self, secret: str) -> list[str]: ...
