"""OpenRouter (OpenAI-compatible) embedding provider over raw httpx.

Posts ``{"model", "input"}`` to ``{base_url}/embeddings``.  Talking HTTP
directly (instead of through an SDK) gives access to the rate-limit
headers and the raw body, which the lenient parser needs.
"""

from __future__ import annotations

import httpx

from kbindex.config.settings import Settings
from kbindex.models.kb import EmbeddingResult
from kbindex.providers.embedding.base import BaseEmbeddingProvider
from kbindex.providers.embedding.response_parser import parse_json_body, to_embedding_result
from kbindex.utils.errors import ProviderError, RateLimitError


class OpenRouterEmbeddingProvider(BaseEmbeddingProvider):
    """Embedding provider for OpenRouter and other OpenAI-compatible gateways.

    The ``httpx.AsyncClient`` is injected for testability and connection
    pooling; one is created when omitted.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(
            model=settings.embedding_model,
            max_retries=settings.embedding_max_retries,
            base_delay=settings.embedding_base_delay,
            backoff_multiplier=settings.embedding_backoff_multiplier,
            max_delay=settings.embedding_max_delay,
        )
        self._api_key = settings.embedding_api_key
        self._endpoint = settings.embedding_base_url.rstrip("/") + "/embeddings"
        self._timeout = settings.embedding_timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self._timeout)

    async def _request(self, texts: list[str], model: str) -> EmbeddingResult:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = await self._client.post(
                self._endpoint,
                json={"model": model, "input": texts},
                headers=headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(
                message=f"Embedding request timed out after {self._timeout}s",
                provider_name=self.get_provider_name(),
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                message=f"Embedding request failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        if response.status_code == 429:
            raise RateLimitError.from_headers(response.headers, self.get_provider_name())
        if response.status_code >= 400:
            raise ProviderError(
                message=f"HTTP {response.status_code}: {response.text[:200]}",
                provider_name=self.get_provider_name(),
                retryable=response.status_code >= 500,
            )

        payload = parse_json_body(response.text, self.get_provider_name())
        return to_embedding_result(payload, model, self.get_provider_name())

    def get_provider_name(self) -> str:
        return "openrouter"

    def is_available(self) -> bool:
        """Return ``True`` if an API key and model are configured."""
        return bool(self._api_key and self._model)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
