"""OpenAI SDK embedding provider adapter.

Wraps ``openai.AsyncOpenAI`` and maps SDK exceptions onto the kbindex
error taxonomy.  The SDK's own retries are disabled so the shared retry
policy in :class:`BaseEmbeddingProvider` is the only one in effect.
"""

from __future__ import annotations

import openai

from kbindex.config.settings import Settings
from kbindex.models.kb import EmbeddingResult, EmbeddingUsage
from kbindex.providers.embedding.base import BaseEmbeddingProvider
from kbindex.utils.errors import ProviderError, RateLimitError

_OPENAI_PREFIX = "openai/"


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):
    """Embedding provider backed by the OpenAI embeddings API.

    Model names may carry the ``openai/`` routing prefix used by
    OpenRouter; it is stripped before calling the SDK.
    """

    def __init__(self, settings: Settings) -> None:
        model = settings.embedding_model.removeprefix(_OPENAI_PREFIX)
        super().__init__(
            model=model,
            max_retries=settings.embedding_max_retries,
            base_delay=settings.embedding_base_delay,
            backoff_multiplier=settings.embedding_backoff_multiplier,
            max_delay=settings.embedding_max_delay,
        )
        self._api_key = settings.embedding_api_key

        client_kwargs: dict = {
            "api_key": self._api_key,
            "timeout": settings.embedding_timeout,
            "max_retries": 0,
        }
        if settings.embedding_base_url and "openrouter.ai" not in settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url
        self._client = openai.AsyncOpenAI(**client_kwargs)

    async def _request(self, texts: list[str], model: str) -> EmbeddingResult:
        model = model.removeprefix(_OPENAI_PREFIX)
        try:
            response = await self._client.embeddings.create(input=texts, model=model)
        except openai.RateLimitError as exc:
            headers = exc.response.headers if exc.response is not None else {}
            raise RateLimitError.from_headers(headers, self.get_provider_name()) from exc
        except openai.APIStatusError as exc:
            raise ProviderError(
                message=f"OpenAI API error {exc.status_code}: {exc.message}",
                provider_name=self.get_provider_name(),
                retryable=exc.status_code >= 500,
            ) from exc
        except openai.APIError as exc:
            raise ProviderError(
                message=f"OpenAI API error: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        ordered = sorted(response.data, key=lambda item: item.index)
        vectors = [list(item.embedding) for item in ordered]
        if not vectors:
            raise ProviderError(
                message="OpenAI returned no embeddings",
                provider_name=self.get_provider_name(),
            )
        usage = response.usage
        return EmbeddingResult(
            vectors=vectors,
            dims=len(vectors[0]),
            model=response.model or model,
            usage=EmbeddingUsage(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                total_tokens=usage.total_tokens if usage else 0,
            ),
        )

    def get_provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """Return ``True`` if an API key is configured."""
        return bool(self._api_key)

    async def aclose(self) -> None:
        await self._client.close()
