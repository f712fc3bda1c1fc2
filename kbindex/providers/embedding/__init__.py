"""Embedding provider implementations.

Both providers share the retry/backoff policy of
:class:`~kbindex.providers.embedding.base.BaseEmbeddingProvider`:

    1. OpenRouterEmbeddingProvider: raw httpx against any OpenAI-compatible
       ``/embeddings`` endpoint (default, OpenRouter).
    2. OpenAIEmbeddingProvider: the official ``openai`` SDK.
"""

from kbindex.providers.embedding.base import BaseEmbeddingProvider
from kbindex.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider
from kbindex.providers.embedding.openrouter_embedding_provider import OpenRouterEmbeddingProvider

__all__ = ["BaseEmbeddingProvider", "OpenAIEmbeddingProvider", "OpenRouterEmbeddingProvider"]
