"""Abstract base class for text-embedding service providers.

Defines the contract for turning chunk text into vectors.  Implementations
wrap an external embeddings API (OpenRouter over httpx, the OpenAI SDK)
or a deterministic local model for tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from kbindex.models.kb import EmbeddingResult


# Concrete implementations (kbindex/providers/embedding/):
#   OpenRouterEmbeddingProvider: OpenAI-compatible HTTP API via httpx (default)
#   OpenAIEmbeddingProvider    : official openai SDK
class IEmbeddingProvider(ABC):
    """Contract for embedding services used by the pipeline and retrieval.

    Implementations batch multiple texts per network call and own the
    retry/backoff policy for rate limits.
    """

    @abstractmethod
    async def embed(self, texts: list[str], model: str | None = None) -> EmbeddingResult:
        """Generate embedding vectors for a batch of texts.

        Parameters
        ----------
        texts:
            One or more non-empty strings.
        model:
            Model override; the provider default is used when None.

        Returns
        -------
        EmbeddingResult
            ``vectors`` aligned positionally with *texts*, their ``dims``,
            the model used and token ``usage``.

        Raises
        ------
        kbindex.utils.errors.ValidationError
            If *texts* is empty.
        kbindex.utils.errors.RateLimitError
            When the provider keeps rate-limiting after all retries.
        kbindex.utils.errors.ProviderError
            On any other failure or an unparseable response.
        """

    @abstractmethod
    async def embed_single(self, text: str, model: str | None = None) -> list[float]:
        """Embed one string (e.g. a search query) and return its vector."""

    @abstractmethod
    def get_dimension(self, model: str | None = None) -> int:
        """Return the vector dimensionality for *model* (or the default model)."""

    @abstractmethod
    def get_model(self) -> str:
        """Return the default model identifier."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier, e.g. ``"openrouter"``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if credentials are present and the provider can be called."""

    async def aclose(self) -> None:
        """Release network clients.  Default: nothing to do."""
