"""Shared retry/backoff behaviour for network embedding providers.

Subclasses implement a single-attempt :meth:`BaseEmbeddingProvider._request`;
this base class wraps it with the retry policy:

* ``RateLimitError`` -> wait ``min(retry_after, max_delay)`` and retry.
* retryable ``ProviderError`` -> wait ``base_delay * multiplier**(n-1)``
  (capped at ``max_delay``) and retry.
* No sleep after the final attempt; the last error propagates.  An empty
  vector list is never returned in place of an error.

Every attempt is logged with model, duration, and success.
"""

from __future__ import annotations

import asyncio
import time
from abc import abstractmethod

import structlog

from kbindex.interfaces.embedding_provider import IEmbeddingProvider
from kbindex.models.kb import EmbeddingResult
from kbindex.providers.embedding.models import get_model_dimensions
from kbindex.utils.errors import ProviderError, RateLimitError, ValidationError

logger = structlog.get_logger(logger_name=__name__)

MAX_RETRIES = 3
BASE_DELAY = 5.0
BACKOFF_MULTIPLIER = 2.0
MAX_DELAY = 120.0


class BaseEmbeddingProvider(IEmbeddingProvider):
    """Retrying embedding provider skeleton."""

    def __init__(
        self,
        model: str,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY,
        backoff_multiplier: float = BACKOFF_MULTIPLIER,
        max_delay: float = MAX_DELAY,
    ) -> None:
        self._model = model
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._backoff_multiplier = backoff_multiplier
        self._max_delay = max_delay
        self._observed_dims: dict[str, int] = {}

    # ------------------------------------------------------------------
    # IEmbeddingProvider implementation
    # ------------------------------------------------------------------

    async def embed(self, texts: list[str], model: str | None = None) -> EmbeddingResult:
        """Embed *texts* in one request, retrying per the class policy."""
        if not texts:
            raise ValidationError(
                message="No texts provided for embedding",
                provider_name=self.get_provider_name(),
            )
        if any(not text.strip() for text in texts):
            raise ValidationError(
                message="Cannot embed empty text",
                provider_name=self.get_provider_name(),
            )

        model = model or self._model
        attempt = 0
        while True:
            attempt += 1
            started = time.monotonic()
            try:
                result = await self._request(texts, model)
                if len(result.vectors) != len(texts):
                    raise ProviderError(
                        message=(
                            f"Embedding count mismatch: sent {len(texts)} texts, "
                            f"received {len(result.vectors)} vectors"
                        ),
                        provider_name=self.get_provider_name(),
                        retryable=False,
                    )
            except RateLimitError as exc:
                self._log_attempt(model, started, attempt, len(texts), success=False, error=exc)
                if attempt >= self._max_retries:
                    raise
                delay = min(float(exc.retry_after), self._max_delay)
            except ProviderError as exc:
                self._log_attempt(model, started, attempt, len(texts), success=False, error=exc)
                if not exc.retryable or attempt >= self._max_retries:
                    raise
                delay = self._backoff_delay(attempt)
            else:
                self._observed_dims[model] = result.dims
                self._log_attempt(
                    model,
                    started,
                    attempt,
                    len(texts),
                    success=True,
                    total_tokens=result.usage.total_tokens,
                )
                return result

            logger.warning(
                "embedding_retry_scheduled",
                provider=self.get_provider_name(),
                model=model,
                attempt=attempt,
                delay_seconds=delay,
            )
            await self._sleep(delay)

    async def embed_single(self, text: str, model: str | None = None) -> list[float]:
        result = await self.embed([text], model)
        return result.vectors[0]

    def get_dimension(self, model: str | None = None) -> int:
        model = model or self._model
        return self._observed_dims.get(model) or get_model_dimensions(model) or 0

    def get_model(self) -> str:
        return self._model

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _request(self, texts: list[str], model: str) -> EmbeddingResult:
        """Perform a single embeddings call.

        Must raise ``RateLimitError`` for rate limiting and ``ProviderError``
        for every other failure.
        """

    async def _sleep(self, seconds: float) -> None:
        """Suspend between attempts.  Overridden in tests."""
        await asyncio.sleep(seconds)

    async def aclose(self) -> None:
        """Release network resources.  Default: nothing to release."""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _backoff_delay(self, attempt: int) -> float:
        delay = self._base_delay * (self._backoff_multiplier ** (attempt - 1))
        return min(delay, self._max_delay)

    def _log_attempt(
        self,
        model: str,
        started: float,
        attempt: int,
        batch_size: int,
        success: bool,
        error: Exception | None = None,
        total_tokens: int | None = None,
    ) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        if success:
            logger.info(
                "embedding_request",
                provider=self.get_provider_name(),
                model=model,
                duration_ms=duration_ms,
                success=True,
                attempt=attempt,
                batch_size=batch_size,
                tokens=total_tokens,
            )
        else:
            logger.warning(
                "embedding_request",
                provider=self.get_provider_name(),
                model=model,
                duration_ms=duration_ms,
                success=False,
                attempt=attempt,
                batch_size=batch_size,
                error_type=type(error).__name__,
                error=str(error)[:200],
            )
