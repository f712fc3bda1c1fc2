"""Custom exception hierarchy for kbindex.

All application exceptions inherit from :class:`KnowledgeBaseError`, which
carries an optional ``provider_name`` naming the backend
("openrouter", "sqlite_vector_index", ...) that failed.

The hierarchy follows the failure taxonomy of the indexing pipeline:

    KnowledgeBaseError  (base -- catch-all for any kbindex error)
    +-- ValidationError             (malformed query / parameters, never retried)
    +-- RateLimitError              (provider rate limit, retryable with backoff)
    +-- ProviderError               (embedding call failed or unparseable)
    +-- StorageError                (persistence failure)
    +-- InvariantError              (data-integrity violation, manual follow-up)
    +-- PipelineError               (illegal orchestrator transition)
    |   +-- PipelineAlreadyRunningError
    +-- ConfigurationError          (startup / invalid settings)

Callers retry on RateLimitError, mark chunks failed on ProviderError, and
surface everything else with structured log context.
"""

from __future__ import annotations

from collections.abc import Mapping

_DEFAULT_RETRY_AFTER = 60


class KnowledgeBaseError(Exception):
    """Base exception for all kbindex errors.

    Every subclass carries a human-readable ``message`` and an optional
    ``provider_name``.  ``__str__`` prefixes the provider name in brackets,
    e.g. ``[openrouter] Rate limit exceeded``.
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Request errors
# ---------------------------------------------------------------------------

class ValidationError(KnowledgeBaseError):
    """Raised for malformed queries or parameters.  Rejected without retry."""

    def __init__(
        self,
        message: str = "Invalid request parameters",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Embedding provider errors
# ---------------------------------------------------------------------------

class RateLimitError(KnowledgeBaseError):
    """Raised when an embedding API rate limit is exceeded.

    ``retry_after`` is the provider-suggested wait in seconds and
    ``limit_type`` is ``"requests"`` or ``"tokens"``.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        provider_name: str | None = None,
        retry_after: int = _DEFAULT_RETRY_AFTER,
        limit_type: str = "requests",
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self._retry_after = retry_after
        self._limit_type = limit_type

    @property
    def retry_after(self) -> int:
        return self._retry_after

    @property
    def limit_type(self) -> str:
        return self._limit_type

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        provider_name: str | None = None,
    ) -> RateLimitError:
        """Build an error from HTTP response headers.

        Reads ``retry-after`` (seconds, default 60) and reports a token
        limit when ``x-ratelimit-limit-tokens`` is present.
        """
        lowered = {str(k).lower(): v for k, v in headers.items()}
        try:
            retry_after = int(float(lowered.get("retry-after", _DEFAULT_RETRY_AFTER)))
        except (TypeError, ValueError):
            retry_after = _DEFAULT_RETRY_AFTER
        retry_after = max(0, retry_after)
        limit_type = "tokens" if "x-ratelimit-limit-tokens" in lowered else "requests"
        return cls(
            message=f"Rate limit exceeded ({limit_type}), retry after {retry_after}s",
            provider_name=provider_name,
            retry_after=retry_after,
            limit_type=limit_type,
        )


class ProviderError(KnowledgeBaseError):
    """Raised when an embedding call fails or returns unparseable data.

    ``retryable`` is False for failures a retry cannot fix (bad request,
    authentication, a response with the wrong number of vectors).
    """

    def __init__(
        self,
        message: str = "Embedding provider call failed",
        provider_name: str | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self._retryable = retryable

    @property
    def retryable(self) -> bool:
        return self._retryable


# ---------------------------------------------------------------------------
# Storage / integrity errors
# ---------------------------------------------------------------------------

class StorageError(KnowledgeBaseError):
    """Raised when a persistence operation fails."""

    def __init__(
        self,
        message: str = "Storage operation failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class InvariantError(KnowledgeBaseError):
    """Raised when stored data violates an integrity rule.

    Not retried automatically; the affected document is parked in the
    ``error`` status for investigation.
    """

    def __init__(
        self,
        message: str = "Data invariant violated",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Orchestration / configuration errors
# ---------------------------------------------------------------------------

class PipelineError(KnowledgeBaseError):
    """Raised for an illegal run transition or an unknown job."""

    def __init__(
        self,
        message: str = "Illegal pipeline transition",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class PipelineAlreadyRunningError(PipelineError):
    """Raised by ``start()`` while another run is active."""

    def __init__(
        self,
        message: str = "Pipeline is already running",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ConfigurationError(KnowledgeBaseError):
    """Raised for bad chunker bounds or a missing embedding key or model."""

    def __init__(
        self,
        message: str = "kbindex is not configured correctly",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
