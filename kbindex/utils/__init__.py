"""Utility modules for kbindex.

- **errors** -- Exception hierarchy rooted at KnowledgeBaseError; each
  failure class maps to one handling policy (reject, retry, mark failed,
  surface).
- **logging** -- structlog setup with a console renderer in development
  and JSON in production, plus per-job context binding.
- **hashing** -- sha256 helpers shared by content hashing, chunk hashing
  and anchor derivation.
"""

from kbindex.utils.errors import (
    ConfigurationError,
    InvariantError,
    KnowledgeBaseError,
    PipelineAlreadyRunningError,
    PipelineError,
    ProviderError,
    RateLimitError,
    StorageError,
    ValidationError,
)
from kbindex.utils.hashing import sha256_hex
from kbindex.utils.logging import configure_logging, get_logger

__all__ = [
    "ConfigurationError",
    "InvariantError",
    "KnowledgeBaseError",
    "PipelineAlreadyRunningError",
    "PipelineError",
    "ProviderError",
    "RateLimitError",
    "StorageError",
    "ValidationError",
    "configure_logging",
    "get_logger",
    "sha256_hex",
]
