"""Abstract base class for the host content store.

The content management system renders raw content into plain text plus a
heading list; the indexing pipeline only ever sees this contract.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from kbindex.models.kb import ContentItem
from kbindex.models.pipeline import RunOptions


class IContentSource(ABC):
    """Read-only access to indexable content items.

    Content ids are strings; listing is in ascending id order so a
    string cursor can resume a scan.  Implementations must be
    deterministic: unchanged content yields the same ``content_hash``.
    """

    @abstractmethod
    async def count(self, scope: RunOptions) -> int:
        """Return how many items fall within *scope*."""

    @abstractmethod
    async def list_ids(self, scope: RunOptions, after: str | None, limit: int) -> list[str]:
        """Return up to *limit* ids in *scope* strictly greater than *after*."""

    @abstractmethod
    async def get(self, content_id: str) -> ContentItem | None:
        """Return one item, or None when it no longer exists."""

    @abstractmethod
    async def exists(self, content_id: str) -> bool:
        ...

    @abstractmethod
    def get_provider_name(self) -> str:
        ...
