"""In-memory content source for tests and embedding the indexer in-process."""

from __future__ import annotations

from kbindex.interfaces.content_source import IContentSource
from kbindex.models.kb import ContentItem
from kbindex.models.pipeline import RunOptions, RunScope


class InMemoryContentSource(IContentSource):
    """Content items held in a dict keyed by content id.

    ``put`` and ``remove`` let callers simulate edits and deletions
    between pipeline runs.
    """

    def __init__(self, items: list[ContentItem] | None = None) -> None:
        self._items: dict[str, ContentItem] = {}
        for item in items or []:
            self.put(item)

    def put(self, item: ContentItem) -> None:
        self._items[item.content_id] = item

    def remove(self, content_id: str) -> None:
        self._items.pop(content_id, None)

    async def count(self, scope: RunOptions) -> int:
        return len(self._scoped_ids(scope))

    async def list_ids(self, scope: RunOptions, after: str | None, limit: int) -> list[str]:
        ids = self._scoped_ids(scope)
        if after is not None:
            ids = [content_id for content_id in ids if content_id > after]
        return ids[:limit]

    async def get(self, content_id: str) -> ContentItem | None:
        return self._items.get(content_id)

    async def exists(self, content_id: str) -> bool:
        return content_id in self._items

    def get_provider_name(self) -> str:
        return "memory_content"

    def _scoped_ids(self, scope: RunOptions) -> list[str]:
        if scope.scope == RunScope.ITEM:
            return [scope.content_id] if scope.content_id in self._items else []
        return sorted(
            content_id
            for content_id, item in self._items.items()
            if scope.scope == RunScope.ALL or item.content_type == scope.content_type
        )
