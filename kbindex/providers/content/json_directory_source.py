"""Content source reading one JSON file per item from a directory.

File layout::

    content/
        post-001.json
        page-about.json

Each file holds ``{"id", "type", "title", "url", "text", "headings",
"published_at", "excluded"}``; every key but ``text`` is optional.  The
file stem is the content id, so listing never needs to parse files
except for type-scoped runs.  Parsed files are cached by modification
time.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog

from kbindex.interfaces.content_source import IContentSource
from kbindex.models.kb import ContentItem
from kbindex.models.pipeline import RunOptions, RunScope
from kbindex.utils.errors import ValidationError

logger = structlog.get_logger(logger_name=__name__)

_SUFFIX = ".json"


class JsonDirectoryContentSource(IContentSource):
    """Read-only content source over ``<directory>/*.json``."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)
        self._cache: dict[str, tuple[int, ContentItem]] = {}

    # ------------------------------------------------------------------
    # IContentSource implementation
    # ------------------------------------------------------------------

    async def count(self, scope: RunOptions) -> int:
        return len(self._scoped_ids(scope))

    async def list_ids(self, scope: RunOptions, after: str | None, limit: int) -> list[str]:
        ids = self._scoped_ids(scope)
        if after is not None:
            ids = [content_id for content_id in ids if content_id > after]
        return ids[:limit]

    async def get(self, content_id: str) -> ContentItem | None:
        path = self._path_for(content_id)
        if not path.is_file():
            return None
        return self._load(path)

    async def exists(self, content_id: str) -> bool:
        return self._path_for(content_id).is_file()

    def get_provider_name(self) -> str:
        return "json_directory"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _path_for(self, content_id: str) -> Path:
        return self._directory / f"{content_id}{_SUFFIX}"

    def _all_ids(self) -> list[str]:
        if not self._directory.is_dir():
            return []
        return sorted(path.stem for path in self._directory.glob(f"*{_SUFFIX}") if path.is_file())

    def _scoped_ids(self, scope: RunOptions) -> list[str]:
        if scope.scope == RunScope.ITEM:
            return [scope.content_id] if scope.content_id in self._all_ids() else []
        ids = self._all_ids()
        if scope.scope == RunScope.ALL:
            return ids

        scoped: list[str] = []
        for content_id in ids:
            try:
                item = self._load(self._path_for(content_id))
            except ValidationError as exc:
                logger.warning("content_file_unreadable", content_id=content_id, error=str(exc))
                continue
            if item.content_type == scope.content_type:
                scoped.append(content_id)
        return scoped

    def _load(self, path: Path) -> ContentItem:
        """Parse *path* into a ContentItem, reusing the cached copy if unmodified.

        Raises
        ------
        ValidationError
            If the file is not valid JSON or does not describe an item.
        """
        mtime = path.stat().st_mtime_ns
        cached = self._cache.get(path.stem)
        if cached is not None and cached[0] == mtime:
            return cached[1]

        try:
            raw: dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("top-level value must be an object")
            item = ContentItem.model_validate(_to_item_fields(path.stem, raw))
        except (OSError, ValueError) as exc:
            raise ValidationError(
                message=f"Malformed content file {path.name}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        self._cache[path.stem] = (mtime, item)
        return item


def _to_item_fields(stem: str, raw: dict[str, Any]) -> dict[str, Any]:
    declared_id = raw.get("id")
    if declared_id is not None and str(declared_id) != stem:
        logger.warning("content_id_mismatch", file_id=stem, declared_id=declared_id)
    fields: dict[str, Any] = {
        "content_id": stem,
        "content_type": raw.get("type") or "post",
        "title": raw.get("title") or "",
        "url": raw.get("url") or "",
        "text": raw.get("text") or "",
        "headings": raw.get("headings") or [],
        "published_at": raw.get("published_at") or None,
        "excluded": bool(raw.get("excluded", False)),
    }
    if raw.get("content_hash"):
        fields["content_hash"] = raw["content_hash"]
    return fields
