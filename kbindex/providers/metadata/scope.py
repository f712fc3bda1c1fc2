"""SQL helpers translating a run scope into document filters."""

from __future__ import annotations

from typing import Any

from kbindex.models.pipeline import RunOptions, RunScope


def scope_clause(scope: RunOptions | None, alias: str = "") -> tuple[str, list[Any]]:
    """Return ``(" AND ...", params)`` restricting documents to *scope*."""
    prefix = f"{alias}." if alias else ""
    if scope is None or scope.scope == RunScope.ALL:
        return "", []
    if scope.scope == RunScope.TYPE:
        return f" AND {prefix}content_type = ?", [scope.content_type]
    return f" AND {prefix}content_id = ?", [scope.content_id]
