"""Deterministic per-chunk anchor derivation.

Anchors are deep-link identifiers for citations, shaped ``kb-<12 hex>``.
They are derived only from (document key, heading path, chunk index), so
editing a chunk's text keeps its anchor, and re-chunking unchanged content
always reproduces the same anchors.
"""

from __future__ import annotations

from collections.abc import Sequence

from kbindex.utils.hashing import sha256_hex

ANCHOR_PREFIX = "kb-"
_HASH_LENGTH = 12


def serialize_heading_path(heading_path: Sequence[str]) -> str:
    """Join a heading path with ``" > "`` after collapsing whitespace."""
    parts = [" ".join(str(part).split()) for part in heading_path]
    return " > ".join(part for part in parts if part)


class AnchorGenerator:
    """Builds chunk anchors."""

    def generate(self, doc_key: str, heading_path: Sequence[str], chunk_index: int) -> str:
        """Return the anchor for one chunk of the document *doc_key*."""
        source = f"{doc_key}|{serialize_heading_path(heading_path)}|{chunk_index}"
        return ANCHOR_PREFIX + sha256_hex(source)[:_HASH_LENGTH]
