"""sha256 helpers used for content, chunk, and anchor hashing."""

from __future__ import annotations

import hashlib


def sha256_hex(text: str) -> str:
    """Return the hex sha256 digest of *text* encoded as UTF-8."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
