"""Shared pytest fixtures for the kbindex test suite."""

from __future__ import annotations

import hashlib
import math
import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from kbindex.config.settings import Settings
from kbindex.models.kb import ContentItem, EmbeddingResult, EmbeddingUsage, Heading
from kbindex.providers.content import InMemoryContentSource
from kbindex.providers.embedding.base import BaseEmbeddingProvider

_WORD_RE = re.compile(r"[^\W_]+")

# Short (<= 8 chars) words so token estimates stay at 1.3 per word.
VOCABULARY = [
    "index", "vector", "query", "search", "chunk", "policy", "refund", "account",
    "billing", "invoice", "shipping", "order", "return", "support", "ticket", "agent",
    "server", "deploy", "release", "backup", "storage", "cluster", "network", "token",
    "model", "dataset", "train", "predict", "metric", "report", "export", "import",
]


# ---------------------------------------------------------------------------
# Fake embedding provider
# ---------------------------------------------------------------------------


class FakeEmbeddingProvider(BaseEmbeddingProvider):
    """Deterministic bag-of-words embeddings, no network.

    Each word is hashed into one of ``dims`` buckets, so texts that share
    words score high.  ``failures`` holds exceptions raised (in order) by
    the next ``_request`` calls; ``sleeps`` records backoff delays instead
    of sleeping.
    """

    def __init__(self, dims: int = 32, max_retries: int = 3, **kwargs: Any) -> None:
        super().__init__(model="fake/embed-test", max_retries=max_retries, **kwargs)
        self.dims = dims
        self.failures: list[Exception] = []
        self.sleeps: list[float] = []
        self.calls: list[list[str]] = []

    async def _request(self, texts: list[str], model: str) -> EmbeddingResult:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return EmbeddingResult(
            vectors=[self.vector_for(text) for text in texts],
            dims=self.dims,
            model=model,
            usage=EmbeddingUsage(prompt_tokens=len(texts), total_tokens=len(texts)),
        )

    async def _sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def vector_for(self, text: str) -> list[float]:
        vector = [0.0] * self.dims
        for word in _WORD_RE.findall(text.lower()):
            bucket = int(hashlib.sha256(word.encode("utf-8")).hexdigest(), 16) % self.dims
            vector[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        return [v / norm for v in vector]

    def get_provider_name(self) -> str:
        return "fake"

    def is_available(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Content helpers
# ---------------------------------------------------------------------------


def words(count: int, offset: int = 0) -> str:
    """*count* vocabulary words separated by single spaces."""
    return " ".join(VOCABULARY[(offset + i) % len(VOCABULARY)] for i in range(count))


def sectioned_text(sections: list[tuple[str, str]]) -> tuple[str, list[Heading]]:
    """Join ``(heading, body)`` pairs into text plus level-2 headings."""
    parts: list[str] = []
    headings: list[Heading] = []
    offset = 0
    for title, body in sections:
        headings.append(Heading(level=2, text=title, offset=offset))
        block = f"{title}\n{body}"
        parts.append(block)
        offset += len(block) + 2
    return "\n\n".join(parts), headings


def make_item(
    content_id: str,
    text: str,
    content_type: str = "guide",
    headings: list[Heading] | None = None,
    **extra: Any,
) -> ContentItem:
    return ContentItem(
        content_id=content_id,
        content_type=content_type,
        title=f"Title {content_id}",
        url=f"https://kb.example.com/{content_id}",
        text=text,
        headings=headings or [],
        **extra,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "kb.db"


@pytest.fixture
def settings(tmp_path: Path, db_path: Path) -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        kb_db_path=str(db_path),
        content_dir=str(tmp_path / "content"),
        embedding_api_key="test-key",
        embedding_base_url="https://embeddings.example.com/v1",
        embedding_model="openai/text-embedding-3-small",
        pipeline_batch_size=5,
        embed_batch_size=5,
        dynamic_batch_sizing=False,
        single_item_delay_seconds=0,
    )


@pytest.fixture
def fake_embedder() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def content_source() -> InMemoryContentSource:
    return InMemoryContentSource()


@pytest.fixture
def future_clock() -> Callable[[], datetime]:
    """Clock one day ahead so delayed jobs are due immediately."""
    return lambda: datetime.now(tz=timezone.utc) + timedelta(days=1)  # noqa: UP017


@pytest.fixture
async def components(
    settings: Settings,
    fake_embedder: FakeEmbeddingProvider,
    content_source: InMemoryContentSource,
) -> dict[str, Any]:
    """Fully wired, initialized components over a temporary database."""
    from kbindex.main import build_components

    return await build_components(
        settings, embedding_provider=fake_embedder, content_source=content_source
    )
