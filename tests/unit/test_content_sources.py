"""Unit tests for the JSON-directory and in-memory content sources."""

from __future__ import annotations

import json
import os
from datetime import date
from pathlib import Path

import pytest

from kbindex.models.pipeline import RunOptions, RunScope
from kbindex.providers.content import InMemoryContentSource, JsonDirectoryContentSource
from kbindex.utils.errors import ValidationError
from tests.conftest import make_item

ALL = RunOptions()


def _write(directory: Path, stem: str, payload: object) -> Path:
    path = directory / f"{stem}.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture()
def content_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "content"
    directory.mkdir()
    _write(
        directory,
        "post-002",
        {
            "id": "post-002",
            "type": "post",
            "title": "Second post",
            "url": "https://kb.example.com/post-002",
            "text": "Intro\n\nBody text.",
            "headings": [{"level": 2, "text": "Intro", "offset": 0}],
            "published_at": "2024-03-01",
        },
    )
    _write(directory, "post-001", {"text": "First post body."})
    _write(directory, "faq-001", {"type": "faq", "text": "Question?", "excluded": True})
    (directory / "notes.txt").write_text("not content")
    return directory


class TestJsonDirectorySource:
    async def test_lists_stems_in_order(self, content_dir: Path) -> None:
        source = JsonDirectoryContentSource(content_dir)

        assert await source.count(ALL) == 3
        assert await source.list_ids(ALL, after=None, limit=10) == [
            "faq-001",
            "post-001",
            "post-002",
        ]
        assert await source.list_ids(ALL, after="faq-001", limit=1) == ["post-001"]

    async def test_get_parses_all_fields(self, content_dir: Path) -> None:
        item = await JsonDirectoryContentSource(content_dir).get("post-002")

        assert item is not None
        assert item.content_type == "post"
        assert item.title == "Second post"
        assert item.published_at == date(2024, 3, 1)
        assert item.headings[0].text == "Intro"
        assert item.content_hash

    async def test_defaults_for_sparse_files(self, content_dir: Path) -> None:
        item = await JsonDirectoryContentSource(content_dir).get("post-001")

        assert item is not None
        assert item.content_type == "post"
        assert item.title == ""
        assert item.excluded is False

    @pytest.mark.parametrize(
        ("stamp", "expected"),
        [
            ("2024-05-01T10:30:00Z", date(2024, 5, 1)),
            ("2024-05-01T23:30:00-05:00", date(2024, 5, 2)),
            ("2024-05-01T08:00:00", date(2024, 5, 1)),
        ],
    )
    async def test_timestamps_become_utc_dates(
        self, content_dir: Path, stamp: str, expected: date
    ) -> None:
        _write(content_dir, "news-001", {"type": "news", "text": "Body.", "published_at": stamp})

        item = await JsonDirectoryContentSource(content_dir).get("news-001")

        assert item is not None
        assert item.published_at == expected

    async def test_missing_item(self, content_dir: Path) -> None:
        source = JsonDirectoryContentSource(content_dir)
        assert await source.get("nope") is None
        assert await source.exists("nope") is False
        assert await source.exists("post-001") is True

    async def test_missing_directory_is_empty(self, tmp_path: Path) -> None:
        source = JsonDirectoryContentSource(tmp_path / "absent")
        assert await source.count(ALL) == 0

    async def test_type_scope(self, content_dir: Path) -> None:
        source = JsonDirectoryContentSource(content_dir)
        scope = RunOptions(scope=RunScope.TYPE, content_type="post")

        assert await source.list_ids(scope, after=None, limit=10) == ["post-001", "post-002"]

    async def test_item_scope(self, content_dir: Path) -> None:
        source = JsonDirectoryContentSource(content_dir)

        assert await source.count(RunOptions(scope=RunScope.ITEM, content_id="post-001")) == 1
        assert await source.count(RunOptions(scope=RunScope.ITEM, content_id="ghost")) == 0

    @pytest.mark.parametrize("payload", ["{not json", "[1, 2]"])
    async def test_malformed_file_raises(self, content_dir: Path, payload: str) -> None:
        (content_dir / "broken.json").write_text(payload)

        with pytest.raises(ValidationError, match="broken.json"):
            await JsonDirectoryContentSource(content_dir).get("broken")

    async def test_type_scope_skips_unreadable_files(self, content_dir: Path) -> None:
        (content_dir / "broken.json").write_text("{not json")
        scope = RunOptions(scope=RunScope.TYPE, content_type="faq")

        assert await JsonDirectoryContentSource(content_dir).count(scope) == 1

    async def test_edits_are_picked_up(self, content_dir: Path) -> None:
        source = JsonDirectoryContentSource(content_dir)
        before = await source.get("post-001")

        path = _write(content_dir, "post-001", {"text": "Rewritten body, now longer."})
        # Make sure the modification time moves even on coarse filesystems.
        stat = path.stat()
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))

        after = await source.get("post-001")
        assert before is not None and after is not None
        assert after.text == "Rewritten body, now longer."
        assert after.content_hash != before.content_hash


class TestInMemorySource:
    async def test_put_remove_and_scopes(self) -> None:
        source = InMemoryContentSource(
            [make_item("b", "two"), make_item("a", "one", content_type="faq")]
        )

        assert await source.list_ids(ALL, after=None, limit=10) == ["a", "b"]
        faq = RunOptions(scope=RunScope.TYPE, content_type="faq")
        assert await source.count(faq) == 1

        source.remove("a")
        source.remove("a")
        assert await source.exists("a") is False
        assert await source.count(ALL) == 1

    async def test_put_replaces(self) -> None:
        source = InMemoryContentSource()
        source.put(make_item("a", "one"))
        source.put(make_item("a", "uno"))

        item = await source.get("a")
        assert item is not None
        assert item.text == "uno"
