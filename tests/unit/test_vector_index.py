"""Unit tests for the SQLite and in-memory vector indexes.

Both backends run the same contract tests via a parametrized fixture.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path

import numpy as np
import pytest

from kbindex.interfaces.vector_index import IVectorIndex
from kbindex.models.kb import VectorMetadata
from kbindex.models.search import SearchFilters
from kbindex.providers.vector_store import InMemoryVectorIndex, SQLiteVectorIndex
from kbindex.providers.vector_store.similarity import (
    deserialize_vector,
    rank_by_cosine,
    serialize_vector,
)
from kbindex.utils.errors import ValidationError


def _meta(doc_id: int, content_id: str, content_type: str = "guide", **kwargs) -> VectorMetadata:
    return VectorMetadata(
        doc_id=doc_id,
        content_id=content_id,
        content_type=content_type,
        provider="fake",
        model="fake/embed-test",
        **kwargs,
    )


@pytest.fixture(params=["sqlite", "memory"])
async def index(request: pytest.FixtureRequest, tmp_path: Path) -> IVectorIndex:
    if request.param == "sqlite":
        backend: IVectorIndex = SQLiteVectorIndex(tmp_path / "vectors.db", max_scan=100)
    else:
        backend = InMemoryVectorIndex(max_scan=100)
    await backend.initialize()
    return backend


@pytest.fixture()
async def abc_index(index: IVectorIndex) -> IVectorIndex:
    """Three vectors: A along the query, B orthogonal, C opposite."""
    await index.store(1, [1.0, 0.0], _meta(10, "a", published_at=date(2024, 1, 10)))
    await index.store(2, [0.0, 1.0], _meta(20, "b", "faq", published_at=date(2024, 6, 1)))
    await index.store(3, [-1.0, 0.0], _meta(30, "c", published_at=date(2025, 2, 1)))
    return index


class TestSearch:
    async def test_ranks_by_cosine(self, abc_index: IVectorIndex) -> None:
        result = await abc_index.search([1.0, 0.0], top_k=3)

        assert [m.content_id for m in result.matches] == ["a", "b", "c"]
        assert [m.score for m in result.matches] == [1.0, 0.0, -1.0]
        assert result.total_scanned == 3
        assert result.total_candidates == 3
        assert result.truncated is False

    async def test_top_k_limits_matches(self, abc_index: IVectorIndex) -> None:
        result = await abc_index.search([1.0, 0.0], top_k=1)

        assert len(result.matches) == 1
        assert result.matches[0].chunk_id == 1
        assert result.matches[0].doc_id == 10
        assert result.total_scanned == 3

    async def test_empty_index(self, index: IVectorIndex) -> None:
        result = await index.search([1.0, 0.0], top_k=5)
        assert result.matches == []
        assert result.total_scanned == 0

    async def test_dimension_mismatch_raises(self, abc_index: IVectorIndex) -> None:
        with pytest.raises(ValidationError, match="[Dd]imension"):
            await abc_index.search([1.0, 0.0, 0.0], top_k=3)

    async def test_content_type_filter(self, abc_index: IVectorIndex) -> None:
        result = await abc_index.search([1.0, 0.0], 3, SearchFilters(content_type="faq"))
        assert [m.content_id for m in result.matches] == ["b"]
        assert result.total_candidates == 1

    async def test_filter_alias_type(self, abc_index: IVectorIndex) -> None:
        filters = SearchFilters.model_validate({"type": "guide"})
        result = await abc_index.search([1.0, 0.0], 3, filters)
        assert {m.content_id for m in result.matches} == {"a", "c"}

    async def test_ids_and_exclusions(self, abc_index: IVectorIndex) -> None:
        only = await abc_index.search([1.0, 0.0], 3, SearchFilters(ids=["b", "c"]))
        assert [m.content_id for m in only.matches] == ["b", "c"]

        without = await abc_index.search([1.0, 0.0], 3, SearchFilters(exclude_ids=["a"]))
        assert [m.content_id for m in without.matches] == ["b", "c"]

        none = await abc_index.search([1.0, 0.0], 3, SearchFilters(ids=[]))
        assert none.matches == []

    async def test_empty_exclusion_list_matches_everything(self, abc_index: IVectorIndex) -> None:
        result = await abc_index.search([1.0, 0.0], 3, SearchFilters(exclude_ids=[]))
        assert len(result.matches) == 3

    async def test_date_range(self, abc_index: IVectorIndex) -> None:
        filters = SearchFilters(date_after=date(2024, 3, 1), date_before=date(2024, 12, 31))
        result = await abc_index.search([1.0, 0.0], 3, filters)
        assert [m.content_id for m in result.matches] == ["b"]

    async def test_scan_ceiling_truncates(self, tmp_path: Path) -> None:
        index = SQLiteVectorIndex(tmp_path / "capped.db", max_scan=2)
        await index.initialize()
        for chunk_id in range(1, 6):
            await index.store(chunk_id, [1.0, float(chunk_id)], _meta(chunk_id, f"doc-{chunk_id}"))

        result = await index.search([0.0, 1.0], top_k=5)

        assert result.total_scanned == 2
        assert result.total_candidates == 5
        assert result.truncated is True
        # Only the two lowest chunk ids are scored.
        assert {m.chunk_id for m in result.matches} == {1, 2}

    async def test_memory_scan_ceiling_matches_sqlite(self) -> None:
        index = InMemoryVectorIndex(max_scan=2)
        for chunk_id in range(1, 6):
            await index.store(chunk_id, [1.0, float(chunk_id)], _meta(chunk_id, f"doc-{chunk_id}"))

        result = await index.search([0.0, 1.0], top_k=5)

        assert result.truncated is True
        assert {m.chunk_id for m in result.matches} == {1, 2}


class TestWrites:
    async def test_store_is_an_upsert(self, index: IVectorIndex) -> None:
        await index.store(7, [1.0, 0.0], _meta(1, "x"))
        await index.store(7, [0.0, 1.0], _meta(1, "x"))

        assert await index.count() == 1
        record = await index.get(7)
        assert record is not None
        assert record.vector == [0.0, 1.0]
        assert record.dims == 2
        assert record.metadata.content_id == "x"

    async def test_empty_vector_rejected(self, index: IVectorIndex) -> None:
        with pytest.raises(ValidationError):
            await index.store(1, [], _meta(1, "x"))

    async def test_delete_variants(self, abc_index: IVectorIndex) -> None:
        assert await abc_index.delete(1) is True
        assert await abc_index.delete(1) is False
        assert await abc_index.exists(1) is False

        assert await abc_index.delete_many([2, 99]) == 1
        assert await abc_index.delete_for_document(30) == 1
        assert await abc_index.chunk_ids() == []

    async def test_update_document_metadata(self, abc_index: IVectorIndex) -> None:
        assert await abc_index.update_document_metadata(10, "faq", date(2024, 7, 1)) == 1
        assert await abc_index.update_document_metadata(99, "faq", None) == 0

        assert await abc_index.count(SearchFilters(content_type="faq")) == 2
        record = await abc_index.get(1)
        assert record is not None
        assert record.metadata.content_type == "faq"
        assert record.metadata.published_at == date(2024, 7, 1)
        assert record.vector == [1.0, 0.0]

    async def test_count_with_filters(self, abc_index: IVectorIndex) -> None:
        assert await abc_index.count() == 3
        assert await abc_index.count(SearchFilters(doc_id=20)) == 1
        assert await abc_index.count(SearchFilters(chunk_ids=[1, 3])) == 2

    async def test_describe(self, index: IVectorIndex) -> None:
        empty = await index.describe()
        assert empty["dimensions"] is None

        await index.store(1, [0.5, 0.5, 0.5], _meta(1, "x"))
        info = await index.describe()
        assert info["model"] == "fake/embed-test"
        assert info["dimensions"] == 3
        assert info["bytes_per_vector"] == 12

    async def test_get_missing(self, index: IVectorIndex) -> None:
        assert await index.get(404) is None


class TestSimilarity:
    def test_serialize_is_little_endian_float32(self) -> None:
        blob = serialize_vector([1.0, -2.5, 0.25])

        assert len(blob) == 12
        assert deserialize_vector(blob).tolist() == [1.0, -2.5, 0.25]

    def test_zero_vectors_score_zero(self) -> None:
        ranked = rank_by_cosine([1.0, 0.0], [1, 2], np.array([[0.0, 0.0], [2.0, 0.0]]), 2)
        assert ranked == [(2, 1.0), (1, 0.0)]

    def test_ties_break_on_chunk_id(self) -> None:
        ranked = rank_by_cosine([1.0, 0.0], [9, 4], np.array([[1.0, 0.0], [3.0, 0.0]]), 2)
        assert ranked == [(4, 1.0), (9, 1.0)]

    def test_scores_are_rounded(self) -> None:
        ranked = rank_by_cosine([1.0, 1.0], [1], np.array([[1.0, 0.0]]), 1)
        assert ranked == [(1, 0.7071)]
