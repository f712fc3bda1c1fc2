"""Integration tests for complete indexing runs.

Every test wires the real SQLite repositories, vector index, job queue and
state store over a temporary database; only the embedding provider is the
deterministic fake from conftest.  Jobs are driven by a worker whose clock
sits a day ahead so delayed retries run immediately.
"""

from __future__ import annotations

from typing import Any

import pytest

from kbindex.models.kb import DocumentStatus
from kbindex.models.pipeline import (
    PipelinePhase,
    PipelineState,
    RunOptions,
    RunScope,
    RunStatus,
)
from kbindex.pipeline import PipelineWorker
from kbindex.utils.errors import ProviderError, RateLimitError
from tests.conftest import FakeEmbeddingProvider, make_item, words


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _seed(components: dict[str, Any], count: int) -> list[str]:
    ids = [f"item-{i:02d}" for i in range(count)]
    for i, content_id in enumerate(ids):
        components["content_source"].put(make_item(content_id, words(40, offset=i)))
    return ids


def _worker(components: dict[str, Any], clock) -> PipelineWorker:
    return PipelineWorker(components["pipeline"], components["job_queue"], clock=clock)


async def _run(components: dict[str, Any], clock, options: RunOptions | None = None):
    pipeline = components["pipeline"]
    await pipeline.start(options)
    await _worker(components, clock).run_until_idle()
    state, _ = await pipeline.load_state()
    return state


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------


async def test_full_run_indexes_everything(components: dict[str, Any], future_clock) -> None:
    ids = _seed(components, 7)
    seen_phases: list[PipelinePhase] = []

    def record(run_id: str, state: PipelineState) -> None:
        phase = state.current_phase
        if phase is not None and (not seen_phases or seen_phases[-1] != phase):
            seen_phases.append(phase)

    components["pipeline"].progress_tracker.register_listener(record)

    state = await _run(components, future_clock)

    assert state.status == RunStatus.COMPLETED
    assert state.progress.completed == len(ids)
    assert state.progress.failed == 0
    assert state.progress.percentage == 100
    assert state.completed_at is not None
    assert seen_phases == PipelinePhase.ordered()

    by_status = await components["documents"].counts_by_status()
    assert by_status == {DocumentStatus.INDEXED.value: len(ids)}
    totals = await components["chunks"].totals()
    assert await components["vector_index"].count() == totals["total_chunks"]
    assert state.stats["coverage"] == 100.0
    assert await components["job_queue"].pending_count() == 0


async def test_empty_and_excluded_items_are_skipped(
    components: dict[str, Any], future_clock
) -> None:
    source = components["content_source"]
    source.put(make_item("blank", ""))
    source.put(make_item("hidden", words(30), excluded=True))
    source.put(make_item("normal", words(30)))

    state = await _run(components, future_clock)

    assert state.status == RunStatus.COMPLETED
    assert state.progress.skipped == 2
    assert state.progress.completed == 1
    for content_id in ("blank", "hidden"):
        document = await components["documents"].get_by_content_id(content_id)
        assert document is not None
        assert document.status == DocumentStatus.EXCLUDED
        assert await components["chunks"].live_chunks(document.doc_id) == []
    assert await components["vector_index"].count() == 1


async def test_second_run_without_changes_embeds_nothing(
    components: dict[str, Any], fake_embedder: FakeEmbeddingProvider, future_clock
) -> None:
    _seed(components, 4)
    await _run(components, future_clock)
    calls = len(fake_embedder.calls)

    state = await _run(components, future_clock)

    assert state.status == RunStatus.COMPLETED
    assert len(fake_embedder.calls) == calls
    assert state.progress.skipped == 4
    assert await components["vector_index"].count() == 4


async def test_forced_run_rebuilds_without_duplicates(
    components: dict[str, Any], fake_embedder: FakeEmbeddingProvider, future_clock
) -> None:
    _seed(components, 3)
    await _run(components, future_clock)
    calls = len(fake_embedder.calls)

    state = await _run(components, future_clock, RunOptions(force=True))

    assert state.progress.completed == 3
    # Unchanged text keeps its chunks and vectors, so nothing is re-embedded.
    assert len(fake_embedder.calls) == calls
    assert await components["vector_index"].count() == 3


async def test_type_scoped_run(components: dict[str, Any], future_clock) -> None:
    _seed(components, 3)
    components["content_source"].put(make_item("faq-1", words(30), content_type="faq"))

    state = await _run(
        components, future_clock, RunOptions(scope=RunScope.TYPE, content_type="faq")
    )

    assert state.progress.total == 1
    assert await components["documents"].counts_by_status() == {"indexed": 1}


async def test_search_after_run(components: dict[str, Any], future_clock) -> None:
    source = components["content_source"]
    source.put(make_item("ml-1", "model dataset train predict metric"))
    source.put(make_item("ml-2", "train model report export"))
    source.put(make_item("ops-1", "deploy release cluster server"))
    source.put(make_item("ops-2", "backup storage network"))
    source.put(make_item("billing", "billing invoice refund account"))
    await _run(components, future_clock)

    response = await components["retrieval"].search("train model", top_k=2)

    assert {r.content_id for r in response.results} == {"ml-1", "ml-2"}
    assert response.results[0].score >= response.results[1].score
    assert response.total_scanned == 5


# ---------------------------------------------------------------------------
# Resumability
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("cut_after", [4, 6, 8, 10, 12])
async def test_stopped_run_resumes_from_persisted_status(
    components: dict[str, Any],
    fake_embedder: FakeEmbeddingProvider,
    future_clock,
    cut_after: int,
) -> None:
    ids = _seed(components, 12)
    pipeline = components["pipeline"]
    await pipeline.start()
    await _worker(components, future_clock).run_until_idle(max_jobs=cut_after)

    interrupted = await pipeline.stop()
    assert interrupted.status == RunStatus.IDLE

    state = await _run(components, future_clock)

    assert state.status == RunStatus.COMPLETED
    documents = components["documents"]
    assert await documents.count_by_status(DocumentStatus.INDEXED) == len(ids)
    assert await components["vector_index"].count() == len(ids)
    assert sum(len(batch) for batch in fake_embedder.calls) == len(ids)


async def test_two_workers_share_one_queue(components: dict[str, Any], future_clock) -> None:
    ids = _seed(components, 11)
    pipeline = components["pipeline"]
    await pipeline.start()
    first = _worker(components, future_clock)
    second = _worker(components, future_clock)

    while await first.run_once() + await second.run_once():
        pass

    state, _ = await pipeline.load_state()
    assert state.status == RunStatus.COMPLETED
    assert state.progress.completed == len(ids)


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


async def test_rate_limited_batch_is_retried_later(
    components: dict[str, Any], fake_embedder: FakeEmbeddingProvider, future_clock
) -> None:
    _seed(components, 2)
    # Exhausts the provider's own three attempts once; the phase then
    # reschedules the same cursor.
    fake_embedder.failures = [RateLimitError(retry_after=5) for _ in range(3)]

    state = await _run(components, future_clock)

    assert state.status == RunStatus.COMPLETED
    assert state.progress.completed == 2
    assert state.progress.failed == 0
    assert fake_embedder.sleeps == [5.0, 5.0]


async def test_repeated_rate_limits_abandon_the_batch(
    settings, fake_embedder: FakeEmbeddingProvider, content_source, future_clock
) -> None:
    from kbindex.main import build_components

    strict = settings.model_copy(update={"embed_rate_limit_max_retries": 1})
    components = await build_components(
        strict, embedding_provider=fake_embedder, content_source=content_source
    )
    content_source.put(make_item("only", words(30)))
    fake_embedder.failures = [RateLimitError(retry_after=5) for _ in range(6)]

    state = await _run(components, future_clock)

    assert state.status == RunStatus.COMPLETED
    assert state.progress.failed == 1
    assert state.progress.completed == 0
    document = await components["documents"].get_by_content_id("only")
    assert document is not None
    assert document.status == DocumentStatus.CHUNKED

    retried = await _run(components, future_clock)

    assert retried.progress.completed == 1
    document = await components["documents"].get_by_content_id("only")
    assert document is not None
    assert document.status == DocumentStatus.INDEXED


async def test_provider_failures_exhaust_chunk_attempts(
    components: dict[str, Any], fake_embedder: FakeEmbeddingProvider, future_clock
) -> None:
    components["content_source"].put(make_item("doomed", words(30)))
    fake_embedder.failures = [ProviderError("bad input", "fake", retryable=False)] * 3

    for _ in range(3):
        await _run(components, future_clock)

    stats = await components["pipeline"].get_stats()
    assert stats["failed_chunks"] == 1

    assert await components["pipeline"].retry_failed_chunks() == 1
    state = await _run(components, future_clock)

    assert state.progress.completed == 1
    assert (await components["pipeline"].get_stats())["failed_chunks"] == 0


@pytest.mark.parametrize("count", [5, 6])
async def test_batch_boundaries(components: dict[str, Any], future_clock, count: int) -> None:
    ids = _seed(components, count)

    state = await _run(components, future_clock)

    assert state.status == RunStatus.COMPLETED
    assert state.progress.completed == len(ids)
