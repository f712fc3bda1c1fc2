"""Unit tests for adaptive batch sizing."""

from __future__ import annotations

import pytest

from kbindex.pipeline.batch_size_manager import (
    MAX_BATCH,
    MAX_HISTORY_SAMPLES,
    MIN_BATCH,
    BatchSizeManager,
)


class TestInitialSize:
    def test_defaults_to_minimum(self) -> None:
        assert BatchSizeManager().current_size == MIN_BATCH

    @pytest.mark.parametrize(("initial", "expected"), [(1, MIN_BATCH), (20, 20), (500, MAX_BATCH)])
    def test_clamped_into_range(self, initial: int, expected: int) -> None:
        assert BatchSizeManager(initial).current_size == expected

    def test_history_is_trimmed(self) -> None:
        manager = BatchSizeManager(history=[float(i) for i in range(15)])
        assert len(manager.history) == MAX_HISTORY_SAMPLES
        assert manager.history[0] == 5.0


class TestUpdates:
    def test_fast_batches_grow(self) -> None:
        manager = BatchSizeManager(5)
        # 0.1 s per item -> projected 0.5 s for a batch of 5
        assert manager.update_from_result(processing_time=0.5, items_processed=5) == 10

    def test_slow_batches_shrink(self) -> None:
        manager = BatchSizeManager(20)
        # 1.5 s per item -> projected 30 s
        assert manager.update_from_result(processing_time=30.0, items_processed=20) == 15

    def test_steady_batches_keep_size(self) -> None:
        manager = BatchSizeManager(10)
        assert manager.update_from_result(processing_time=5.0, items_processed=10) == 10

    def test_empty_batch_is_ignored(self) -> None:
        manager = BatchSizeManager(10)
        assert manager.update_from_result(processing_time=3.0, items_processed=0) == 10
        assert manager.history == []

    def test_never_exceeds_bounds(self) -> None:
        fast = BatchSizeManager(MAX_BATCH)
        assert fast.update_from_result(0.01, 10) == MAX_BATCH

        slow = BatchSizeManager(MIN_BATCH)
        assert slow.update_from_result(100.0, 5) == MIN_BATCH


class TestHelpers:
    @pytest.mark.parametrize(
        ("time_per_item", "expected"), [(0.5, 10), (0.0, MAX_BATCH), (10.0, MIN_BATCH)]
    )
    def test_optimal_size(self, time_per_item: float, expected: int) -> None:
        assert BatchSizeManager.calculate_optimal_size(time_per_item) == expected

    def test_rolling_average_without_samples(self) -> None:
        assert BatchSizeManager().rolling_average() == pytest.approx(1.0)

    def test_statistics(self) -> None:
        manager = BatchSizeManager(10, history=[0.5, 0.5])

        assert BatchSizeManager().get_statistics()["samples"] == 0
        assert manager.get_statistics() == {
            "samples": 2,
            "avg_time_per_item": 0.5,
            "current_batch_size": 10,
            "estimated_batch_time": 5.0,
            "optimal_batch_size": 10,
        }

    def test_reset(self) -> None:
        manager = BatchSizeManager(30, history=[1.0])
        assert manager.reset() == MIN_BATCH
        assert manager.history == []

    def test_reset_to_configured_size(self) -> None:
        manager = BatchSizeManager(45, history=[0.1, 0.2])
        assert manager.reset(20) == 20
        assert manager.current_size == 20
        assert manager.reset(500) == MAX_BATCH
