"""Adaptive batch sizing from observed per-item processing time.

The manager keeps a rolling window of seconds-per-item samples.  After
each batch the projected batch time (rolling average x current size) is
compared with two thresholds: fast batches grow by one step, slow
batches shrink by one step, anything in between keeps the size.

Size and history are plain values so the orchestrator can persist them
in the pipeline state and rebuild the manager for every job.
"""

from __future__ import annotations

import structlog

from kbindex.utils.logging import get_logger

MIN_BATCH = 5
MAX_BATCH = 50
TARGET_TIME = 5.0          # seconds per batch we aim for
INCREASE_THRESHOLD = 2.0   # projected batch time below this grows the batch
DECREASE_THRESHOLD = 10.0  # projected batch time above this shrinks the batch
ADJUSTMENT_STEP = 5
MAX_HISTORY_SAMPLES = 10


def clamp_size(size: int) -> int:
    return max(MIN_BATCH, min(MAX_BATCH, size))


class BatchSizeManager:
    """Tune the batch size between :data:`MIN_BATCH` and :data:`MAX_BATCH`.

    Parameters
    ----------
    initial_size:
        Starting size, clamped into range.  Defaults to :data:`MIN_BATCH`.
    history:
        Previously recorded seconds-per-item samples (oldest first).
    """

    def __init__(self, initial_size: int | None = None, history: list[float] | None = None) -> None:
        self._current_size = clamp_size(initial_size if initial_size is not None else MIN_BATCH)
        self._history: list[float] = list(history or [])[-MAX_HISTORY_SAMPLES:]
        self._logger: structlog.BoundLogger = get_logger(__name__)

    @property
    def current_size(self) -> int:
        return self._current_size

    @property
    def history(self) -> list[float]:
        return list(self._history)

    def update_from_result(self, processing_time: float, items_processed: int) -> int:
        """Record one batch and return the size to use for the next one."""
        if items_processed <= 0:
            return self._current_size

        self._history.append(processing_time / items_processed)
        self._history = self._history[-MAX_HISTORY_SAMPLES:]

        previous = self._current_size
        projected = self.rolling_average() * self._current_size
        self._current_size = self.calculate_next_batch_size(projected, self._current_size)
        if self._current_size != previous:
            self._logger.info(
                "batch_size_adjusted",
                previous=previous,
                current=self._current_size,
                projected_batch_seconds=round(projected, 3),
            )
        return self._current_size

    @staticmethod
    def calculate_next_batch_size(avg_batch_time: float, current_size: int) -> int:
        if avg_batch_time < INCREASE_THRESHOLD:
            return min(MAX_BATCH, current_size + ADJUSTMENT_STEP)
        if avg_batch_time > DECREASE_THRESHOLD:
            return max(MIN_BATCH, current_size - ADJUSTMENT_STEP)
        return current_size

    @staticmethod
    def calculate_optimal_size(time_per_item: float) -> int:
        """Size that would make one batch take :data:`TARGET_TIME` seconds."""
        if time_per_item <= 0:
            return MAX_BATCH
        return clamp_size(int(TARGET_TIME // time_per_item))

    def rolling_average(self) -> float:
        if not self._history:
            return TARGET_TIME / MIN_BATCH
        return sum(self._history) / len(self._history)

    def reset(self, initial_size: int | None = None) -> int:
        """Drop the samples and restart from *initial_size* (default :data:`MIN_BATCH`)."""
        self._current_size = clamp_size(initial_size if initial_size is not None else MIN_BATCH)
        self._history = []
        return self._current_size

    def get_statistics(self) -> dict[str, float | int]:
        if not self._history:
            return {
                "samples": 0,
                "avg_time_per_item": 0.0,
                "current_batch_size": self._current_size,
                "estimated_batch_time": 0.0,
                "optimal_batch_size": self._current_size,
            }
        average = self.rolling_average()
        return {
            "samples": len(self._history),
            "avg_time_per_item": round(average, 4),
            "current_batch_size": self._current_size,
            "estimated_batch_time": round(average * self._current_size, 2),
            "optimal_batch_size": self.calculate_optimal_size(average),
        }
