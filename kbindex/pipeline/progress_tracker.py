"""In-process progress broadcasting with listener callbacks.

The orchestrator calls :meth:`ProgressTracker.update` with every new
:class:`~kbindex.models.pipeline.PipelineState` it persists; listeners
(a CLI status printer, a test probe) are notified with the run id and
the state.  Listeners are keyed by run id, plus a wildcard key for
callers that want every run.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

from kbindex.models.pipeline import PipelineState
from kbindex.utils.logging import get_logger

ALL_RUNS = "*"


class ProgressTracker:
    """Tracks the latest state per run and broadcasts it to listeners."""

    def __init__(self) -> None:
        self._latest: dict[str, PipelineState] = {}
        self._listeners: dict[str, list[Callable]] = {}
        self._logger: structlog.BoundLogger = get_logger(__name__)

    async def update(self, state: PipelineState) -> None:
        """Record *state* and notify listeners of its run (and wildcard listeners)."""
        self._latest[state.run_id] = state
        self._logger.debug(
            "progress_update",
            run_id=state.run_id,
            status=state.status.value,
            phase=state.current_phase.value if state.current_phase else None,
            percentage=state.progress.percentage,
        )
        await self._notify_listeners(state)

    def register_listener(self, callback: Callable, run_id: str = ALL_RUNS) -> None:
        """Register a sync or async ``callback(run_id, state)``."""
        listeners = self._listeners.setdefault(run_id, [])
        if callback not in listeners:
            listeners.append(callback)

    def unregister_listener(self, callback: Callable, run_id: str = ALL_RUNS) -> None:
        listeners = self._listeners.get(run_id, [])
        if callback in listeners:
            listeners.remove(callback)

    def get_latest(self, run_id: str) -> PipelineState | None:
        return self._latest.get(run_id)

    async def _notify_listeners(self, state: PipelineState) -> None:
        """Invoke listeners; a failing listener is logged and skipped."""
        callbacks = [*self._listeners.get(state.run_id, []), *self._listeners.get(ALL_RUNS, [])]
        for callback in callbacks:
            try:
                result = callback(state.run_id, state)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._logger.warning(
                    "listener_callback_error",
                    run_id=state.run_id,
                    error=str(exc),
                    callback=getattr(callback, "__name__", repr(callback)),
                )
