"""Pipeline state management models for the indexing pipeline.

Defines Pydantic v2 models for phases, run options, progress counters and
the persisted run state.  PipelineState is frozen: every transition
produces a new instance via ``model_copy(update={...})`` which the
orchestrator writes back with a compare-and-set, so concurrent workers
never overwrite each other's counters.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)  # noqa: UP017


# ---------------------------------------------------------------------------
# PipelinePhase: the fixed, ordered phase list.
# ---------------------------------------------------------------------------
class PipelinePhase(str, Enum):  # noqa: UP042
    """Phases of the indexing pipeline, in execution order.

    The values double as the job names enqueued for each phase.
    """

    DOCUMENT_BUILD = "kb_document_build"  # Sync documents from the content source
    CHUNK_BUILD = "kb_chunk_build"        # Chunk pending documents
    EMBED_CHUNKS = "kb_embed_chunks"      # Embed chunks that have no vector
    INDEX_UPSERT = "kb_index_upsert"      # Finalize fully embedded documents
    CLEANUP = "kb_cleanup"                # Remove stale/orphan rows, compute stats

    @classmethod
    def ordered(cls) -> list[PipelinePhase]:
        return list(cls)

    @property
    def index(self) -> int:
        return PipelinePhase.ordered().index(self)

    @property
    def label(self) -> str:
        return self.value.removeprefix("kb_").replace("_", " ").title()

    def next(self) -> PipelinePhase | None:
        """Return the following phase, or None after the last one."""
        phases = PipelinePhase.ordered()
        position = phases.index(self)
        if position + 1 < len(phases):
            return phases[position + 1]
        return None


class RunStatus(str, Enum):  # noqa: UP042
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"  # reserved, never entered
    COMPLETED = "completed"
    FAILED = "failed"


class RunScope(str, Enum):  # noqa: UP042
    ALL = "all"     # every content item
    TYPE = "type"   # one content type
    ITEM = "item"   # a single content id


class RunOptions(BaseModel):
    """Configuration captured when a run starts."""

    model_config = ConfigDict(frozen=True)

    scope: RunScope = RunScope.ALL
    content_type: str | None = None
    content_id: str | None = None
    force: bool = False
    batch_size: int | None = Field(default=None, ge=1, le=500)


# ---------------------------------------------------------------------------
# Progress counters
# ---------------------------------------------------------------------------
class PhaseProgress(BaseModel):
    """Counters scoped to the current phase; reset on every advance."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    percentage: int = 0

    @property
    def processed(self) -> int:
        return self.completed + self.failed + self.skipped


class ProgressCounters(BaseModel):
    """Overall run counters.

    ``total`` is the number of content items in scope; ``completed`` counts
    documents finalized by IndexUpsert during this run.
    """

    model_config = ConfigDict(frozen=True)

    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    percentage: int = 0
    phase: PhaseProgress = Field(default_factory=PhaseProgress)
    current_batch: int = 0
    total_batches: int = 0
    avg_process_time: float = 0.0
    eta_seconds: int | None = None


class PipelineState(BaseModel):
    """Persisted state of the (single) indexing run.

    Stored as JSON under one key in the state store and replaced with a
    compare-and-set on every mutation.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str = ""
    status: RunStatus = RunStatus.IDLE
    current_phase: PipelinePhase | None = None
    config: RunOptions | None = None
    progress: ProgressCounters = Field(default_factory=ProgressCounters)
    # Last processed id for the current phase; an optimization only, item
    # status flags decide what is left to do.
    cursor: str | None = None
    batch_size: int = 20
    batch_history: list[float] = Field(default_factory=list)
    rate_limit_retries: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_activity: datetime | None = None
    failure_reason: str | None = None
    last_error: str | None = None
    stats: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.status == RunStatus.RUNNING


class PipelineStatus(BaseModel):
    """Read model returned by ``get_status()``."""

    model_config = ConfigDict(frozen=True)

    status: RunStatus
    current_phase: PipelinePhase | None = None
    phase_number: int = 0
    total_phases: int = len(PipelinePhase)
    progress: ProgressCounters = Field(default_factory=ProgressCounters)
    stats: dict[str, Any] = Field(default_factory=dict)
    config: RunOptions | None = None
    started_at: datetime | None = None
    last_activity: datetime | None = None
    failure_reason: str | None = None
    last_error: str | None = None
    pending_jobs: int = 0


# ---------------------------------------------------------------------------
# Batch execution
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class BatchOutcome:
    """Result of one ``run_batch`` call.

    ``done`` means the phase found nothing left to process.  A non-None
    ``retry_after`` asks the driver to re-run the same cursor after that
    many seconds (rate limiting).
    """

    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    indexed: int = 0
    next_cursor: str | None = None
    done: bool = False
    retry_after: float | None = None
    error: str | None = None
    stats: dict[str, Any] | None = None


class JobStatus(str, Enum):  # noqa: UP042
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QueuedJob(BaseModel):
    """A job row claimed from the durable queue."""

    model_config = ConfigDict(frozen=True)

    job_id: int
    job_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    group: str
    run_at: datetime = Field(default_factory=_utcnow)
    attempts: int = 0
    status: JobStatus = JobStatus.PENDING
