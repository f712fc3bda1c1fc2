# =============================================================================
# kbindex/cli/manage.py: index management CLI
# =============================================================================
#
# Operator interface for the five-phase indexing pipeline
# (DocumentBuild -> ChunkBuild -> EmbedChunks -> IndexUpsert -> Cleanup)
# and the retrieval service.
#
# Subcommands:
#
#   start         Begin a run (all content, one type, or one item)
#   stop          Cancel the active run and its queued jobs
#   status        Show run status and phase progress (--json for raw)
#   work          Run the queue worker (forever, or --until-idle)
#   search        Semantic search over indexed chunks
#   similar       Chunks similar to a given content item
#   stats         Index statistics (documents, chunks, vectors, coverage)
#   retry-failed  Re-arm chunks that exhausted their embedding attempts
#   index-item    Schedule a delayed reindex of one item
#   remove-item   Schedule removal of one item from the index
#
# `start` only schedules the first job; nothing is processed until a
# worker runs.  A typical local session:
#
#   python -m kbindex.cli start
#   python -m kbindex.cli work --until-idle
#   python -m kbindex.cli search "how do refunds work" --top-k 5
# =============================================================================

"""Manage kbindex indexing runs and query the index.

Usage::

    python -m kbindex.cli start --scope type --type guide --force
    python -m kbindex.cli work --until-idle
    python -m kbindex.cli status --json
    python -m kbindex.cli search "rotate api keys" --top-k 5
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from kbindex.config.settings import Settings
from kbindex.utils.errors import KnowledgeBaseError

_Handler = Callable[[argparse.Namespace, dict[str, Any]], Awaitable[int]]


# ---------------------------------------------------------------------------
# Run control
# ---------------------------------------------------------------------------


async def _handle_start(args: argparse.Namespace, components: dict[str, Any]) -> int:
    from kbindex.models.pipeline import RunOptions, RunScope

    options = RunOptions(
        scope=RunScope(args.scope),
        content_type=args.type,
        content_id=args.id,
        force=args.force,
        batch_size=args.batch_size,
    )
    state = await components["pipeline"].start(options)
    print(f"Started run {state.run_id}")
    print(f"  Scope:        {options.scope.value}")
    print(f"  Items:        {state.progress.total}")
    print(f"  Batch size:   {state.batch_size}")
    print(f"  First phase:  {state.current_phase.label if state.current_phase else '-'}")
    return 0


async def _handle_stop(args: argparse.Namespace, components: dict[str, Any]) -> int:
    state = await components["pipeline"].stop()
    print(f"Pipeline is {state.status.value}")
    return 0


async def _handle_status(args: argparse.Namespace, components: dict[str, Any]) -> int:
    status = await components["pipeline"].get_status()
    if args.json:
        print(status.model_dump_json(indent=2))
        return 0

    progress = status.progress
    print("Pipeline Status")
    print("=" * 40)
    print(f"  Status:         {status.status.value}")
    if status.current_phase is not None:
        print(
            f"  Phase:          {status.current_phase.label} "
            f"({status.phase_number}/{status.total_phases})"
        )
        phase = progress.phase
        print(
            f"  Phase progress: {phase.completed}/{phase.total} done, "
            f"{phase.failed} failed, {phase.skipped} skipped ({phase.percentage}%)"
        )
    print(
        f"  Overall:        {progress.completed}/{progress.total} indexed, "
        f"{progress.failed} failed ({progress.percentage}%)"
    )
    if progress.eta_seconds is not None:
        print(f"  ETA:            {progress.eta_seconds}s")
    print(f"  Queued jobs:    {status.pending_jobs}")
    if status.failure_reason:
        print(f"  Failure:        {status.failure_reason}")
    if status.last_error:
        print(f"  Last error:     {status.last_error}")
    return 0


async def _handle_work(args: argparse.Namespace, components: dict[str, Any]) -> int:
    from kbindex.pipeline import PipelineWorker

    worker = PipelineWorker(
        components["pipeline"],
        components["job_queue"],
        poll_interval=args.poll_interval or components["settings"].worker_poll_interval,
    )
    if args.until_idle:
        handled = await worker.run_until_idle(max_jobs=args.max_jobs)
        print(f"Processed {handled} job(s)")
        return 0

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)
    print("Worker running; press Ctrl+C to stop.")
    await worker.run_forever(stop_event)
    return 0


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def _print_results(response: Any) -> None:
    if not response.results:
        print("No results.")
    for rank, result in enumerate(response.results, start=1):
        path = " > ".join(result.heading_path) or "(top)"
        print(f"{rank:>2}. [{result.score:.4f}] {result.title}  #{result.anchor}")
        print(f"    {result.url}  {path}")
        snippet = " ".join(result.text.split())
        print(f"    {snippet[:200]}{'...' if len(snippet) > 200 else ''}")
    scanned = f"{response.total_scanned}/{response.total_candidates} vectors scanned"
    if response.truncated:
        scanned += " (truncated)"
    print(f"\n{scanned} in {response.query_time_ms} ms")


async def _handle_search(args: argparse.Namespace, components: dict[str, Any]) -> int:
    from kbindex.models.search import SearchFilters

    filters = SearchFilters(content_type=args.type) if args.type else None
    response = await components["retrieval"].search(args.query, args.top_k, filters)
    _print_results(response)
    return 0


async def _handle_similar(args: argparse.Namespace, components: dict[str, Any]) -> int:
    response = await components["retrieval"].find_similar_to_item(args.content_id, args.top_k)
    _print_results(response)
    return 0


async def _handle_stats(args: argparse.Namespace, components: dict[str, Any]) -> int:
    stats = await components["pipeline"].get_stats()
    if args.json:
        print(json.dumps(stats, indent=2, default=str))
        return 0

    print("Index Statistics")
    print("=" * 40)
    print(f"  Documents:        {stats['total_docs']}")
    print(f"    indexed:        {stats['indexed_docs']}")
    print(f"    pending:        {stats['pending_docs']}")
    print(f"    chunked:        {stats['chunked_docs']}")
    print(f"    error:          {stats['error_docs']}")
    print(f"    excluded:       {stats['excluded_docs']}")
    print(f"  Chunks:           {stats['total_chunks']}")
    print(f"  Vectors:          {stats['total_vectors']}")
    print(f"  Tokens:           {stats['total_tokens']}")
    print(f"  Avg chunks/doc:   {stats['avg_chunks_per_doc']}")
    print(f"  Coverage:         {stats['coverage']}%")
    print(f"  Failed chunks:    {stats['failed_chunks']}")
    print(f"  Model:            {stats['vector_model'] or '-'} ({stats['vector_dimensions']} dims)")
    print(f"  Last indexed:     {stats['last_indexed_at'] or '-'}")
    return 0


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


async def _handle_retry_failed(args: argparse.Namespace, components: dict[str, Any]) -> int:
    reset = await components["pipeline"].retry_failed_chunks()
    print(f"Re-armed {reset} failed chunk(s); start a run or index the items to embed them.")
    return 0


async def _handle_index_item(args: argparse.Namespace, components: dict[str, Any]) -> int:
    job_id = await components["pipeline"].schedule_single_item(args.content_id)
    print(f"Scheduled reindex of {args.content_id} (job {job_id})")
    return 0


async def _handle_remove_item(args: argparse.Namespace, components: dict[str, Any]) -> int:
    job_id = await components["pipeline"].schedule_item_removal(args.content_id)
    print(f"Scheduled removal of {args.content_id} (job {job_id})")
    return 0


_HANDLERS: dict[str, _Handler] = {
    "start": _handle_start,
    "stop": _handle_stop,
    "status": _handle_status,
    "work": _handle_work,
    "search": _handle_search,
    "similar": _handle_similar,
    "stats": _handle_stats,
    "retry-failed": _handle_retry_failed,
    "index-item": _handle_index_item,
    "remove-item": _handle_remove_item,
}


async def _dispatch(args: argparse.Namespace, app_settings: Settings) -> int:
    """Build the components, run the handler for *args.command*, clean up."""
    from kbindex.main import build_components, close_components

    try:
        components = await build_components(app_settings)
    except KnowledgeBaseError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        return await _HANDLERS[args.command](args, components)
    except KnowledgeBaseError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await close_components(components)


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the management CLI."""
    parser = argparse.ArgumentParser(
        prog="python -m kbindex.cli",
        description="Manage the kbindex knowledge-base index.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Index commands")

    # -- start --
    start_parser = subparsers.add_parser("start", help="Start an indexing run")
    start_parser.add_argument(
        "--scope",
        choices=["all", "type", "item"],
        default="all",
        help="What to index (default: all)",
    )
    start_parser.add_argument("--type", help="Content type (required with --scope type)")
    start_parser.add_argument("--id", help="Content id (required with --scope item)")
    start_parser.add_argument(
        "--force", action="store_true", help="Rebuild documents even when unchanged"
    )
    start_parser.add_argument(
        "--batch-size",
        type=int,
        dest="batch_size",
        help="Fixed batch size (disables dynamic sizing)",
    )

    # -- stop --
    subparsers.add_parser("stop", help="Stop the active run")

    # -- status --
    status_parser = subparsers.add_parser("status", help="Show pipeline status")
    status_parser.add_argument("--json", action="store_true", help="Print raw JSON")

    # -- work --
    work_parser = subparsers.add_parser("work", help="Run the queue worker")
    work_parser.add_argument(
        "--until-idle",
        action="store_true",
        dest="until_idle",
        help="Exit once no job is due instead of polling forever",
    )
    work_parser.add_argument(
        "--max-jobs", type=int, dest="max_jobs", help="Stop after this many jobs"
    )
    work_parser.add_argument(
        "--poll-interval",
        type=float,
        dest="poll_interval",
        help="Seconds between polls when idle",
    )

    # -- search --
    search_parser = subparsers.add_parser("search", help="Semantic search")
    search_parser.add_argument("query", help="Query text")
    search_parser.add_argument("--top-k", type=int, default=8, dest="top_k")
    search_parser.add_argument("--type", help="Only search this content type")

    # -- similar --
    similar_parser = subparsers.add_parser("similar", help="Chunks similar to an item")
    similar_parser.add_argument("content_id", help="Content id to compare against")
    similar_parser.add_argument("--top-k", type=int, default=5, dest="top_k")

    # -- stats --
    stats_parser = subparsers.add_parser("stats", help="Show index statistics")
    stats_parser.add_argument("--json", action="store_true", help="Print raw JSON")

    # -- maintenance --
    subparsers.add_parser("retry-failed", help="Re-arm chunks whose embedding failed")
    index_parser = subparsers.add_parser("index-item", help="Schedule a reindex of one item")
    index_parser.add_argument("content_id", help="Content id")
    remove_parser = subparsers.add_parser("remove-item", help="Schedule removal of one item")
    remove_parser.add_argument("content_id", help="Content id")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """CLI entry point.

    Parses the subcommand, reads Settings from the environment / ``.env``,
    configures logging and dispatches to the matching handler.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    app_settings = Settings()

    from kbindex.main import setup_logging

    setup_logging(app_settings)
    sys.exit(asyncio.run(_dispatch(args, app_settings)))


if __name__ == "__main__":
    main()
