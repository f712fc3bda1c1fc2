"""Unit tests for the management CLI (kbindex.cli.manage)."""

from __future__ import annotations

from argparse import Namespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kbindex.cli.manage import _build_parser, _dispatch, _handle_search, _handle_start, main
from kbindex.config.settings import Settings
from kbindex.models.pipeline import (
    PipelinePhase,
    PipelineState,
    PipelineStatus,
    ProgressCounters,
    RunOptions,
    RunScope,
    RunStatus,
)
from kbindex.models.search import SearchResponse, SearchResult
from kbindex.utils.errors import PipelineAlreadyRunningError


def _components(**overrides: Any) -> dict[str, Any]:
    components: dict[str, Any] = {
        "pipeline": AsyncMock(),
        "retrieval": AsyncMock(),
        "job_queue": AsyncMock(),
        "settings": MagicMock(worker_poll_interval=0.5),
        "embedding_provider": AsyncMock(),
    }
    components.update(overrides)
    return components


# ======================================================================
# Parser
# ======================================================================


class TestParser:
    def test_start_options(self) -> None:
        args = _build_parser().parse_args(
            ["start", "--scope", "type", "--type", "faq", "--force", "--batch-size", "10"]
        )
        assert args.command == "start"
        assert (args.scope, args.type, args.force, args.batch_size) == ("type", "faq", True, 10)

    def test_defaults(self) -> None:
        args = _build_parser().parse_args(["search", "refund policy"])
        assert args.query == "refund policy"
        assert args.top_k == 8
        assert args.type is None

    def test_invalid_scope_exits(self) -> None:
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["start", "--scope", "everything"])

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main([])
        assert excinfo.value.code == 1
        assert "usage" in capsys.readouterr().out.lower()


# ======================================================================
# Handlers
# ======================================================================


class TestHandlers:
    async def test_start_builds_run_options(self, capsys: pytest.CaptureFixture[str]) -> None:
        pipeline = AsyncMock()
        pipeline.start.return_value = PipelineState(
            run_id="abc123",
            status=RunStatus.RUNNING,
            current_phase=PipelinePhase.DOCUMENT_BUILD,
            progress=ProgressCounters(total=12),
            batch_size=10,
        )
        args = Namespace(scope="item", type=None, id="post-1", force=False, batch_size=None)

        assert await _handle_start(args, _components(pipeline=pipeline)) == 0

        options = pipeline.start.call_args.args[0]
        assert options == RunOptions(scope=RunScope.ITEM, content_id="post-1")
        out = capsys.readouterr().out
        assert "abc123" in out
        assert "Document Build" in out

    async def test_search_prints_results(self, capsys: pytest.CaptureFixture[str]) -> None:
        retrieval = AsyncMock()
        retrieval.search.return_value = SearchResponse(
            results=[
                SearchResult(
                    chunk_id=1,
                    doc_id=1,
                    content_id="refunds",
                    title="Refund policy",
                    url="https://kb.example.com/refunds",
                    anchor="refund-window-1a2b3c4d",
                    heading_path=["Refunds", "Window"],
                    text="Refunds are issued within 30 days.",
                    score=0.91234,
                )
            ],
            total_scanned=4,
            total_candidates=4,
        )
        args = Namespace(query="refunds", top_k=3, type="policy")

        await _handle_search(args, _components(retrieval=retrieval))

        call = retrieval.search.call_args
        assert call.args[0] == "refunds"
        assert call.args[2].content_type == "policy"
        out = capsys.readouterr().out
        assert "[0.9123] Refund policy" in out
        assert "Refunds > Window" in out
        assert "4/4 vectors scanned" in out

    async def test_search_without_results(self, capsys: pytest.CaptureFixture[str]) -> None:
        retrieval = AsyncMock()
        retrieval.search.return_value = SearchResponse(truncated=True)

        args = Namespace(query="x", top_k=3, type=None)
        await _handle_search(args, _components(retrieval=retrieval))

        out = capsys.readouterr().out
        assert "No results." in out
        assert "(truncated)" in out


# ======================================================================
# Dispatch
# ======================================================================


class TestDispatch:
    async def test_routes_to_handler_and_closes(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        pipeline = AsyncMock()
        pipeline.get_status.return_value = PipelineStatus(status=RunStatus.IDLE)
        components = _components(pipeline=pipeline)

        with (
            patch("kbindex.main.build_components", AsyncMock(return_value=components)),
            patch("kbindex.main.close_components", AsyncMock()) as close,
        ):
            code = await _dispatch(Namespace(command="status", json=True), settings)

        assert code == 0
        close.assert_awaited_once_with(components)
        assert '"status": "idle"' in capsys.readouterr().out

    async def test_domain_errors_become_exit_code(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        pipeline = AsyncMock()
        pipeline.start.side_effect = PipelineAlreadyRunningError()
        components = _components(pipeline=pipeline)
        args = Namespace(
            command="start", scope="all", type=None, id=None, force=False, batch_size=None
        )

        with (
            patch("kbindex.main.build_components", AsyncMock(return_value=components)),
            patch("kbindex.main.close_components", AsyncMock()),
        ):
            code = await _dispatch(args, settings)

        assert code == 1
        assert "Error:" in capsys.readouterr().err

    async def test_work_until_idle(
        self, settings: Settings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        components = _components()
        args = Namespace(command="work", until_idle=True, max_jobs=4, poll_interval=None)

        with (
            patch("kbindex.main.build_components", AsyncMock(return_value=components)),
            patch("kbindex.main.close_components", AsyncMock()),
            patch("kbindex.pipeline.PipelineWorker") as worker_cls,
        ):
            worker_cls.return_value.run_until_idle = AsyncMock(return_value=3)
            code = await _dispatch(args, settings)

        assert code == 0
        worker_cls.return_value.run_until_idle.assert_awaited_once_with(max_jobs=4)
        assert "Processed 3 job(s)" in capsys.readouterr().out
