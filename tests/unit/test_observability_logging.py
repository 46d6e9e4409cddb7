"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import pytest

from actiongraph.graph import NodeNotFoundError
from actiongraph.observability import close_file_logging, configure_logging
from actiongraph.observability.logging import LOG_FILENAME, render_console
from tests.fixtures.movies import CreateMovie, UpdateMovie

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from actiongraph.graph import Graph


@pytest.fixture
def jsonl(tmp_path: Path) -> Iterator[Path]:
    """File logging into tmp_path; yields the JSONL file."""
    configure_logging(verbosity=0, log_to_file=True, log_dir=tmp_path)
    yield tmp_path / LOG_FILENAME
    close_file_logging()
    configure_logging()


def _entries(path: Path, event: str) -> list[dict[str, Any]]:
    close_file_logging()
    lines = path.read_text(encoding="utf-8").splitlines()
    return [e for e in map(json.loads, lines) if e["event"] == event]


class TestConfigure:
    def test_console_only_stays_at_warning(self) -> None:
        configure_logging(verbosity=0)
        assert logging.getLogger().level == logging.WARNING

    def test_file_logging_opens_root_to_debug(self, tmp_path: Path) -> None:
        configure_logging(verbosity=0, log_to_file=True, log_dir=tmp_path / "logs")
        try:
            assert logging.getLogger().level == logging.DEBUG
            assert (tmp_path / "logs").is_dir()
        finally:
            close_file_logging()

    def test_file_logging_requires_log_dir(self) -> None:
        with pytest.raises(ValueError, match="log_dir is required"):
            configure_logging(log_to_file=True)

    def test_close_detaches_file_handler(self, tmp_path: Path) -> None:
        configure_logging(log_to_file=True, log_dir=tmp_path)
        close_file_logging()

        root = logging.getLogger()
        assert not any(isinstance(h, logging.FileHandler) for h in root.handlers)
        close_file_logging()


class TestConsoleRendering:
    def test_action_context_leads_the_line(self) -> None:
        line = render_console(
            None,
            "info",
            {
                "event": "action_committed",
                "action_id": "_7Hx",
                "action_type": "CreateMovie",
                "took_ms": 3,
                "level": "info",
                "timestamp": "2026-01-01T00:00:00Z",
                "logger": "actiongraph.graph.runner",
            },
        )
        assert line == "[CreateMovie _7Hx] action_committed took_ms=3"

    def test_without_action_context(self) -> None:
        line = render_console(None, "info", {"event": "migration_applied", "migration": "vnode"})
        assert line == "migration_applied migration='vnode'"


class TestActionContextInJsonl:
    def test_committed_action_is_tagged(self, graph: Graph, jsonl: Path) -> None:
        result = graph.run_as_system(CreateMovie(slugId="heat", title="Heat", year=1995))

        (committed,) = _entries(jsonl, "action_committed")
        assert committed["action_id"] == result.action_id
        assert committed["action_type"] == "CreateMovie"
        assert committed["logger"] == "actiongraph.graph.runner"
        assert committed["level"] == "info"
        assert "timestamp" in committed

    def test_change_recorder_events_carry_the_action(self, graph: Graph, jsonl: Path) -> None:
        result = graph.run_as_system(CreateMovie(slugId="heat", title="Heat", year=1995))

        (recorded,) = _entries(jsonl, "action_changes_recorded")
        assert recorded["action_id"] == result.action_id
        assert recorded["action_type"] == "CreateMovie"

    def test_aborted_action_is_tagged(self, graph: Graph, jsonl: Path) -> None:
        with pytest.raises(NodeNotFoundError):
            graph.run_as_system(UpdateMovie(key="no-such-movie", year=2000))

        (aborted,) = _entries(jsonl, "action_aborted")
        assert aborted["action_type"] == "UpdateMovie"
        assert aborted["action_id"].startswith("_")
        assert aborted["error"] == "NodeNotFoundError"
        assert aborted["state"] == "applying"

    def test_context_is_unbound_after_the_action(self, graph: Graph, jsonl: Path) -> None:
        graph.run_as_system(CreateMovie(slugId="heat", title="Heat", year=1995))
        with graph.allow_writes_without_action():
            pass

        (paused,) = _entries(jsonl, "trigger_paused")
        assert "action_id" not in paused
        assert "action_type" not in paused
