"""Tests for the Graph facade."""

from __future__ import annotations

import pytest

from actiongraph.graph import (
    ActionRegistry,
    Graph,
    GraphStore,
    IntegrityError,
    SchemaRegistry,
    UndoAction,
    WriteTransaction,
)
from actiongraph.graph.changes import TRACK_ACTION_CHANGES
from tests.fixtures.movies import CreateMovie, Movie, MovieFranchise


class TestConstruction:
    def test_core_types_and_undo_are_registered(self, store: GraphStore) -> None:
        schema = SchemaRegistry(MovieFranchise)
        actions = ActionRegistry()

        graph = Graph(store, schema, actions)

        assert "User" in schema
        assert "Action" in schema
        assert schema.finalized
        assert actions.get("UndoAction") is UndoAction
        assert graph.actions is actions

    def test_defaults(self, store: GraphStore) -> None:
        graph = Graph(store)
        assert "User" in graph.schema
        assert "UndoAction" in graph.actions


class TestSnapshots:
    def test_reset_to_snapshot(self, graph: Graph) -> None:
        snapshot = graph.snapshot()
        graph.run_as_system(CreateMovie(slugId="heat", title="Heat", year=1995))
        assert graph.pull(Movie, "slugId") == [{"slugId": "heat"}]

        graph.reset_to_snapshot(snapshot)

        assert graph.pull(Movie) == []
        assert graph.snapshot() == snapshot
        # The restored graph keeps working.
        graph.run_as_system(CreateMovie(slugId="heat", title="Heat", year=1995))


class TestWritesWithoutAction:
    def test_raw_write_commits(self, graph: Graph) -> None:
        def create(tx: WriteTransaction) -> str:
            return tx.create_vnode(MovieFranchise, slugId="mcu", name="MCU")

        node_id = graph.write_without_action(create)

        assert graph.pull(MovieFranchise, "id") == [{"id": node_id}]
        assert graph.is_trigger_installed(TRACK_ACTION_CHANGES)

    def test_tracking_resumes_after_block(self, graph: Graph) -> None:
        with graph.allow_writes_without_action():
            pass

        with pytest.raises(IntegrityError, match="found 0"):
            graph._migration_ctx.write(
                lambda tx: tx.create_vnode(MovieFranchise, slugId="mcu", name="MCU")
            )
