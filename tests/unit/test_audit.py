"""Tests for Action history queries."""

from __future__ import annotations

from actiongraph.graph import Graph, action_summary, list_actions
from tests.fixtures.movies import CreateMovie, CreateMovieFranchise, UpdateMovie


class TestListActions:
    def test_bootstrap_action_is_listed(self, graph: Graph) -> None:
        records = list_actions(graph)
        assert [r.type for r in records] == ["CreateUser"]

    def test_most_recent_first(self, graph: Graph) -> None:
        graph.run_as_system(CreateMovie(slugId="heat", title="Heat", year=1995))
        graph.run_as_system(UpdateMovie(key="heat", year=1996))

        records = list_actions(graph)

        timestamps = [r.timestamp for r in records]
        assert timestamps == sorted(timestamps, reverse=True)
        assert len(records) == 3

    def test_filter_by_type(self, graph: Graph) -> None:
        graph.run_as_system(
            CreateMovieFranchise(slugId="mcu", name="MCU"),
            CreateMovie(slugId="heat", title="Heat", year=1995),
        )

        records = list_actions(graph, action_type="CreateMovie")

        assert [r.type for r in records] == ["CreateMovie"]
        assert records[0].data["slugId"] == "heat"

    def test_filter_by_actor(self, graph: Graph, user_id: str) -> None:
        graph.run_as(user_id, CreateMovie(slugId="heat", title="Heat", year=1995))

        records = list_actions(graph, actor_id=user_id)

        assert [r.type for r in records] == ["CreateMovie"]
        assert records[0].performed_by == user_id

    def test_limit(self, graph: Graph) -> None:
        for year in range(2000, 2005):
            graph.run_as_system(CreateMovie(slugId=f"m-{year}", title="M", year=year))

        assert len(list_actions(graph, limit=2)) == 2
        assert len(list_actions(graph, limit=100)) == 6


class TestActionSummary:
    def test_counts(self, graph: Graph) -> None:
        graph.run_as_system(
            CreateMovie(slugId="heat", title="Heat", year=1995),
            CreateMovie(slugId="ronin", title="Ronin", year=1998),
        )
        created = graph.run_as_system(CreateMovieFranchise(slugId="mcu", name="MCU"))
        graph.undo(created.action_id)

        summary = action_summary(graph)

        assert summary["total"] == 5
        assert summary["by_type"] == {
            "CreateMovie": 2,
            "CreateUser": 1,
            "CreateMovieFranchise": 1,
            "UndoAction": 1,
        }
        assert list(summary["by_type"])[0] == "CreateMovie"
        assert summary["reverted"] == 1
