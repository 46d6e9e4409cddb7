"""Tests for the relationship helpers and default Action kinds."""

from __future__ import annotations

from typing import Any

import pytest

from actiongraph.graph import (
    ActionRegistry,
    ApplyResult,
    Graph,
    NodeNotFoundError,
    Related,
    SchemaError,
    WriteTransaction,
    define_create_action,
    define_delete_action,
    update_to_many_relationship,
    update_to_one_relationship,
)
from tests.fixtures.movies import (
    CreateMovie,
    CreateMovieFranchise,
    CreatePerson,
    DeleteMovie,
    GenericAction,
    Movie,
    MovieFranchise,
    UpdateMovie,
)


def _on_heat(graph: Graph, fn: Any) -> Any:
    """Run ``fn(tx, movie_id)`` inside an Action that declares the movie."""
    captured: dict[str, Any] = {}

    def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
        movie_id = tx.get_vnode("heat").id
        captured["value"] = fn(tx, movie_id)
        return ApplyResult(modified_nodes=[movie_id])

    graph.run_as_system(GenericAction(apply_fn=apply))
    return captured["value"]


def _set_cast(graph: Graph, cast: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return _on_heat(
        graph,
        lambda tx, movie_id: update_to_many_relationship(tx, Movie, movie_id, "FEATURES", cast),
    )


def _rel_ids(graph: Graph, rel_type: str) -> list[int]:
    with graph.read() as tx:
        movie_id = tx.get_vnode("heat").id
        return [r.id for r in tx.relationships(from_id=movie_id, rel_type=rel_type)]


@pytest.fixture
def heat(graph: Graph) -> Graph:
    graph.run_as_system(
        CreateMovieFranchise(slugId="mcu", name="MCU"),
        CreateMovieFranchise(slugId="dceu", name="DCEU"),
        CreatePerson(slugId="al", name="Al Pacino"),
        CreatePerson(slugId="bob", name="Robert De Niro"),
        CreateMovie(slugId="heat", title="Heat", year=1995, franchiseId="mcu"),
    )
    return graph


class TestToOne:
    def test_unchanged_target_is_kept(self, heat: Graph) -> None:
        before = _rel_ids(heat, "FRANCHISE_IS")

        prev = _on_heat(
            heat,
            lambda tx, movie_id: update_to_one_relationship(
                tx, Movie, movie_id, "FRANCHISE_IS", "mcu"
            ),
        )

        assert _rel_ids(heat, "FRANCHISE_IS") == before
        assert prev == {"key": heat.pull_one(MovieFranchise, "id", key="mcu")["id"]}

    def test_replace_target(self, heat: Graph) -> None:
        heat.run_as_system(UpdateMovie(key="heat", franchiseId="dceu"))

        row = heat.pull_one(Movie, key="heat", franchise=Related("FRANCHISE_IS", "slugId"))
        assert row["franchise"] == {"slugId": "dceu"}
        assert len(_rel_ids(heat, "FRANCHISE_IS")) == 1

    def test_clear_target(self, heat: Graph) -> None:
        result = heat.run_as_system(UpdateMovie(key="heat", franchiseId=None))

        assert _rel_ids(heat, "FRANCHISE_IS") == []
        mcu_id = heat.pull_one(MovieFranchise, "id", key="mcu")["id"]
        assert result.result_data["prevFranchise"] == mcu_id

    def test_omitted_target_is_left_alone(self, heat: Graph) -> None:
        before = _rel_ids(heat, "FRANCHISE_IS")
        heat.run_as_system(UpdateMovie(key="heat", title="Heat (1995)"))
        assert _rel_ids(heat, "FRANCHISE_IS") == before

    def test_target_of_wrong_type(self, heat: Graph) -> None:
        with pytest.raises(NodeNotFoundError, match="target must be :TestMovieFranchise"):
            heat.run_as_system(UpdateMovie(key="heat", franchiseId="al"))

    def test_undeclared_relationship(self, heat: Graph) -> None:
        with pytest.raises(SchemaError, match="does not declare the relationship SEQUEL_OF"):
            _on_heat(
                heat,
                lambda tx, movie_id: update_to_one_relationship(
                    tx, Movie, movie_id, "SEQUEL_OF", None
                ),
            )


class TestToMany:
    def test_set_and_replace(self, heat: Graph) -> None:
        assert _set_cast(heat, [{"key": "al", "role": "Vincent"}]) == []

        prev = _set_cast(heat, [{"key": "al", "role": "Hanna"}, {"key": "bob", "role": "Neil"}])

        assert [p["role"] for p in prev] == ["Vincent"]
        assert len(_rel_ids(heat, "FEATURES")) == 2

    def test_identical_relationship_is_kept(self, heat: Graph) -> None:
        _set_cast(heat, [{"key": "al", "role": "Vincent"}])
        first = _rel_ids(heat, "FEATURES")

        _set_cast(heat, [{"key": "al", "role": "Vincent"}])

        assert _rel_ids(heat, "FEATURES") == first

    def test_changed_properties_recreate_the_relationship(self, heat: Graph) -> None:
        _set_cast(heat, [{"key": "al", "role": "Vincent"}])
        first = _rel_ids(heat, "FEATURES")

        _set_cast(heat, [{"key": "al", "role": "Hanna"}])

        second = _rel_ids(heat, "FEATURES")
        assert len(second) == 1
        assert second != first

    def test_clear(self, heat: Graph) -> None:
        _set_cast(heat, [{"key": "al"}, {"key": "bob"}])
        _set_cast(heat, [])
        assert _rel_ids(heat, "FEATURES") == []


class TestDefaultActions:
    def test_generated_type_names(self) -> None:
        registry = ActionRegistry()
        assert define_create_action(registry, Movie).type == "CreateMovie"
        assert define_delete_action(registry, Movie).type == "DeleteMovie"
        assert registry.action_types == ["CreateMovie", "DeleteMovie"]

    def test_delete_requires_matching_label(self, heat: Graph) -> None:
        with pytest.raises(NodeNotFoundError, match="expected :TestMovie"):
            heat.run_as_system(DeleteMovie(key="mcu"))

    def test_create_returns_id(self, graph: Graph) -> None:
        result = graph.run_as_system(CreateMovieFranchise(slugId="mcu", name="MCU"))
        assert graph.pull_one(MovieFranchise, "id") == {"id": result.result_data["id"]}
