"""Tests for running Actions: the Action entity, rollback and declared changes."""

from __future__ import annotations

import json
from datetime import datetime

import pytest
from pydantic import BaseModel

from actiongraph.graph import (
    SYSTEM_VNID,
    ActionDefinition,
    ApplyResult,
    Graph,
    IntegrityError,
    InvalidActionTypeError,
    NodeNotFoundError,
    UndeclaredModificationError,
    WriteTransaction,
)
from actiongraph.graph.schema import PERFORMED
from tests.fixtures.movies import (
    CreateMovie,
    CreateMovieFranchise,
    GenericAction,
    Movie,
    MovieFranchise,
    UpdateMovie,
)


class TestActionEntity:
    """Every committed Action leaves an audit record."""

    def test_action_node_records_request(self, graph: Graph) -> None:
        result = graph.run_as_system(CreateMovieFranchise(slugId="mcu", name="MCU"))

        with graph.read() as tx:
            action = tx.get_node(result.action_id)
            performed = tx.relationships(to_id=result.action_id, rel_type=PERFORMED)
        assert action is not None
        assert {"Action", "VNode"} <= action.labels
        assert action.props["type"] == "CreateMovieFranchise"
        assert json.loads(action.props["data"]) == {"slugId": "mcu", "name": "MCU"}
        assert datetime.fromisoformat(action.props["timestamp"]).tzinfo is not None
        assert action.props["tookMs"] == result.took_ms >= 0
        assert action.props["deletedNodesCount"] == 0
        assert [r.from_id for r in performed] == [SYSTEM_VNID]

    def test_result_data_is_returned(self, graph: Graph) -> None:
        result = graph.run_as_system(CreateMovieFranchise(slugId="mcu", name="MCU"))
        assert graph.pull_one(MovieFranchise, "id", key="mcu") == {"id": result.result_data["id"]}

    def test_run_as_other_user(self, graph: Graph, user_id: str) -> None:
        result = graph.run_as(user_id, CreateMovieFranchise(slugId="mcu", name="MCU"))
        assert graph.get_action(result.action_id).performed_by == user_id

    def test_actor_must_be_a_user(self, graph: Graph) -> None:
        franchise = graph.run_as_system(CreateMovieFranchise(slugId="mcu", name="MCU"))
        with pytest.raises(NodeNotFoundError, match="expected :User actor"):
            graph.run_as(franchise.result_data["id"], CreateMovie(slugId="a", title="A", year=2000))

    def test_unknown_action_type(self, graph: Graph) -> None:
        class Input(BaseModel):
            pass

        stray = ActionDefinition("NotRegistered", Input, lambda tx, actor, data: ApplyResult())
        with pytest.raises(InvalidActionTypeError):
            graph.run_as_system(stray())

    def test_run_as_runs_each_request_in_order(self, graph: Graph) -> None:
        result = graph.run_as_system(
            CreateMovie(slugId="heat", title="Heat", year=1995),
            UpdateMovie(key="heat", title="Heat (1995)"),
        )
        assert graph.get_action(result.action_id).type == "UpdateMovie"
        assert graph.pull(Movie, "title") == [{"title": "Heat (1995)"}]


class TestAbort:
    """A failing Action leaves no trace."""

    def test_exception_in_apply_rolls_back(self, graph: Graph) -> None:
        before = graph.snapshot()

        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            tx.create_vnode(MovieFranchise, slugId="mcu", name="MCU")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            graph.run_as_system(GenericAction(apply_fn=apply))
        assert graph.snapshot() == before

    def test_earlier_requests_stay_committed(self, graph: Graph) -> None:
        with pytest.raises(NodeNotFoundError):
            graph.run_as_system(
                CreateMovie(slugId="heat", title="Heat", year=1995),
                UpdateMovie(key="missing", title="Nope"),
            )
        assert graph.pull(Movie, "slugId") == [{"slugId": "heat"}]


class TestDeclaredChanges:
    """Changes must be declared through ApplyResult.modified_nodes."""

    def test_undeclared_creation_rejected(self, graph: Graph) -> None:
        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            tx.create_vnode(MovieFranchise, slugId="mcu", name="MCU")
            return ApplyResult()

        with pytest.raises(UndeclaredModificationError) as exc_info:
            graph.run_as_system(GenericAction(apply_fn=apply))
        err = exc_info.value
        assert err.label == "TestMovieFranchise"
        assert err.action_type == "GenericAction"
        assert err.change == "created"
        assert "not explicitly marked as modified" in str(err)
        assert graph.pull(MovieFranchise) == []

    def test_undeclared_property_change_rejected(self, graph: Graph) -> None:
        graph.run_as_system(CreateMovie(slugId="heat", title="Heat", year=1995))

        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            tx.set_props(tx.get_vnode("heat").id, {"title": "Changed"})
            return ApplyResult()

        with pytest.raises(UndeclaredModificationError, match=r"\(newProp:title\)"):
            graph.run_as_system(GenericAction(apply_fn=apply))

    def test_undeclared_relationship_rejected(self, graph: Graph) -> None:
        graph.run_as_system(
            CreateMovieFranchise(slugId="mcu", name="MCU"),
            CreateMovie(slugId="heat", title="Heat", year=1995),
        )

        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            tx.create_relationship(tx.get_vnode("heat").id, "FRANCHISE_IS", tx.get_vnode("mcu").id)
            return ApplyResult()

        with pytest.raises(UndeclaredModificationError, match="newRel:"):
            graph.run_as_system(GenericAction(apply_fn=apply))

    def test_declared_unchanged_entity_is_allowed(self, graph: Graph) -> None:
        graph.run_as_system(CreateMovie(slugId="heat", title="Heat", year=1995))

        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            return ApplyResult(modified_nodes=[tx.get_vnode("heat").id])

        result = graph.run_as_system(GenericAction(apply_fn=apply))
        assert graph.get_action(result.action_id).modified_nodes == [
            graph.pull_one(Movie, "id", key="heat")["id"]
        ]

    def test_write_without_action_is_rejected(self, graph: Graph) -> None:
        def raw(tx: WriteTransaction) -> None:
            tx.create_vnode(MovieFranchise, slugId="mcu", name="MCU")

        with pytest.raises(IntegrityError, match="should be associated with one Action, found 0"):
            graph._migration_ctx.write(raw)

    def test_two_actions_in_one_transaction_rejected(self, graph: Graph) -> None:
        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            tx.create_node(
                ["Action", "VNode"], {"type": "Extra", "data": "{}", "timestamp": "2020-01-01"}
            )
            return ApplyResult()

        with pytest.raises(IntegrityError, match="found 2"):
            graph.run_as_system(GenericAction(apply_fn=apply))

    def test_editing_relationship_properties_rejected(self, graph: Graph) -> None:
        graph.run_as_system(
            CreateMovieFranchise(slugId="mcu", name="MCU"),
            CreateMovie(slugId="heat", title="Heat", year=1995, franchiseId="mcu"),
        )
        before = graph.snapshot()

        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            movie = tx.get_vnode("heat")
            rel = tx.relationships(from_id=movie.id, rel_type="FRANCHISE_IS")[0]
            tx.set_relationship_props(rel.id, {"note": "edited"})
            return ApplyResult(modified_nodes=[movie.id])

        with pytest.raises(IntegrityError, match="Changing properties of the FRANCHISE_IS"):
            graph.run_as_system(GenericAction(apply_fn=apply))

        assert graph.snapshot() == before
        with graph.read() as tx:
            movie = tx.get_vnode("heat")
            (rel,) = tx.relationships(from_id=movie.id, rel_type="FRANCHISE_IS")
        assert rel.props == {}
        assert movie.props["title"] == "Heat"
