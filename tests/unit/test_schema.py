"""Tests for entity types, the SchemaRegistry, and validation on commit."""

from __future__ import annotations

from typing import Any

import pytest

from actiongraph.graph import (
    ApplyResult,
    Cardinality,
    Graph,
    GraphStore,
    RelationshipDeclaration,
    SchemaError,
    SchemaRegistry,
    User,
    ValidationError,
    VNodeProperties,
    VNodeType,
    WriteTransaction,
)
from tests.fixtures.movies import (
    CreateMovie,
    CreateMovieFranchise,
    CreatePerson,
    GenericAction,
    Movie,
    MovieFranchise,
    Person,
)


class Media(VNodeType):
    label = "TestMedia"


class Book(Media):
    label = "TestBook"


class Unlabelled(Media):
    pass


class TestLabels:
    def test_labels_follow_class_hierarchy(self) -> None:
        assert Book.all_labels() == ["TestBook", "TestMedia", "VNode"]
        assert Movie.all_labels() == ["TestMovie", "VNode"]

    def test_subclass_without_label_is_rejected(self) -> None:
        with pytest.raises(SchemaError, match="does not declare its own label"):
            Unlabelled.all_labels()

    def test_vnode_type_cannot_be_instantiated(self) -> None:
        with pytest.raises(TypeError, match="never be instantiated"):
            Movie()

    def test_with_id(self) -> None:
        assert Movie.with_id("_abc") == "`Movie _abc`"

    def test_cardinality_is_to_one(self) -> None:
        assert Cardinality.TO_ONE_REQUIRED.is_to_one
        assert Cardinality.TO_ONE_OR_NONE.is_to_one
        assert not Cardinality.TO_MANY.is_to_one
        assert not Cardinality.TO_MANY_UNIQUE.is_to_one


class TestRegistry:
    """Registration and two-phase target resolution."""

    def test_duplicate_label_rejected(self) -> None:
        registry = SchemaRegistry(Movie)
        with pytest.raises(SchemaError, match="Duplicate VNodeType label"):
            registry.register(Movie)

    def test_plain_vnode_type_rejected(self) -> None:
        with pytest.raises(SchemaError, match="other than VNode"):
            SchemaRegistry(VNodeType)

    def test_slug_prefix_requires_slug_id_property(self) -> None:
        class NoSlug(VNodeType):
            label = "TestNoSlug"
            slug_id_prefix = "x-"

        with pytest.raises(SchemaError, match="without a slugId property"):
            SchemaRegistry(NoSlug)

    def test_get_and_contains(self) -> None:
        registry = SchemaRegistry(Movie, MovieFranchise, Person)
        assert registry.get("TestMovie") is Movie
        assert "TestMovie" in registry
        assert "Nope" not in registry
        with pytest.raises(SchemaError, match="has not been registered"):
            registry.get("Nope")

    def test_finalize_resolves_label_targets(self) -> None:
        registry = SchemaRegistry(Movie, MovieFranchise, Person)
        registry.finalize()

        assert registry.finalized
        decl = Movie.rel["FRANCHISE_IS"]
        assert decl.rel_type == "FRANCHISE_IS"
        assert decl.targets == (MovieFranchise,)
        assert Movie.rel["FEATURES"].target_labels() == ["TestPerson"]

    def test_finalize_rejects_unknown_target(self) -> None:
        registry = SchemaRegistry(Movie, Person)
        with pytest.raises(SchemaError, match="unknown type label 'TestMovieFranchise'"):
            registry.finalize()

    def test_register_after_finalize_needs_refinalize(self) -> None:
        registry = SchemaRegistry(MovieFranchise)
        registry.finalize()
        registry.register(Person)
        assert not registry.finalized

    def test_type_for_node_prefers_most_specific(self) -> None:
        from actiongraph.graph import NodeRecord

        registry = SchemaRegistry(Media, Book)
        node = NodeRecord("_b", frozenset({"TestBook", "TestMedia", "VNode"}))
        assert registry.type_for_node(node) is Book
        assert registry.type_for_node(NodeRecord("_x", frozenset({"VNode"}))) is None


def _raw(fn: Any) -> Any:
    """A GenericAction request running *fn* inside the Action."""
    return GenericAction(apply_fn=fn)


class TestValidation:
    """Validation of touched entities before commit."""

    def test_invalid_property_rejected(self, graph: Graph) -> None:
        with pytest.raises(ValidationError, match="TestMovie"):
            graph.run_as_system(CreateMovie(slugId="old-movie", title="Too old", year=1700))
        assert graph.pull(Movie) == []

    def test_undeclared_property_rejected(self, graph: Graph) -> None:
        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            node_id = tx.create_vnode(Person, slugId="ann", name="Ann", shoeSize=40)
            return ApplyResult(modified_nodes=[node_id])

        with pytest.raises(ValidationError):
            graph.run_as_system(_raw(apply))

    def test_slug_prefix_enforced(self, graph: Graph) -> None:
        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            node_id = tx.create_vnode(User, slugId="alex", fullName="Alex")
            return ApplyResult(modified_nodes=[node_id])

        with pytest.raises(ValidationError, match='Expected it to start with "user-"'):
            graph.run_as_system(_raw(apply))

    @pytest.mark.parametrize("slug_id", ["has space", "x" * 33, "", "_looks-like-vnid"])
    def test_malformed_slug_id_rejected(self, graph: Graph, slug_id: str) -> None:
        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            node_id = tx.create_vnode(Person, slugId=slug_id, name="Ann")
            return ApplyResult(modified_nodes=[node_id])

        with pytest.raises(ValidationError, match="TestPerson"):
            graph.run_as_system(_raw(apply))
        assert graph.pull(Person) == []

    def test_longest_slug_id_accepted(self, graph: Graph) -> None:
        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            node_id = tx.create_vnode(Person, slugId="a.b-" + "c" * 28, name="Ann")
            return ApplyResult(modified_nodes=[node_id])

        graph.run_as_system(_raw(apply))
        assert graph.pull(Person, "slugId") == [{"slugId": "a.b-" + "c" * 28}]

    def test_unregistered_entity_rejected(self, graph: Graph) -> None:
        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            node_id = tx.create_node(["VNode", "TestUnknown"], {})
            return ApplyResult(modified_nodes=[node_id])

        with pytest.raises(ValidationError, match="no registered VNodeType"):
            graph.run_as_system(_raw(apply))

    def test_to_one_relationship_limited_to_one_target(self, graph: Graph) -> None:
        graph.run_as_system(
            CreateMovieFranchise(slugId="mcu", name="Marvel Cinematic Universe"),
            CreateMovieFranchise(slugId="dceu", name="DC Extended Universe"),
            CreateMovie(slugId="guardians-galaxy", title="Guardians", year=2014, franchiseId="mcu"),
        )

        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            movie = tx.get_vnode("guardians-galaxy")
            tx.create_relationship(movie.id, "FRANCHISE_IS", tx.get_vnode("dceu").id)
            return ApplyResult(modified_nodes=[movie.id])

        with pytest.raises(ValidationError, match="pointing to more than one node"):
            graph.run_as_system(_raw(apply))

    def test_relationship_to_wrong_label_rejected(self, graph: Graph) -> None:
        graph.run_as_system(
            CreatePerson(slugId="ann", name="Ann"),
            CreateMovie(slugId="heat", title="Heat", year=1995),
        )

        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            movie = tx.get_vnode("heat")
            tx.create_relationship(movie.id, "FRANCHISE_IS", tx.get_vnode("ann").id)
            return ApplyResult(modified_nodes=[movie.id])

        with pytest.raises(ValidationError, match="not allowed to point to node"):
            graph.run_as_system(_raw(apply))

    def test_relationship_properties_validated(self, graph: Graph) -> None:
        graph.run_as_system(
            CreatePerson(slugId="ann", name="Ann"),
            CreateMovie(slugId="heat", title="Heat", year=1995),
        )

        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            movie = tx.get_vnode("heat")
            tx.create_relationship(movie.id, "FEATURES", tx.get_vnode("ann").id, {"role": 7})
            return ApplyResult(modified_nodes=[movie.id])

        with pytest.raises(ValidationError, match="invalid properties"):
            graph.run_as_system(_raw(apply))

    def test_required_relationship_must_exist(self, store: GraphStore) -> None:
        class Chapter(VNodeType):
            label = "TestChapter"
            properties = VNodeProperties
            rel = {
                "PART_OF": RelationshipDeclaration(
                    to=("TestBook",), cardinality=Cardinality.TO_ONE_REQUIRED
                )
            }

        from tests.fixtures.movies import actions

        graph = Graph(store, SchemaRegistry(Media, Book, Chapter), actions)
        graph.run_migrations()

        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            node_id = tx.create_vnode(Chapter)
            return ApplyResult(modified_nodes=[node_id])

        with pytest.raises(ValidationError, match="must point to one node"):
            graph.run_as_system(_raw(apply))

    def test_unique_to_many_rejects_parallel_relationships(self, graph: Graph) -> None:
        def apply(tx: WriteTransaction, actor_id: str) -> ApplyResult:
            action = tx.action_id
            assert action is not None
            tx.create_relationship("_0", "PERFORMED", action)
            return ApplyResult(modified_nodes=["_0"])

        with pytest.raises(ValidationError, match="multiple PERFORMED relationships"):
            graph.run_as_system(_raw(apply))
