"""Entity types and the validation collaborator.

A VNodeType subclass describes one kind of entity: its label (labels follow
the class hierarchy, so ``class Movie(Media)`` carries both labels plus
``VNode``), a pydantic model for its properties, the relationships it may
have to other entities and their cardinality.

Relationship targets may be given by label before the target type exists.
Registration is two-phase: ``SchemaRegistry.register()`` every type, then
``SchemaRegistry.finalize()`` resolves target labels through the registry.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Annotated, Any, ClassVar

import pydantic
from pydantic import BaseModel, ConfigDict, StringConstraints

from actiongraph.graph.errors import SchemaError, ValidationError
from actiongraph.graph.ids import SLUG_ID_RE
from actiongraph.graph.transaction import VNODE_LABEL

if TYPE_CHECKING:
    from actiongraph.graph.store import NodeRecord
    from actiongraph.graph.transaction import WriteTransaction

SlugIdField = Annotated[str, StringConstraints(pattern=SLUG_ID_RE.pattern)]


class Cardinality(StrEnum):
    """How many entities a relationship type may point to."""

    TO_ONE_REQUIRED = ":1"
    TO_ONE_OR_NONE = ":0-1"
    TO_MANY = ":*"
    TO_MANY_UNIQUE = ":*u"

    @property
    def is_to_one(self) -> bool:
        return self in (Cardinality.TO_ONE_REQUIRED, Cardinality.TO_ONE_OR_NONE)


@dataclass
class RelationshipDeclaration:
    """A relationship that may go *from* a VNodeType to other entities.

    Attributes:
        to: Allowed target types, as labels or VNodeType classes. ``"VNode"``
            allows any entity.
        properties: Pydantic model for the relationship's properties.
        cardinality: Restriction on how many targets may be linked.
    """

    to: tuple[str | type[VNodeType], ...]
    properties: type[BaseModel] | None = None
    cardinality: Cardinality = Cardinality.TO_MANY
    rel_type: str = ""
    targets: tuple[type[VNodeType], ...] = ()

    def target_labels(self) -> list[str]:
        return [t.label for t in self.targets]


class VNodeProperties(BaseModel):
    """Base property model: no undeclared properties are allowed."""

    model_config = ConfigDict(extra="forbid")


class VNodeType:
    """Base class for entity types. Used statically only, never instantiated."""

    label: ClassVar[str] = VNODE_LABEL
    properties: ClassVar[type[BaseModel]] = VNodeProperties
    rel: ClassVar[dict[str, RelationshipDeclaration]] = {}
    default_order_by: ClassVar[str | None] = None
    slug_id_prefix: ClassVar[str] = ""

    def __init__(self) -> None:
        raise TypeError("VNodeType should never be instantiated. Use it statically only.")

    @classmethod
    def all_labels(cls) -> list[str]:
        """Labels of this type, most specific first, ending with ``VNode``."""
        if "label" not in cls.__dict__:
            raise SchemaError(f"VNodeType {cls.__name__} does not declare its own label")
        labels: list[str] = []
        for klass in cls.__mro__:
            if (
                isinstance(klass, type)
                and issubclass(klass, VNodeType)
                and "label" in klass.__dict__
            ):
                if klass.label not in labels:
                    labels.append(klass.label)
        return labels

    @classmethod
    def with_id(cls, vnid: str) -> str:
        """Embed a reference to a specific entity in a description string."""
        return f"`{cls.__name__} {vnid}`"


class SchemaRegistry:
    """Name-keyed catalog of entity types, constructed once per process."""

    def __init__(self, *node_types: type[VNodeType]) -> None:
        self._types: dict[str, type[VNodeType]] = {}
        self._finalized = False
        for node_type in node_types:
            self.register(node_type)

    def register(self, node_type: type[VNodeType]) -> None:
        """Register an entity type.

        Raises:
            SchemaError: On a duplicate label or a type without its own label.
        """
        labels = node_type.all_labels()
        if labels[0] == VNODE_LABEL:
            raise SchemaError(f"{node_type.__name__} must declare a label other than VNode")
        if node_type.label in self._types:
            raise SchemaError(f"Duplicate VNodeType label: {node_type.label}")
        if node_type.slug_id_prefix and "slugId" not in node_type.properties.model_fields:
            raise SchemaError(
                f"{node_type.__name__} cannot specify a slug_id_prefix without a slugId property"
            )
        self._types[node_type.label] = node_type
        self._finalized = False

    def finalize(self) -> None:
        """Resolve relationship targets now that every type is registered.

        Raises:
            SchemaError: If a target is unknown or a declaration is shared
                under two different relationship types.
        """
        for node_type in self._types.values():
            for rel_type, decl in node_type.rel.items():
                if decl.rel_type and decl.rel_type != rel_type:
                    raise SchemaError(
                        f"The relationship {rel_type} is also declared somewhere else "
                        f"as type {decl.rel_type}."
                    )
                decl.rel_type = rel_type
                decl.targets = tuple(self._resolve(t, node_type, rel_type) for t in decl.to)
        self._finalized = True

    def _resolve(
        self, target: str | type[VNodeType], owner: type[VNodeType], rel_type: str
    ) -> type[VNodeType]:
        if isinstance(target, str):
            if target == VNODE_LABEL:
                return VNodeType
            if target not in self._types:
                raise SchemaError(
                    f"{owner.__name__}.rel.{rel_type} points to unknown type label {target!r}"
                )
            return self._types[target]
        if target is not VNodeType and self._types.get(target.label) is not target:
            raise SchemaError(
                f"{owner.__name__}.rel.{rel_type} points to unregistered type {target.__name__}"
            )
        return target

    @property
    def finalized(self) -> bool:
        return self._finalized

    def get(self, label: str) -> type[VNodeType]:
        """Get a registered type by label.

        Raises:
            SchemaError: If no type with that label has been registered.
        """
        try:
            return self._types[label]
        except KeyError:
            raise SchemaError(f"VNodeType with label {label} has not been registered.") from None

    def __contains__(self, label: str) -> bool:
        return label in self._types

    def type_for_node(self, node: NodeRecord) -> type[VNodeType] | None:
        """Most specific registered type among the node's labels."""
        candidates = [t for label, t in self._types.items() if label in node.labels]
        if not candidates:
            return None
        return max(candidates, key=lambda t: len(t.all_labels()))

    # -- Validation ------------------------------------------------------------

    def validate(self, tx: WriteTransaction, node: NodeRecord) -> None:
        """Check an entity's current state against its type.

        Property values normalised by the property model are written back.

        Raises:
            ValidationError: If the entity violates its declared shape.
        """
        if not self._finalized:
            self.finalize()
        node_type = self.type_for_node(node)
        if node_type is None:
            raise ValidationError(
                f"Node {node.id} with labels {sorted(node.labels)} has no registered VNodeType"
            )

        if node_type.slug_id_prefix:
            slug_id = node.props.get("slugId")
            if not isinstance(slug_id, str) or not slug_id.startswith(node_type.slug_id_prefix):
                raise ValidationError(
                    f'{node_type.label} has an invalid slugId "{slug_id}". '
                    f'Expected it to start with "{node_type.slug_id_prefix}".'
                )

        try:
            model = node_type.properties.model_validate(node.props)
        except pydantic.ValidationError as e:
            raise ValidationError(f"{node_type.label} {node.id} is invalid: {e}") from e
        cleaned = model.model_dump(mode="json", exclude_unset=True)
        changed = {k: v for k, v in cleaned.items() if node.props.get(k) != v}
        if changed:
            tx.set_props(node.id, changed)

        if node_type.rel:
            self._validate_relationships(tx, node, node_type)

    def _validate_relationships(
        self, tx: WriteTransaction, node: NodeRecord, node_type: type[VNodeType]
    ) -> None:
        live: list[tuple[Any, NodeRecord]] = []
        for rel in tx.relationships(from_id=node.id):
            target = tx.get_node(rel.to_id)
            if target is not None and VNODE_LABEL in target.labels:
                live.append((rel, target))

        for rel_type, spec in node_type.rel.items():
            rels = [(r, t) for r, t in live if r.type == rel_type]
            allowed = spec.target_labels()
            if VNODE_LABEL not in allowed:
                for _rel, target in rels:
                    if not any(label in target.labels for label in allowed):
                        raise ValidationError(
                            f"Relationship {rel_type} is not allowed to point to node with "
                            f"labels :{':'.join(sorted(target.labels))}"
                        )

            count = len(rels)
            if spec.cardinality == Cardinality.TO_ONE_REQUIRED:
                if count < 1:
                    raise ValidationError(
                        f"Required relationship type {rel_type} must point to one node, "
                        "but does not exist."
                    )
                if count > 1:
                    raise ValidationError(
                        f"Required to-one relationship type {rel_type} is pointing to more "
                        "than one node."
                    )
            elif spec.cardinality == Cardinality.TO_ONE_OR_NONE and count > 1:
                raise ValidationError(
                    f"To-one relationship type {rel_type} is pointing to more than one node."
                )
            elif spec.cardinality == Cardinality.TO_MANY_UNIQUE:
                if len({t.id for _r, t in rels}) != count:
                    raise ValidationError(
                        f"Creating multiple {rel_type} relationships between the same pair "
                        "of nodes is not allowed."
                    )

            if spec.properties is not None:
                for rel, _target in rels:
                    try:
                        spec.properties.model_validate(rel.props)
                    except pydantic.ValidationError as e:
                        raise ValidationError(
                            f"Relationship {rel_type} from {node.id} has invalid properties: {e}"
                        ) from e


# ---------------------------------------------------------------------------
# Core types
# ---------------------------------------------------------------------------

ACTION_LABEL = "Action"
PERFORMED = "PERFORMED"
MODIFIED = "MODIFIED"
REVERTED = "REVERTED"


class UserProperties(VNodeProperties):
    slugId: SlugIdField
    fullName: str


class User(VNodeType):
    """A user who can perform Actions. The system user has VNID ``_0``."""

    label = "User"
    properties = UserProperties
    slug_id_prefix = "user-"
    default_order_by = "fullName"
    rel = {
        PERFORMED: RelationshipDeclaration(
            to=(ACTION_LABEL,), cardinality=Cardinality.TO_MANY_UNIQUE
        ),
    }


class ActionProperties(VNodeProperties):
    type: str
    data: str
    timestamp: str
    tookMs: int | None = None
    deletedNodesCount: int | None = None


class Action(VNodeType):
    """The audit record of one mutation.

    ``MODIFIED`` links carry the change-detail map of each touched entity;
    ``REVERTED`` points from an UndoAction to the Action it reversed.
    """

    label = ACTION_LABEL
    properties = ActionProperties
    default_order_by = "timestamp"
    rel = {
        MODIFIED: RelationshipDeclaration(
            to=(VNODE_LABEL,), cardinality=Cardinality.TO_MANY_UNIQUE
        ),
        REVERTED: RelationshipDeclaration(
            to=(ACTION_LABEL,), cardinality=Cardinality.TO_ONE_OR_NONE
        ),
    }
