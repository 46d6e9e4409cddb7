"""Helpers for writing Actions.

The relationship helpers never edit relationship properties in place: a
relationship whose properties differ is deleted and re-created, which is what
the change recorder requires.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from actiongraph.graph.actions import ActionDefinition, ActionRequest, ApplyResult
from actiongraph.graph.errors import NodeNotFoundError, SchemaError
from actiongraph.graph.transaction import VNODE_LABEL

if TYPE_CHECKING:
    from actiongraph.graph.actions import ActionRegistry
    from actiongraph.graph.schema import RelationshipDeclaration, VNodeType
    from actiongraph.graph.store import NodeRecord
    from actiongraph.graph.transaction import WriteTransaction


def _declaration(node_type: type[VNodeType], rel_type: str) -> RelationshipDeclaration:
    decl = node_type.rel.get(rel_type)
    if decl is None:
        raise SchemaError(f"{node_type.__name__} does not declare the relationship {rel_type}")
    return decl


def _resolve_target(
    tx: WriteTransaction, decl: RelationshipDeclaration, rel_type: str, key: str
) -> NodeRecord:
    target = tx.get_vnode(key)
    labels = [t if isinstance(t, str) else t.label for t in decl.to]
    if VNODE_LABEL not in labels and not any(label in target.labels for label in labels):
        raise NodeNotFoundError(key, context=f"{rel_type} target must be :{' or :'.join(labels)}")
    return target


def update_to_one_relationship(
    tx: WriteTransaction,
    node_type: type[VNodeType],
    from_id: str,
    rel_type: str,
    to: str | None,
    props: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Point an x:1 relationship at the entity keyed *to*, or clear it.

    Returns:
        ``{"key": <previous target VNID or None>, **previous properties}``.
    """
    decl = _declaration(node_type, rel_type)
    props = {k: v for k, v in (props or {}).items() if v is not None}
    existing = tx.relationships(from_id=from_id, rel_type=rel_type)
    prev_to: dict[str, Any] = (
        {"key": existing[0].to_id, **existing[0].props} if existing else {"key": None}
    )

    keep = None
    if to is not None:
        target = _resolve_target(tx, decl, rel_type, to)
        keep = next((r for r in existing if r.to_id == target.id and r.props == props), None)
        if keep is None:
            tx.create_relationship(from_id, rel_type, target.id, props)
    for rel in existing:
        if rel is not keep:
            tx.delete_relationship(rel.id)
    return prev_to


def update_to_many_relationship(
    tx: WriteTransaction,
    node_type: type[VNodeType],
    from_id: str,
    rel_type: str,
    to: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Replace every *rel_type* relationship from an entity.

    Each entry of *to* is ``{"key": <VNID or slugId>, **relationship properties}``.
    Identical existing relationships are kept; the rest are deleted. Several
    relationships to the same target are allowed unless the declaration's
    cardinality forbids it (checked at validation).

    Returns:
        The previous relationships, in the same ``{"key", **props}`` shape.
    """
    decl = _declaration(node_type, rel_type)
    existing = tx.relationships(from_id=from_id, rel_type=rel_type)
    prev_to = [{"key": r.to_id, **r.props} for r in existing]
    to_delete = {r.id: r for r in existing}

    for entry in to:
        props = {k: v for k, v in entry.items() if k != "key" and v is not None}
        key = entry["key"]
        target = _resolve_target(tx, decl, rel_type, key)
        same = next(
            (r for r in to_delete.values() if r.to_id == target.id and r.props == props), None
        )
        if same is not None:
            del to_delete[same.id]
        else:
            tx.create_relationship(from_id, rel_type, target.id, props)

    for rel_id in to_delete:
        tx.delete_relationship(rel_id)
    return prev_to


# ---------------------------------------------------------------------------
# Default Action kinds
# ---------------------------------------------------------------------------


class DeleteInput(BaseModel):
    key: str


def define_delete_action(
    actions: ActionRegistry, node_type: type[VNodeType], action_type: str | None = None
) -> ActionDefinition:
    """Register ``Delete<Type>``: soft-delete one entity by key."""

    def apply(tx: WriteTransaction, actor_id: str, data: DeleteInput) -> ApplyResult:
        node = tx.get_vnode(data.key, node_type.label)
        tx.soft_delete(node.id)
        return ApplyResult(result_data={"id": node.id}, modified_nodes=[node.id])

    return actions.register(
        ActionDefinition(action_type or f"Delete{node_type.__name__}", DeleteInput, apply)
    )


def define_create_action(
    actions: ActionRegistry,
    node_type: type[VNodeType],
    action_type: str | None = None,
    delete: ActionDefinition | None = None,
) -> ActionDefinition:
    """Register ``Create<Type>``: create one entity from its property model.

    If *delete* is given, it becomes the custom inverse of the create.
    """

    def apply(tx: WriteTransaction, actor_id: str, data: BaseModel) -> ApplyResult:
        node_id = tx.create_vnode(node_type, **data.model_dump(mode="json", exclude_none=True))
        return ApplyResult(result_data={"id": node_id}, modified_nodes=[node_id])

    def invert(data: BaseModel, result_data: dict[str, Any]) -> ActionRequest | None:
        if delete is None:
            return None
        return delete(key=result_data["id"])

    return actions.register(
        ActionDefinition(
            action_type or f"Create{node_type.__name__}", node_type.properties, apply, invert
        )
    )
