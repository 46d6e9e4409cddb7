"""The built-in UndoAction.

Undoing reads the change-detail maps of a past Action and applies their
inverse as a brand-new Action, so an undo can itself be undone (redo).
Inverse steps run in a fixed order because later steps rely on entities
restored by earlier ones:

a. restore soft-deleted entities
b. re-create deleted relationships
c. revert changed properties, only where the value is still the one recorded
d. delete created relationships, one matching instance per recorded creation
e. soft-delete created entities, unless modified or deleted since
f. re-delete entities the Action had un-deleted

Any divergence raises UndoConflictError and nothing is written.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel

from actiongraph.graph.actions import ActionDefinition, ApplyResult
from actiongraph.graph.changes import get_action_changes
from actiongraph.graph.errors import UndoConflictError, UndoConflictReason
from actiongraph.graph.schema import ACTION_LABEL, REVERTED
from actiongraph.graph.transaction import DELETED_VNODE_LABEL, VNODE_LABEL
from actiongraph.observability.logging import get_logger

if TYPE_CHECKING:
    from actiongraph.graph.changes import ActionChanges
    from actiongraph.graph.transaction import WriteTransaction

log = get_logger(__name__)

UNDO_ACTION_TYPE = "UndoAction"


class UndoInput(BaseModel):
    actionId: str


def _is_live(tx: WriteTransaction, node_id: str) -> bool:
    node = tx.get_node(node_id)
    return node is not None and VNODE_LABEL in node.labels


def _restore_soft_deleted(tx: WriteTransaction, changes: ActionChanges) -> None:
    for node_id in changes.soft_deleted_nodes:
        node = tx.get_node(node_id)
        if node is not None and DELETED_VNODE_LABEL in node.labels:
            tx.undelete(node_id)


def _recreate_deleted_relationships(tx: WriteTransaction, changes: ActionChanges) -> None:
    for rel in changes.deleted_relationships:
        if not (_is_live(tx, rel.from_id) and _is_live(tx, rel.to_id)):
            raise UndoConflictError(
                UndoConflictReason.RELATIONSHIP_RECREATION,
                "One of the nodes relationships deleted by that action cannot be re-created; "
                "cannot undo.",
            )
        tx.create_relationship(rel.from_id, rel.type, rel.to_id, rel.properties)


def _revert_properties(tx: WriteTransaction, changes: ActionChanges) -> None:
    stale = UndoConflictError(
        UndoConflictReason.STALE_PROPERTY,
        "One of the node properties changed by that action has since been changed; cannot undo.",
    )
    for modified in changes.modified_nodes:
        node = tx.get_node(modified.id)
        if node is None or VNODE_LABEL not in node.labels:
            raise stale
        old_values = {}
        for name, change in modified.properties.items():
            if node.props.get(name) != change.new:
                raise stale
            old_values[name] = change.old
        tx.set_props(modified.id, old_values)


def _delete_created_relationships(tx: WriteTransaction, changes: ActionChanges) -> None:
    for rel in changes.created_relationships:
        matches = []
        if _is_live(tx, rel.from_id) and _is_live(tx, rel.to_id):
            matches = [
                r
                for r in tx.relationships(from_id=rel.from_id, to_id=rel.to_id, rel_type=rel.type)
                if r.props == rel.properties
            ]
        if not matches:
            raise UndoConflictError(
                UndoConflictReason.RELATIONSHIP_MISSING,
                "One of the relationships created by that action cannot be deleted; cannot undo.",
            )
        # Parallel identical relationships may exist; remove only one.
        tx.delete_relationship(matches[0].id)


def _soft_delete_created(tx: WriteTransaction, changes: ActionChanges) -> None:
    for created in changes.created_nodes:
        node = tx.get_node(created.id)
        if node is None or VNODE_LABEL not in node.labels:
            raise UndoConflictError(
                UndoConflictReason.ALREADY_DELETED,
                "One of the nodes created by that action has since been deleted; cannot undo.",
            )
        if len(node.props) > len(created.properties):
            raise UndoConflictError(
                UndoConflictReason.MODIFIED_SINCE_CREATION,
                "One of the nodes created by that action has since been modified "
                "(new property); cannot undo.",
            )
        for name, value in created.properties.items():
            if node.props.get(name) != value:
                raise UndoConflictError(
                    UndoConflictReason.MODIFIED_SINCE_CREATION,
                    "One of the nodes created by that action has since been modified "
                    f"(property {name} changed); cannot undo.",
                )
        tx.soft_delete(created.id)


def _redelete_undeleted(tx: WriteTransaction, changes: ActionChanges) -> None:
    for node_id in changes.un_deleted_nodes:
        if _is_live(tx, node_id):
            tx.soft_delete(node_id)


def apply_undo(tx: WriteTransaction, actor_id: str, data: UndoInput) -> ApplyResult:
    """Reverse the Action ``data.actionId`` inside the current transaction."""
    target = tx.get_node(data.actionId)
    if target is None or ACTION_LABEL not in target.labels:
        raise UndoConflictError(
            UndoConflictReason.TARGET_MISSING,
            f"Action {data.actionId} does not exist; cannot undo.",
        )
    if tx.relationships(to_id=target.id, rel_type=REVERTED):
        raise UndoConflictError(
            UndoConflictReason.ALREADY_UNDONE, "That action was already undone."
        )

    changes = get_action_changes(tx, target.id)
    if changes.deleted_nodes_count > 0:
        raise UndoConflictError(
            UndoConflictReason.PERMANENT_DELETION,
            "Cannot undo an Action that permanently deleted data.",
        )

    _restore_soft_deleted(tx, changes)
    _recreate_deleted_relationships(tx, changes)
    _revert_properties(tx, changes)
    _delete_created_relationships(tx, changes)
    _soft_delete_created(tx, changes)
    _redelete_undeleted(tx, changes)

    if tx.action_id is None:
        raise RuntimeError("UndoAction must run inside an Action")
    tx.create_relationship(tx.action_id, REVERTED, target.id)

    touched = changes.touched_ids()
    log.info(
        "undo_applied",
        target_action_id=target.id,
        target_type=target.props.get("type"),
        touched=len(touched),
    )
    return ApplyResult(result_data={}, modified_nodes=touched)


UndoAction = ActionDefinition(UNDO_ACTION_TYPE, UndoInput, apply_undo)
