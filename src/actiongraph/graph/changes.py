"""Change capture: record exactly what each Action changed.

The ChangeRecorder trigger runs right before a write commits. It requires
exactly one new Action in the transaction, turns the write-set into one
change-detail map per touched entity and merges each map into the
``(Action)-[:MODIFIED]->(entity)`` link. An entity that changed without such
a link fails the whole transaction.

Change-detail keys::

    created                          comma-joined labels of a created entity
    addedLabel:<label>               True
    removedLabel:<label>             True
    newProp:<name> / oldProp:<name>  property values after / before
    newRel:<relId>:<type>            VNID of the end entity
    newRelProp:<relId>:<prop>        property of the created relationship
    deletedRel:<relId>:<type>        VNID of the end entity
    deletedRelProp:<relId>:<prop>    property of the deleted relationship

For created entities the initial properties are stored as ``newProp:`` keys.
``get_action_changes()`` parses the maps back into an ActionChanges.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from actiongraph.graph.errors import (
    IntegrityError,
    NodeNotFoundError,
    RelationshipPropertyEditError,
    UndeclaredModificationError,
)
from actiongraph.graph.schema import ACTION_LABEL, MODIFIED
from actiongraph.graph.transaction import DELETED_VNODE_LABEL, VNODE_LABEL
from actiongraph.observability.logging import get_logger

if TYPE_CHECKING:
    from actiongraph.graph.store import NodeRecord
    from actiongraph.graph.transaction import ReadTransaction, WriteTransaction

log = get_logger(__name__)

TRACK_ACTION_CHANGES = "trackActionChanges"

_TRACKED_LABELS = frozenset({VNODE_LABEL, DELETED_VNODE_LABEL})


def _tracked(node: NodeRecord | None) -> bool:
    return node is not None and bool(node.labels & _TRACKED_LABELS)


def _display_label(node: NodeRecord) -> str:
    specific = sorted(node.labels - _TRACKED_LABELS)
    return specific[0] if specific else VNODE_LABEL


class ChangeRecorder:
    """The ``trackActionChanges`` trigger."""

    name = TRACK_ACTION_CHANGES

    def before_commit(self, tx: WriteTransaction) -> None:
        ws = tx.write_set
        actions = [
            node_id
            for node_id in ws.created_nodes
            if (node := tx.get_node(node_id)) is not None
            and ACTION_LABEL in node.labels
            and VNODE_LABEL in node.labels
        ]
        if len(actions) != 1:
            raise IntegrityError(
                "every data write transaction should be associated with one Action, "
                f"found {len(actions)}"
            )
        action_id = actions[0]

        # Only permanently deleted VNodes count; SlugId and other nodes do not.
        deleted_count = sum(1 for n in ws.deleted_nodes.values() if n.labels & _TRACKED_LABELS)
        tx.set_props(action_id, {"deletedNodesCount": deleted_count})
        action = tx.get_node(action_id)
        assert action is not None

        details: dict[str, dict[str, Any]] = defaultdict(dict)

        for node_id in ws.created_nodes:
            if node_id == action_id:
                continue
            node = tx.get_node(node_id)
            if node is None or not _tracked(node):
                continue
            details[node_id]["created"] = ",".join(sorted(node.labels))
            for key, value in node.props.items():
                details[node_id][f"newProp:{key}"] = value

        for node_id, labels in ws.added_labels.items():
            if labels and _tracked(tx.get_node(node_id)):
                for label in sorted(labels):
                    details[node_id][f"addedLabel:{label}"] = True

        for node_id, labels in ws.removed_labels.items():
            if labels and node_id not in ws.deleted_nodes and _tracked(tx.get_node(node_id)):
                for label in sorted(labels):
                    details[node_id][f"removedLabel:{label}"] = True

        for node_id, changes in ws.changed_props.items():
            if node_id == action_id or node_id in ws.deleted_nodes:
                continue
            if not _tracked(tx.get_node(node_id)):
                continue
            for key, (old, new) in changes.items():
                if old == new:
                    continue
                details[node_id][f"newProp:{key}"] = new
                details[node_id][f"oldProp:{key}"] = old

        for rel in ws.created_rels.values():
            if action_id in (rel.from_id, rel.to_id):
                continue
            start = tx.get_node(rel.from_id)
            if start is None or VNODE_LABEL not in start.labels:
                continue
            entry = details[rel.from_id]
            entry[f"newRel:{rel.id}:{rel.type}"] = rel.to_id
            for key, value in rel.props.items():
                entry[f"newRelProp:{rel.id}:{key}"] = value

        for rel in ws.deleted_rels.values():
            if action_id in (rel.from_id, rel.to_id):
                continue
            if rel.from_id in ws.deleted_nodes or rel.to_id in ws.deleted_nodes:
                continue
            if not _tracked(tx.get_node(rel.from_id)):
                continue
            entry = details[rel.from_id]
            entry[f"deletedRel:{rel.id}:{rel.type}"] = rel.to_id
            for key, value in rel.props.items():
                entry[f"deletedRelProp:{rel.id}:{key}"] = value

        for rel in ws.edited_rels.values():
            if _tracked(tx.get_node(rel.from_id)):
                raise RelationshipPropertyEditError(rel.type)

        action_type = str(action.props.get("type"))
        for node_id, change in details.items():
            node = tx.get_node(node_id)
            assert node is not None
            links = tx.relationships(from_id=action_id, to_id=node_id, rel_type=MODIFIED)
            if not links:
                raise UndeclaredModificationError(
                    node_id, _display_label(node), action_type, next(iter(change))
                )
            link = links[0]
            # Written straight to the store: the link belongs to the Action itself.
            tx.store_tx.update_relationship(link.id, {**link.props, **change})

        log.debug(
            "action_changes_recorded",
            action_id=action_id,
            action_type=action_type,
            nodes=len(details),
            deleted_nodes=deleted_count,
        )


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


@dataclass
class CreatedNode:
    id: str
    labels: list[str]
    properties: dict[str, Any]


@dataclass
class PropertyChange:
    old: Any
    new: Any


@dataclass
class ModifiedNode:
    id: str
    properties: dict[str, PropertyChange]


@dataclass
class RelationshipChange:
    """A relationship created or deleted by an Action."""

    type: str
    from_id: str
    to_id: str
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionChanges:
    """Everything one Action changed, reconstructed from its MODIFIED links."""

    created_nodes: list[CreatedNode] = field(default_factory=list)
    modified_nodes: list[ModifiedNode] = field(default_factory=list)
    soft_deleted_nodes: list[str] = field(default_factory=list)
    un_deleted_nodes: list[str] = field(default_factory=list)
    created_relationships: list[RelationshipChange] = field(default_factory=list)
    deleted_relationships: list[RelationshipChange] = field(default_factory=list)
    deleted_nodes_count: int = 0

    def touched_ids(self) -> list[str]:
        """Entity ids an inverse of these changes would modify, deduplicated."""
        ids: dict[str, None] = {}
        for created in self.created_nodes:
            ids[created.id] = None
        for rel in (*self.created_relationships, *self.deleted_relationships):
            ids[rel.from_id] = None
        for modified in self.modified_nodes:
            ids[modified.id] = None
        for node_id in (*self.soft_deleted_nodes, *self.un_deleted_nodes):
            ids[node_id] = None
        return list(ids)


def _parse_rels(
    node_id: str, details: dict[str, Any], rel_prefix: str, prop_prefix: str
) -> list[RelationshipChange]:
    rels: dict[str, RelationshipChange] = {}
    for key, value in details.items():
        if key.startswith(rel_prefix):
            rel_id, rel_type = key[len(rel_prefix) :].split(":", 1)
            rels[rel_id] = RelationshipChange(type=rel_type, from_id=node_id, to_id=value)
    for key, value in details.items():
        if key.startswith(prop_prefix):
            rel_id, prop = key[len(prop_prefix) :].split(":", 1)
            if rel_id in rels:
                rels[rel_id].properties[prop] = value
    return list(rels.values())


def parse_change_details(changes: ActionChanges, node_id: str, details: dict[str, Any]) -> None:
    """Fold one entity's change-detail map into *changes*."""
    if "created" in details:
        changes.created_nodes.append(
            CreatedNode(
                id=node_id,
                labels=str(details["created"]).split(","),
                properties={
                    k.removeprefix("newProp:"): v
                    for k, v in details.items()
                    if k.startswith("newProp:")
                },
            )
        )
    else:
        props: dict[str, PropertyChange] = {}
        for key, value in details.items():
            if key.startswith("newProp:"):
                name = key.removeprefix("newProp:")
                props[name] = PropertyChange(old=details.get(f"oldProp:{name}"), new=value)
        if props:
            changes.modified_nodes.append(ModifiedNode(id=node_id, properties=props))

    if details.get(f"addedLabel:{DELETED_VNODE_LABEL}") and details.get(
        f"removedLabel:{VNODE_LABEL}"
    ):
        changes.soft_deleted_nodes.append(node_id)
    if details.get(f"removedLabel:{DELETED_VNODE_LABEL}") and details.get(
        f"addedLabel:{VNODE_LABEL}"
    ):
        changes.un_deleted_nodes.append(node_id)

    changes.created_relationships += _parse_rels(node_id, details, "newRel:", "newRelProp:")
    changes.deleted_relationships += _parse_rels(
        node_id, details, "deletedRel:", "deletedRelProp:"
    )


def get_action_changes(tx: ReadTransaction, action_id: str) -> ActionChanges:
    """Reconstruct what an Action changed from its MODIFIED links.

    Raises:
        NodeNotFoundError: If *action_id* is not an Action.
    """
    action = tx.get_node(action_id)
    if action is None or ACTION_LABEL not in action.labels:
        raise NodeNotFoundError(action_id, context="expected :Action")
    changes = ActionChanges(deleted_nodes_count=int(action.props.get("deletedNodesCount") or 0))
    for link in tx.relationships(from_id=action_id, rel_type=MODIFIED):
        parse_change_details(changes, link.to_id, link.props)
    return changes
