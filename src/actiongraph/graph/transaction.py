"""Read and write transactions with write-set recording.

Every write goes through WriteTransaction, which forwards it to the store
transaction and accumulates the net effect in a WriteSet. Immediately before
commit, the installed triggers (slugId alias tracking, change capture) run
against that write-set in installation order; any exception they raise rolls
the whole transaction back.

Trigger installation state and unique constraints live in store metadata so
that migrations can install, pause, resume and remove them durably.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from actiongraph.graph.errors import ConstraintViolationError, NodeNotFoundError
from actiongraph.graph.ids import is_vnid, new_vnid
from actiongraph.observability.logging import get_logger

if TYPE_CHECKING:
    from actiongraph.graph.schema import VNodeType
    from actiongraph.graph.store import NodeRecord, RelRecord, StoreTransaction

log = get_logger(__name__)

VNODE_LABEL = "VNode"
DELETED_VNODE_LABEL = "DeletedVNode"
SLUG_ID_LABEL = "SlugId"
IDENTIFIES = "IDENTIFIES"

TRIGGERS_META_KEY = "triggers"
CONSTRAINTS_META_KEY = "constraints"


class Trigger(Protocol):
    """A hook run against the write-set right before a write commits."""

    name: str

    def before_commit(self, tx: WriteTransaction) -> None:
        """Inspect ``tx.write_set``; raise to abort the transaction."""
        ...


@dataclass
class WriteSet:
    """Net changes made by one write transaction.

    Attributes:
        created_nodes: Ids of nodes created (insertion ordered).
        deleted_nodes: Permanently deleted nodes, as they were just before deletion.
        added_labels: Labels added to pre-existing nodes, per node.
        removed_labels: Labels removed from pre-existing nodes, per node.
        changed_props: ``(old, new)`` per property of pre-existing nodes.
        created_rels: Relationships created, as created.
        deleted_rels: Pre-existing relationships deleted, with their last properties.
        edited_rels: Pre-existing relationships whose properties were edited in place.
    """

    created_nodes: dict[str, None] = field(default_factory=dict)
    deleted_nodes: dict[str, NodeRecord] = field(default_factory=dict)
    added_labels: dict[str, set[str]] = field(default_factory=dict)
    removed_labels: dict[str, set[str]] = field(default_factory=dict)
    changed_props: dict[str, dict[str, tuple[Any, Any]]] = field(default_factory=dict)
    created_rels: dict[int, RelRecord] = field(default_factory=dict)
    deleted_rels: dict[int, RelRecord] = field(default_factory=dict)
    edited_rels: dict[int, RelRecord] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (
            self.created_nodes
            or self.deleted_nodes
            or any(self.added_labels.values())
            or any(self.removed_labels.values())
            or any(self.changed_props.values())
            or self.created_rels
            or self.deleted_rels
            or self.edited_rels
        )


class ReadTransaction:
    """Read-only view over a store transaction."""

    def __init__(self, store_tx: StoreTransaction) -> None:
        self._tx = store_tx

    @property
    def store_tx(self) -> StoreTransaction:
        return self._tx

    # -- Nodes -----------------------------------------------------------------

    def get_node(self, node_id: str) -> NodeRecord | None:
        return self._tx.get_node(node_id)

    def find_nodes(self, label: str, props: dict[str, Any] | None = None) -> list[NodeRecord]:
        return self._tx.find_nodes(label, props)

    def resolve_key(self, key: str) -> str | None:
        """Resolve a VNID or a current/historical slugId to a VNID."""
        if is_vnid(key):
            return key if self._tx.get_node(key) is not None else None
        for slug_node in self._tx.find_nodes(SLUG_ID_LABEL, {"slugId": key}):
            for rel in self._tx.find_relationships(from_id=slug_node.id, rel_type=IDENTIFIES):
                return rel.to_id
        return None

    def get_vnode(self, key: str, label: str = VNODE_LABEL) -> NodeRecord:
        """Get a node by VNID or slugId, requiring it to carry *label*.

        Raises:
            NodeNotFoundError: If no such node exists.
        """
        node_id = self.resolve_key(key)
        node = self._tx.get_node(node_id) if node_id is not None else None
        if node is None or label not in node.labels:
            available = [
                str(n.props.get("slugId")) for n in self._tx.find_nodes(SLUG_ID_LABEL)
            ]
            raise NodeNotFoundError(key, available=available, context=f"expected :{label}")
        return node

    # -- Relationships ---------------------------------------------------------

    def get_relationship(self, rel_id: int) -> RelRecord | None:
        return self._tx.get_relationship(rel_id)

    def relationships(
        self,
        from_id: str | None = None,
        to_id: str | None = None,
        rel_type: str | None = None,
    ) -> list[RelRecord]:
        return self._tx.find_relationships(from_id=from_id, to_id=to_id, rel_type=rel_type)

    # -- Meta ------------------------------------------------------------------

    def get_meta(self, key: str) -> Any:
        return self._tx.get_meta(key)

    def installed_triggers(self) -> list[dict[str, Any]]:
        """Installed triggers in installation order, as ``{name, paused}`` dicts."""
        return list(self._tx.get_meta(TRIGGERS_META_KEY) or [])


class WriteTransaction(ReadTransaction):
    """Recording proxy over a writable store transaction.

    Args:
        store_tx: Open writable store transaction.
        triggers: Trigger implementations by name. Installed triggers with no
            implementation here abort the commit.
    """

    def __init__(
        self, store_tx: StoreTransaction, triggers: Mapping[str, Trigger] | None = None
    ) -> None:
        super().__init__(store_tx)
        self._triggers = dict(triggers or {})
        self.write_set = WriteSet()
        # Set by the runner to the Action being applied; None for migrations.
        self.action_id: str | None = None

    # -- Constraints -----------------------------------------------------------

    def _constraints(self) -> dict[str, dict[str, str]]:
        return dict(self._tx.get_meta(CONSTRAINTS_META_KEY) or {})

    def _check_constraints(
        self, node_id: str, labels: Iterable[str], props: dict[str, Any]
    ) -> None:
        labels = set(labels)
        for name, spec in self._constraints().items():
            label, prop = spec["label"], spec["property"]
            if label not in labels or props.get(prop) is None:
                continue
            matches = self._tx.find_nodes(label, {prop: props[prop]})
            clashes = [n for n in matches if n.id != node_id]
            if clashes:
                raise ConstraintViolationError(name, label, prop, props[prop])

    def add_constraint(self, name: str, label: str, prop: str) -> None:
        """Install a unique constraint on ``(label, prop)``."""
        constraints = self._constraints()
        constraints[name] = {"label": label, "property": prop}
        self._tx.set_meta(CONSTRAINTS_META_KEY, constraints)

    def drop_constraint(self, name: str) -> None:
        constraints = self._constraints()
        constraints.pop(name, None)
        self._tx.set_meta(CONSTRAINTS_META_KEY, constraints or None)

    # -- Triggers --------------------------------------------------------------

    def install_trigger(self, name: str, *, paused: bool = False) -> None:
        triggers = [t for t in self.installed_triggers() if t["name"] != name]
        triggers.append({"name": name, "paused": paused})
        self._tx.set_meta(TRIGGERS_META_KEY, triggers)

    def remove_trigger(self, name: str) -> None:
        triggers = [t for t in self.installed_triggers() if t["name"] != name]
        self._tx.set_meta(TRIGGERS_META_KEY, triggers or None)

    def set_trigger_paused(self, name: str, paused: bool) -> None:
        triggers = self.installed_triggers()
        for trigger in triggers:
            if trigger["name"] == name:
                trigger["paused"] = paused
        self._tx.set_meta(TRIGGERS_META_KEY, triggers)

    def set_meta(self, key: str, value: Any) -> None:
        self._tx.set_meta(key, value)

    # -- Nodes -----------------------------------------------------------------

    def _require_node(self, node_id: str) -> NodeRecord:
        node = self._tx.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id, context="write to missing node")
        return node

    def create_node(
        self,
        labels: Iterable[str],
        props: dict[str, Any] | None = None,
        *,
        node_id: str | None = None,
    ) -> str:
        """Create a node and return its id (a new VNID unless *node_id* is given)."""
        node_id = node_id or new_vnid()
        labels = set(labels)
        props = {k: v for k, v in (props or {}).items() if v is not None}
        self._check_constraints(node_id, labels, props)
        self._tx.create_node(node_id, labels, props)
        self.write_set.created_nodes[node_id] = None
        return node_id

    def create_vnode(self, node_type: type[VNodeType], **props: Any) -> str:
        """Create an entity of *node_type* with a new VNID."""
        return self.create_node(node_type.all_labels(), props)

    def set_props(self, node_id: str, props: dict[str, Any]) -> None:
        """Assign property values; ``None`` removes the property."""
        node = self._require_node(node_id)
        current = dict(node.props)
        changes = self.write_set.changed_props.setdefault(node_id, {})
        created = node_id in self.write_set.created_nodes
        for key, value in props.items():
            old = current.get(key)
            if value is None and key not in current:
                continue
            if value is None:
                del current[key]
            else:
                current[key] = value
            if not created:
                first_old = changes[key][0] if key in changes else old
                changes[key] = (first_old, value)
        self._check_constraints(node_id, node.labels, current)
        self._tx.update_node(node_id, props=current)

    def add_labels(self, node_id: str, *labels: str) -> None:
        node = self._require_node(node_id)
        new_labels = set(labels) - node.labels
        if not new_labels:
            return
        self._check_constraints(node_id, new_labels, node.props)
        self._tx.update_node(node_id, labels=set(node.labels) | new_labels)
        if node_id in self.write_set.created_nodes:
            return
        added = self.write_set.added_labels.setdefault(node_id, set())
        removed = self.write_set.removed_labels.setdefault(node_id, set())
        for label in new_labels:
            if label in removed:
                removed.discard(label)
            else:
                added.add(label)

    def remove_labels(self, node_id: str, *labels: str) -> None:
        node = self._require_node(node_id)
        gone = set(labels) & node.labels
        if not gone:
            return
        self._tx.update_node(node_id, labels=set(node.labels) - gone)
        if node_id in self.write_set.created_nodes:
            return
        added = self.write_set.added_labels.setdefault(node_id, set())
        removed = self.write_set.removed_labels.setdefault(node_id, set())
        for label in gone:
            if label in added:
                added.discard(label)
            else:
                removed.add(label)

    def soft_delete(self, node_id: str) -> None:
        """Mark an entity deleted by swapping ``VNode`` for ``DeletedVNode``."""
        self.add_labels(node_id, DELETED_VNODE_LABEL)
        self.remove_labels(node_id, VNODE_LABEL)

    def undelete(self, node_id: str) -> None:
        """Reverse :meth:`soft_delete`."""
        self.add_labels(node_id, VNODE_LABEL)
        self.remove_labels(node_id, DELETED_VNODE_LABEL)

    def delete_node(self, node_id: str) -> None:
        """Permanently delete a node and every relationship touching it."""
        node = self._require_node(node_id)
        for rel in self._tx.find_relationships(from_id=node_id):
            self.delete_relationship(rel.id)
        for rel in self._tx.find_relationships(to_id=node_id):
            self.delete_relationship(rel.id)
        self._tx.delete_node(node_id)
        if node_id in self.write_set.created_nodes:
            del self.write_set.created_nodes[node_id]
        else:
            self.write_set.deleted_nodes[node_id] = node

    # -- Relationships ---------------------------------------------------------

    def create_relationship(
        self, from_id: str, rel_type: str, to_id: str, props: dict[str, Any] | None = None
    ) -> int:
        self._require_node(from_id)
        self._require_node(to_id)
        props = {k: v for k, v in (props or {}).items() if v is not None}
        rel_id = self._tx.create_relationship(rel_type, from_id, to_id, props)
        rel = self._tx.get_relationship(rel_id)
        if rel is not None:
            self.write_set.created_rels[rel_id] = rel
        return rel_id

    def delete_relationship(self, rel_id: int) -> None:
        rel = self._tx.get_relationship(rel_id)
        if rel is None:
            raise KeyError(f"Relationship {rel_id} does not exist")
        self._tx.delete_relationship(rel_id)
        if self.write_set.created_rels.pop(rel_id, None) is None:
            self.write_set.deleted_rels[rel_id] = rel
        self.write_set.edited_rels.pop(rel_id, None)

    def set_relationship_props(self, rel_id: int, props: dict[str, Any]) -> None:
        """Edit relationship properties in place.

        Only permitted on relationships created in this same transaction; on
        anything else the change recorder rejects the commit.
        """
        rel = self._tx.get_relationship(rel_id)
        if rel is None:
            raise KeyError(f"Relationship {rel_id} does not exist")
        merged = {**rel.props, **props}
        merged = {k: v for k, v in merged.items() if v is not None}
        self._tx.update_relationship(rel_id, merged)
        if rel_id in self.write_set.created_rels:
            updated = self._tx.get_relationship(rel_id)
            if updated is not None:
                self.write_set.created_rels[rel_id] = updated
        else:
            self.write_set.edited_rels.setdefault(rel_id, rel)

    # -- Lifecycle -------------------------------------------------------------

    def run_triggers(self) -> None:
        """Run every installed, non-paused trigger against the write-set."""
        if self.write_set.is_empty():
            return
        for installed in self.installed_triggers():
            if installed.get("paused"):
                continue
            trigger = self._triggers.get(installed["name"])
            if trigger is None:
                msg = f"Trigger {installed['name']!r} is installed but has no implementation"
                raise RuntimeError(msg)
            trigger.before_commit(self)

    def commit(self) -> None:
        """Run triggers, then commit. Rolls back if anything fails."""
        try:
            self.run_triggers()
        except Exception:
            self.rollback()
            raise
        self._tx.commit()

    def rollback(self) -> None:
        self._tx.rollback()
        log.debug("write_rolled_back")
