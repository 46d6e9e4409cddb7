"""Graph storage backend protocol and in-memory implementation.

The GraphStore protocol defines the low-level transactional storage
operations the rest of the package delegates to. Implementations handle raw
CRUD on nodes, relationships and metadata; WriteTransaction records the
write-set on top of them and Graph provides the public API.

MemoryGraphStore is the default backend. SqliteGraphStore provides durable
SQLite-backed storage with the same surface.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class NodeRecord:
    """A node as stored: permanent id, labels, and property values."""

    id: str
    labels: frozenset[str]
    props: dict[str, Any] = field(default_factory=dict)

    def has_label(self, label: str) -> bool:
        return label in self.labels


@dataclass(frozen=True)
class RelRecord:
    """A directed relationship as stored.

    ``id`` is assigned by the store and is not stable across delete and
    re-create.
    """

    id: int
    type: str
    from_id: str
    to_id: str
    props: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class StoreTransaction(Protocol):
    """One open read or write transaction against a GraphStore.

    Methods raise no domain-specific errors; callers translate missing
    nodes and the like into graph errors.
    """

    writable: bool

    # -- Nodes -----------------------------------------------------------------

    def get_node(self, node_id: str) -> NodeRecord | None:
        """Get a node by id, or None if not found."""
        ...

    def find_nodes(
        self, label: str | None = None, props: dict[str, Any] | None = None
    ) -> list[NodeRecord]:
        """Return nodes having *label* whose properties match *props* exactly."""
        ...

    def create_node(self, node_id: str, labels: set[str], props: dict[str, Any]) -> None:
        """Create a node. The id must not already exist."""
        ...

    def update_node(
        self,
        node_id: str,
        *,
        labels: set[str] | None = None,
        props: dict[str, Any] | None = None,
    ) -> None:
        """Replace the labels and/or properties of an existing node."""
        ...

    def delete_node(self, node_id: str) -> None:
        """Delete a node. No cascade; caller removes relationships first."""
        ...

    # -- Relationships ---------------------------------------------------------

    def get_relationship(self, rel_id: int) -> RelRecord | None:
        """Get a relationship by its store id, or None."""
        ...

    def find_relationships(
        self,
        from_id: str | None = None,
        to_id: str | None = None,
        rel_type: str | None = None,
    ) -> list[RelRecord]:
        """Return relationships matching optional filters, in creation order."""
        ...

    def create_relationship(
        self, rel_type: str, from_id: str, to_id: str, props: dict[str, Any]
    ) -> int:
        """Create a relationship and return its new store id."""
        ...

    def update_relationship(self, rel_id: int, props: dict[str, Any]) -> None:
        """Replace the properties of a relationship."""
        ...

    def delete_relationship(self, rel_id: int) -> None:
        """Delete a relationship by store id."""
        ...

    # -- Meta ------------------------------------------------------------------

    def get_meta(self, key: str) -> Any:
        """Get a metadata value by key, or None if absent."""
        ...

    def set_meta(self, key: str, value: Any) -> None:
        """Set a metadata value. ``None`` removes the key."""
        ...

    # -- Lifecycle -------------------------------------------------------------

    def commit(self) -> None:
        """Make every change in this transaction durable and visible."""
        ...

    def rollback(self) -> None:
        """Discard every change in this transaction."""
        ...


@runtime_checkable
class GraphStore(Protocol):
    """A transactional backing store for the graph."""

    def begin(self, *, write: bool) -> StoreTransaction:
        """Open a read-only (``write=False``) or write transaction."""
        ...

    def close(self) -> None:
        """Release any resources held by the store."""
        ...

    def to_dict(self) -> dict[str, Any]:
        """Serialize the committed contents of the store (deep copy)."""
        ...

    def load_dict(self, data: dict[str, Any]) -> None:
        """Replace the committed contents with a ``to_dict()`` export."""
        ...


def _empty_state() -> dict[str, Any]:
    return {"nodes": {}, "relationships": {}, "meta": {}, "next_rel_id": 1}


def _match(node: dict[str, Any], label: str | None, props: dict[str, Any] | None) -> bool:
    if label is not None and label not in node["labels"]:
        return False
    if props:
        return all(k in node["props"] and node["props"][k] == v for k, v in props.items())
    return True


def _node(data: dict[str, Any]) -> NodeRecord:
    return NodeRecord(
        id=data["id"], labels=frozenset(data["labels"]), props=copy.deepcopy(data["props"])
    )


def _rel(data: dict[str, Any]) -> RelRecord:
    return RelRecord(
        id=data["id"],
        type=data["type"],
        from_id=data["from"],
        to_id=data["to"],
        props=copy.deepcopy(data["props"]),
    )


class MemoryTransaction:
    """Transaction over a MemoryGraphStore.

    Write transactions operate on a private deep copy of the committed state
    which replaces it on commit. Read transactions share the committed state,
    which is never mutated in place, so they always see a stable snapshot.
    """

    def __init__(self, store: MemoryGraphStore, state: dict[str, Any], *, writable: bool) -> None:
        self._store = store
        self._state = state
        self.writable = writable
        self._closed = False

    def _check_writable(self) -> None:
        if not self.writable:
            raise RuntimeError("Cannot write in a read-only transaction")
        if self._closed:
            raise RuntimeError("Transaction is already closed")

    # -- Nodes -----------------------------------------------------------------

    def get_node(self, node_id: str) -> NodeRecord | None:
        data = self._state["nodes"].get(node_id)
        return _node(data) if data is not None else None

    def find_nodes(
        self, label: str | None = None, props: dict[str, Any] | None = None
    ) -> list[NodeRecord]:
        return [_node(n) for n in self._state["nodes"].values() if _match(n, label, props)]

    def create_node(self, node_id: str, labels: set[str], props: dict[str, Any]) -> None:
        self._check_writable()
        if node_id in self._state["nodes"]:
            raise KeyError(f"Node {node_id!r} already exists")
        self._state["nodes"][node_id] = {
            "id": node_id,
            "labels": sorted(labels),
            "props": copy.deepcopy(props),
        }

    def update_node(
        self,
        node_id: str,
        *,
        labels: set[str] | None = None,
        props: dict[str, Any] | None = None,
    ) -> None:
        self._check_writable()
        node = self._state["nodes"][node_id]
        if labels is not None:
            node["labels"] = sorted(labels)
        if props is not None:
            node["props"] = copy.deepcopy(props)

    def delete_node(self, node_id: str) -> None:
        self._check_writable()
        del self._state["nodes"][node_id]

    # -- Relationships ---------------------------------------------------------

    def get_relationship(self, rel_id: int) -> RelRecord | None:
        data = self._state["relationships"].get(rel_id)
        return _rel(data) if data is not None else None

    def find_relationships(
        self,
        from_id: str | None = None,
        to_id: str | None = None,
        rel_type: str | None = None,
    ) -> list[RelRecord]:
        rels: list[dict[str, Any]] = list(self._state["relationships"].values())
        if from_id is not None:
            rels = [r for r in rels if r["from"] == from_id]
        if to_id is not None:
            rels = [r for r in rels if r["to"] == to_id]
        if rel_type is not None:
            rels = [r for r in rels if r["type"] == rel_type]
        return [_rel(r) for r in rels]

    def create_relationship(
        self, rel_type: str, from_id: str, to_id: str, props: dict[str, Any]
    ) -> int:
        self._check_writable()
        rel_id: int = self._state["next_rel_id"]
        self._state["next_rel_id"] = rel_id + 1
        self._state["relationships"][rel_id] = {
            "id": rel_id,
            "type": rel_type,
            "from": from_id,
            "to": to_id,
            "props": copy.deepcopy(props),
        }
        return rel_id

    def update_relationship(self, rel_id: int, props: dict[str, Any]) -> None:
        self._check_writable()
        self._state["relationships"][rel_id]["props"] = copy.deepcopy(props)

    def delete_relationship(self, rel_id: int) -> None:
        self._check_writable()
        del self._state["relationships"][rel_id]

    # -- Meta ------------------------------------------------------------------

    def get_meta(self, key: str) -> Any:
        return copy.deepcopy(self._state["meta"].get(key))

    def set_meta(self, key: str, value: Any) -> None:
        self._check_writable()
        if value is None:
            self._state["meta"].pop(key, None)
        else:
            self._state["meta"][key] = copy.deepcopy(value)

    # -- Lifecycle -------------------------------------------------------------

    def commit(self) -> None:
        if self._closed:
            raise RuntimeError("Transaction is already closed")
        self._closed = True
        if self.writable:
            self._store._finish_write(self._state)

    def rollback(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.writable:
            self._store._finish_write(None)


class MemoryGraphStore:
    """In-memory dict-based graph store.

    Writers are serialised; each write transaction holds the writer lock
    from ``begin`` until commit or rollback.
    """

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._state: dict[str, Any] = _empty_state()
        if data is not None:
            self._load(data)
        self._write_lock = threading.Lock()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryGraphStore:
        """Create a MemoryGraphStore from a ``to_dict()`` export."""
        return cls(data)

    def _load(self, data: dict[str, Any]) -> None:
        state = _empty_state()
        for node in data.get("nodes", []):
            state["nodes"][node["id"]] = {
                "id": node["id"],
                "labels": sorted(node["labels"]),
                "props": copy.deepcopy(node.get("props", {})),
            }
        for rel in data.get("relationships", []):
            state["relationships"][rel["id"]] = {
                "id": rel["id"],
                "type": rel["type"],
                "from": rel["from"],
                "to": rel["to"],
                "props": copy.deepcopy(rel.get("props", {})),
            }
        state["meta"] = copy.deepcopy(data.get("meta", {}))
        state["next_rel_id"] = max(state["relationships"], default=0) + 1
        self._state = state

    def begin(self, *, write: bool) -> MemoryTransaction:
        if not write:
            return MemoryTransaction(self, self._state, writable=False)
        self._write_lock.acquire()
        return MemoryTransaction(self, copy.deepcopy(self._state), writable=True)

    def _finish_write(self, new_state: dict[str, Any] | None) -> None:
        if new_state is not None:
            self._state = new_state
        self._write_lock.release()

    def close(self) -> None:
        """No-op: nothing to release for the memory backend."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [copy.deepcopy(n) for n in self._state["nodes"].values()],
            "relationships": [copy.deepcopy(r) for r in self._state["relationships"].values()],
            "meta": copy.deepcopy(self._state["meta"]),
        }

    def load_dict(self, data: dict[str, Any]) -> None:
        """Replace the entire committed contents with a ``to_dict()`` export."""
        with self._write_lock:
            self._load(data)
