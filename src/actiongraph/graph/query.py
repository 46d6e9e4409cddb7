"""Typed reads: entity projections and Action history.

``pull`` projects live entities of one type into plain dicts, optionally
following declared relationships::

    pull(tx, Movie, "title", "year", franchise=Related("FRANCHISE_IS", "slugId"))
    # [{"title": "Guardians of the Galaxy", "year": 2014, "franchise": {"slugId": "mcu"}}]
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from actiongraph.graph.changes import ActionChanges, get_action_changes
from actiongraph.graph.errors import GraphError
from actiongraph.graph.schema import ACTION_LABEL, MODIFIED, PERFORMED, REVERTED
from actiongraph.graph.transaction import VNODE_LABEL

if TYPE_CHECKING:
    from collections.abc import Callable

    from actiongraph.graph.schema import VNodeType
    from actiongraph.graph.store import NodeRecord
    from actiongraph.graph.transaction import ReadTransaction

__all__ = [
    "ActionChanges",
    "ActionRecord",
    "Related",
    "get_action",
    "get_action_changes",
    "pull",
    "pull_one",
]


class Related:
    """Follow a relationship from each pulled entity and project its target."""

    def __init__(self, rel_type: str, *fields: str) -> None:
        self.rel_type = rel_type
        self.fields = fields

    def __repr__(self) -> str:
        return f"Related({self.rel_type!r}, {', '.join(map(repr, self.fields))})"


def _project(node: NodeRecord, fields: tuple[str, ...]) -> dict[str, Any]:
    if not fields:
        return {"id": node.id, **node.props}
    return {f: node.id if f == "id" else node.props.get(f) for f in fields}


def _sort_key(order_by: str) -> Callable[[NodeRecord], tuple[bool, Any]]:
    def key(node: NodeRecord) -> tuple[bool, Any]:
        value = node.props.get(order_by) if order_by != "id" else node.id
        return (value is None, value if value is not None else "")

    return key


def pull(
    tx: ReadTransaction,
    node_type: type[VNodeType],
    *fields: str,
    key: str | None = None,
    order_by: str | None = None,
    **related: Related,
) -> list[dict[str, Any]]:
    """Project live entities of *node_type* into dicts.

    Args:
        tx: Open read (or write) transaction.
        node_type: Entity type to pull.
        *fields: Property names to include; ``"id"`` is the VNID. All
            properties when empty.
        key: VNID or slugId of a single entity to pull.
        order_by: Property to sort by; defaults to the type's default_order_by.
        **related: Output name -> Related(rel_type, *fields). To-one
            relationships project to a dict or None, others to a list.

    Raises:
        NodeNotFoundError: If *key* matches no entity of the type.
    """
    if key is not None:
        node = tx.get_vnode(key, node_type.label)
        nodes = [node] if VNODE_LABEL in node.labels else []
    else:
        nodes = [n for n in tx.find_nodes(node_type.label) if VNODE_LABEL in n.labels]
    order = order_by or node_type.default_order_by
    if order:
        nodes.sort(key=_sort_key(order))

    rows: list[dict[str, Any]] = []
    for node in nodes:
        row = _project(node, fields)
        for name, spec in related.items():
            targets = [
                target
                for rel in tx.relationships(from_id=node.id, rel_type=spec.rel_type)
                if (target := tx.get_node(rel.to_id)) is not None and VNODE_LABEL in target.labels
            ]
            projected = [_project(t, spec.fields) for t in targets]
            decl = node_type.rel.get(spec.rel_type)
            if decl is not None and decl.cardinality.is_to_one:
                row[name] = projected[0] if projected else None
            else:
                row[name] = projected
        rows.append(row)
    return rows


def pull_one(
    tx: ReadTransaction,
    node_type: type[VNodeType],
    *fields: str,
    key: str | None = None,
    **related: Related,
) -> dict[str, Any]:
    """Like :func:`pull` but requires exactly one result.

    Raises:
        GraphError: If zero or several entities match.
    """
    rows = pull(tx, node_type, *fields, key=key, **related)
    if len(rows) != 1:
        raise GraphError(f"Expected exactly one {node_type.label}, found {len(rows)}")
    return rows[0]


class ActionRecord(BaseModel):
    """A committed Action as seen by history tooling."""

    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str
    took_ms: int | None = None
    deleted_nodes_count: int = 0
    performed_by: str | None = None
    reverted_by: str | None = None
    modified_nodes: list[str] = Field(default_factory=list)


def action_record(tx: ReadTransaction, node: NodeRecord) -> ActionRecord:
    """Build an ActionRecord from an Action node."""
    performed = tx.relationships(to_id=node.id, rel_type=PERFORMED)
    reverted = tx.relationships(to_id=node.id, rel_type=REVERTED)
    modified = [r.to_id for r in tx.relationships(from_id=node.id, rel_type=MODIFIED)]
    try:
        data = json.loads(node.props.get("data") or "{}")
    except json.JSONDecodeError:
        data = {"raw": node.props.get("data")}
    return ActionRecord(
        id=node.id,
        type=str(node.props.get("type")),
        data=data if isinstance(data, dict) else {"value": data},
        timestamp=str(node.props.get("timestamp")),
        took_ms=node.props.get("tookMs"),
        deleted_nodes_count=int(node.props.get("deletedNodesCount") or 0),
        performed_by=performed[0].from_id if performed else None,
        reverted_by=reverted[0].from_id if reverted else None,
        modified_nodes=modified,
    )


def get_action(tx: ReadTransaction, action_id: str) -> ActionRecord:
    """Load one Action by VNID.

    Raises:
        NodeNotFoundError: If no such Action exists.
    """
    return action_record(tx, tx.get_vnode(action_id, ACTION_LABEL))
