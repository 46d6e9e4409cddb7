"""Action history queries.

Provides functions to list and summarise the Actions recorded in a graph
for debugging and inspection.
"""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Any

from actiongraph.graph.query import ActionRecord, action_record
from actiongraph.graph.schema import ACTION_LABEL

if TYPE_CHECKING:
    from actiongraph.graph.graph import Graph


def list_actions(
    graph: Graph,
    *,
    limit: int = 50,
    action_type: str | None = None,
    actor_id: str | None = None,
) -> list[ActionRecord]:
    """List recorded Actions.

    Args:
        graph: Graph to inspect.
        limit: Maximum number of results.
        action_type: Filter by Action kind (e.g. "UndoAction").
        actor_id: Filter by the VNID of the performing User.

    Returns:
        ActionRecords, most recent first.
    """
    with graph.read() as tx:
        nodes = tx.find_nodes(ACTION_LABEL)
        if action_type is not None:
            nodes = [n for n in nodes if n.props.get("type") == action_type]
        records = [action_record(tx, n) for n in nodes]
    if actor_id is not None:
        records = [r for r in records if r.performed_by == actor_id]
    records.sort(key=lambda r: r.timestamp, reverse=True)
    return records[:limit]


def action_summary(graph: Graph) -> dict[str, Any]:
    """Get a summary of Action counts.

    Returns:
        Summary dict with total count, per-type counts, and how many Actions
        have been reverted.
    """
    with graph.read() as tx:
        records = [action_record(tx, n) for n in tx.find_nodes(ACTION_LABEL)]
    by_type = Counter(r.type for r in records)
    return {
        "total": len(records),
        "by_type": dict(by_type.most_common()),
        "reverted": sum(1 for r in records if r.reverted_by is not None),
    }
