"""slugId alias tracking.

Whenever a slugId is set on a new or existing VNode, a ``SlugId`` node is
created with an ``IDENTIFIES`` relationship to it, so lookups keep working
with any slugId the entity has ever had. An alias is never transferred: if
it already identifies another entity, the write fails.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from actiongraph.graph.errors import IntegrityError
from actiongraph.graph.transaction import IDENTIFIES, SLUG_ID_LABEL, VNODE_LABEL
from actiongraph.observability.logging import get_logger

if TYPE_CHECKING:
    from actiongraph.graph.transaction import WriteTransaction

log = get_logger(__name__)

SLUG_ID_TRIGGER = "slugIdTracking"


class SlugIdTrigger:
    """Maintains ``(:SlugId)-[:IDENTIFIES]->(:VNode)`` aliases."""

    name = SLUG_ID_TRIGGER

    def before_commit(self, tx: WriteTransaction) -> None:
        ws = tx.write_set
        candidates = list(ws.created_nodes)
        candidates += [
            node_id
            for node_id, changes in ws.changed_props.items()
            if "slugId" in changes and node_id not in ws.created_nodes
        ]
        now = datetime.now(UTC).isoformat()
        for node_id in candidates:
            node = tx.get_node(node_id)
            if node is None or VNODE_LABEL not in node.labels:
                continue
            slug_id = node.props.get("slugId")
            if slug_id is None:
                continue
            self._track(tx, node_id, slug_id, now)

        if ws.deleted_nodes:
            self._drop_dangling(tx)

    def _track(self, tx: WriteTransaction, node_id: str, slug_id: str, now: str) -> None:
        existing = tx.find_nodes(SLUG_ID_LABEL, {"slugId": slug_id})
        if not existing:
            alias_id = tx.create_node([SLUG_ID_LABEL], {"slugId": slug_id, "timestamp": now})
            tx.create_relationship(alias_id, IDENTIFIES, node_id)
            log.debug("slug_id_created", slug_id=slug_id, node_id=node_id)
            return
        alias = existing[0]
        targets = {r.to_id for r in tx.relationships(from_id=alias.id, rel_type=IDENTIFIES)}
        if targets - {node_id}:
            raise IntegrityError(
                f'The slugId "{slug_id}" is already in use (or was previously used) '
                "by another node."
            )
        if not targets:
            tx.create_relationship(alias.id, IDENTIFIES, node_id)
        tx.set_props(alias.id, {"timestamp": now})

    def _drop_dangling(self, tx: WriteTransaction) -> None:
        """Delete SlugId nodes left pointing at nothing after a permanent delete."""
        for rel in list(tx.write_set.deleted_rels.values()):
            if rel.type != IDENTIFIES or rel.to_id not in tx.write_set.deleted_nodes:
                continue
            alias = tx.get_node(rel.from_id)
            if alias is None:
                continue
            if not tx.relationships(from_id=alias.id, rel_type=IDENTIFIES):
                tx.delete_node(alias.id)
                log.debug("slug_id_dropped", slug_id=alias.props.get("slugId"))
