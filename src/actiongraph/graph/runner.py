"""Run Actions, one write transaction each.

Per invocation the runner moves through Pending -> Applying -> Verifying ->
Committed, or Aborted on any error:

1. Pending: open a write transaction, create the Action entity and link it
   from the actor with ``PERFORMED``.
2. Applying: call the kind's ``apply`` and time it.
3. Verifying: link every declared entity with ``MODIFIED`` and validate it.
   At commit the change recorder rejects any undeclared change.
4. Committed: the transaction commits and the result is returned.

Nothing is retried. A failure rolls back everything the Action did.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from actiongraph.graph.errors import NodeNotFoundError
from actiongraph.graph.ids import new_vnid
from actiongraph.graph.schema import MODIFIED, PERFORMED, Action, User
from actiongraph.graph.transaction import VNODE_LABEL, WriteTransaction
from actiongraph.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping

    from actiongraph.graph.actions import ActionRegistry, ActionRequest
    from actiongraph.graph.schema import SchemaRegistry
    from actiongraph.graph.store import GraphStore
    from actiongraph.graph.transaction import Trigger

log = get_logger(__name__)


class RunState(StrEnum):
    PENDING = "pending"
    APPLYING = "applying"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass
class ActionResult:
    """Outcome of one committed Action."""

    action_id: str
    result_data: dict[str, Any] = field(default_factory=dict)
    took_ms: int = 0


class ActionRunner:
    """Executes ActionRequests against a store.

    Args:
        store: Backing graph store.
        schema: Validation collaborator for touched entities.
        actions: Registry the requests are dispatched through.
        triggers: Trigger implementations by name, passed to each transaction.
    """

    def __init__(
        self,
        store: GraphStore,
        schema: SchemaRegistry,
        actions: ActionRegistry,
        triggers: Mapping[str, Trigger],
    ) -> None:
        self._store = store
        self._schema = schema
        self._actions = actions
        self._triggers = triggers

    def run(self, actor_id: str, request: ActionRequest) -> ActionResult:
        """Run a single Action in its own write transaction.

        Raises:
            InvalidActionTypeError: If the request's kind is not registered.
            NodeNotFoundError: If the actor is not a User.
            GraphError: Whatever ``apply``, validation or the change recorder
                raise; the transaction is rolled back.
        """
        definition = self._actions.get(request.type)
        action_id = new_vnid()
        state = RunState.PENDING
        tx = WriteTransaction(self._store.begin(write=True), self._triggers)
        tx.action_id = action_id

        with structlog.contextvars.bound_contextvars(
            action_id=action_id, action_type=request.type
        ):
            try:
                actor = tx.get_node(actor_id)
                if actor is None or User.label not in actor.labels:
                    raise NodeNotFoundError(actor_id, context="expected :User actor")
                tx.create_node(
                    Action.all_labels(),
                    {
                        "type": request.type,
                        "data": request.to_json(),
                        "timestamp": datetime.now(UTC).isoformat(),
                    },
                    node_id=action_id,
                )
                tx.create_relationship(actor_id, PERFORMED, action_id)

                state = RunState.APPLYING
                start = time.perf_counter()
                applied = definition.apply(tx, actor_id, request.data)
                took_ms = round((time.perf_counter() - start) * 1000)
                tx.set_props(action_id, {"tookMs": took_ms})

                state = RunState.VERIFYING
                self._verify(tx, action_id, applied.modified_nodes)
                tx.commit()
                state = RunState.COMMITTED
            except Exception as e:
                tx.rollback()
                log.info(
                    "action_aborted",
                    state=str(state),
                    error=type(e).__name__,
                    message=str(e),
                )
                raise

            log.info("action_committed", actor_id=actor_id, took_ms=took_ms)
        return ActionResult(action_id=action_id, result_data=applied.result_data, took_ms=took_ms)

    def _verify(self, tx: WriteTransaction, action_id: str, modified_nodes: list[str]) -> None:
        """Link declared entities from the Action and validate the live ones."""
        declared = [n for n in dict.fromkeys(modified_nodes) if tx.get_node(n) is not None]
        for node_id in declared:
            tx.create_relationship(action_id, MODIFIED, node_id)
        for node_id in declared:
            node = tx.get_node(node_id)
            if node is not None and VNODE_LABEL in node.labels:
                self._schema.validate(tx, node)

    def run_as(self, actor_id: str, request: ActionRequest, *more: ActionRequest) -> ActionResult:
        """Run Actions one after another; return the result of the last.

        Each Action is its own transaction. If one fails, those before it stay
        committed.
        """
        result = self.run(actor_id, request)
        for next_request in more:
            result = self.run(actor_id, next_request)
        return result
