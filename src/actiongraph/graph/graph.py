"""The action graph.

Graph ties a backing store to the schema, the Action registry, the runner,
the write triggers and the migrations. Reads go through short read-only
transactions; every write goes through an Action, except inside migrations
and the explicit ``allow_writes_without_action()`` block.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, TypeVar

from actiongraph.graph.actions import ActionRegistry
from actiongraph.graph.changes import TRACK_ACTION_CHANGES, ChangeRecorder, get_action_changes
from actiongraph.graph.ids import SYSTEM_VNID
from actiongraph.graph.migrations import (
    DEFAULT_BATCH_SIZE,
    MigrationContext,
    MigrationManager,
    allow_writes_without_action,
    core_migrations,
)
from actiongraph.graph.query import get_action, pull, pull_one
from actiongraph.graph.runner import ActionRunner
from actiongraph.graph.schema import Action, SchemaRegistry, User
from actiongraph.graph.slugs import SLUG_ID_TRIGGER, SlugIdTrigger
from actiongraph.graph.transaction import ReadTransaction
from actiongraph.graph.undo import UNDO_ACTION_TYPE, UndoAction

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from actiongraph.graph.actions import ActionRequest
    from actiongraph.graph.changes import ActionChanges
    from actiongraph.graph.migrations import Migration
    from actiongraph.graph.query import ActionRecord, Related
    from actiongraph.graph.runner import ActionResult
    from actiongraph.graph.schema import VNodeType
    from actiongraph.graph.store import GraphStore
    from actiongraph.graph.transaction import Trigger, WriteTransaction

T = TypeVar("T")


class Graph:
    """A graph store with audited, undoable writes.

    Args:
        store: Backing store (memory or SQLite).
        schema: Entity types. The core User and Action types are added if
            missing, then the schema is finalized.
        actions: Action kinds. The built-in UndoAction is added if missing.
        migrations: Application migrations, run after the core ones.
        batch_size: Nodes per transaction for batched teardown.
    """

    def __init__(
        self,
        store: GraphStore,
        schema: SchemaRegistry | None = None,
        actions: ActionRegistry | None = None,
        migrations: list[Migration] | None = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.store = store
        self.schema = schema if schema is not None else SchemaRegistry()
        for core_type in (User, Action):
            if core_type.label not in self.schema:
                self.schema.register(core_type)
        self.schema.finalize()

        self.actions = actions if actions is not None else ActionRegistry()
        if UNDO_ACTION_TYPE not in self.actions:
            self.actions.register(UndoAction)

        self.triggers: dict[str, Trigger] = {
            SLUG_ID_TRIGGER: SlugIdTrigger(),
            TRACK_ACTION_CHANGES: ChangeRecorder(),
        }
        self.runner = ActionRunner(store, self.schema, self.actions, self.triggers)
        self._migration_ctx = MigrationContext(store, self.triggers, batch_size)
        self.migrations = MigrationManager(
            self._migration_ctx, [*core_migrations(), *(migrations or [])]
        )

    # -- Reads -----------------------------------------------------------------

    @contextmanager
    def read(self) -> Iterator[ReadTransaction]:
        """Open a read-only transaction for the duration of the block."""
        store_tx = self.store.begin(write=False)
        try:
            yield ReadTransaction(store_tx)
        finally:
            store_tx.rollback()

    def pull(self, node_type: type[VNodeType], *fields: str, **kwargs: Any) -> list[dict[str, Any]]:
        with self.read() as tx:
            return pull(tx, node_type, *fields, **kwargs)

    def pull_one(
        self, node_type: type[VNodeType], *fields: str, key: str | None = None, **related: Related
    ) -> dict[str, Any]:
        with self.read() as tx:
            return pull_one(tx, node_type, *fields, key=key, **related)

    def get_action(self, action_id: str) -> ActionRecord:
        with self.read() as tx:
            return get_action(tx, action_id)

    def get_action_changes(self, action_id: str) -> ActionChanges:
        with self.read() as tx:
            return get_action_changes(tx, action_id)

    # -- Actions ---------------------------------------------------------------

    def run_as(self, actor_id: str, request: ActionRequest, *more: ActionRequest) -> ActionResult:
        """Run one or more Actions as the given User; return the last result."""
        return self.runner.run_as(actor_id, request, *more)

    def run_as_system(self, request: ActionRequest, *more: ActionRequest) -> ActionResult:
        """Run one or more Actions as the bootstrap system user."""
        return self.runner.run_as(SYSTEM_VNID, request, *more)

    def undo(self, action_id: str, actor_id: str = SYSTEM_VNID) -> ActionResult:
        """Reverse a past Action by running an UndoAction."""
        return self.run_as(actor_id, UndoAction(actionId=action_id))

    # -- Raw writes ------------------------------------------------------------

    @contextmanager
    def allow_writes_without_action(self) -> Iterator[None]:
        """Pause change tracking so raw writes may commit without an Action.

        Only for migrations and test setup.
        """
        with allow_writes_without_action(self._migration_ctx):
            yield

    def write_without_action(self, fn: Callable[[WriteTransaction], T]) -> T:
        """Run *fn* in one raw write transaction with change tracking paused."""
        with self.allow_writes_without_action():
            return self._migration_ctx.write(fn)

    def is_trigger_installed(self, name: str) -> bool:
        return self._migration_ctx.is_trigger_installed(name)

    # -- Migrations ------------------------------------------------------------

    def run_migrations(self) -> list[str]:
        return self.migrations.run_migrations()

    def reverse_migration(self, migration_id: str) -> None:
        self.migrations.reverse_migration(migration_id)

    def reverse_all_migrations(self) -> list[str]:
        return self.migrations.reverse_all_migrations()

    # -- Test support ----------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """Export the whole store, to restore later with ``reset_to_snapshot``."""
        return self.store.to_dict()

    def reset_to_snapshot(self, snapshot: dict[str, Any]) -> None:
        """Replace the whole store with a ``snapshot()`` export."""
        self.store.load_dict(snapshot)

    def close(self) -> None:
        self.store.close()
