"""Dependency-ordered schema and bootstrap migrations.

Migrations form a DAG through their ``depends_on`` ids. Forward application
follows a stable topological order (Kahn's algorithm with registration order
as the tie-break); backward application runs in the exact reverse order.
Each applied migration is recorded as a ``Migration`` marker node, which is
the source of truth for what has run.

Migrations do not produce Actions, so the change recorder is paused while
each one runs and resumed afterwards if it is (still) installed.
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from actiongraph.graph.changes import TRACK_ACTION_CHANGES
from actiongraph.graph.errors import MigrationError
from actiongraph.graph.ids import SYSTEM_VNID, new_vnid
from actiongraph.graph.schema import PERFORMED, Action, User
from actiongraph.graph.slugs import SLUG_ID_TRIGGER
from actiongraph.graph.transaction import (
    DELETED_VNODE_LABEL,
    SLUG_ID_LABEL,
    VNODE_LABEL,
    ReadTransaction,
    WriteTransaction,
)
from actiongraph.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping

    from actiongraph.graph.store import GraphStore
    from actiongraph.graph.transaction import Trigger

log = get_logger(__name__)

T = TypeVar("T")

MIGRATION_LABEL = "Migration"
DEFAULT_BATCH_SIZE = 1000


class MigrationContext:
    """What a migration procedure may do: raw writes without an owning Action.

    Args:
        store: Backing graph store.
        triggers: Trigger implementations by name.
        batch_size: Nodes deleted per transaction by ``delete_in_batches``.
    """

    def __init__(
        self,
        store: GraphStore,
        triggers: Mapping[str, Trigger],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self._triggers = triggers
        self.batch_size = batch_size

    def write(self, fn: Callable[[WriteTransaction], T]) -> T:
        """Run *fn* in its own write transaction and commit it."""
        tx = WriteTransaction(self.store.begin(write=True), self._triggers)
        try:
            result = fn(tx)
            tx.commit()
        except Exception:
            tx.rollback()
            raise
        return result

    def read_trigger_state(self) -> list[dict[str, Any]]:
        tx = self.store.begin(write=False)
        try:
            return ReadTransaction(tx).installed_triggers()
        finally:
            tx.rollback()

    def is_trigger_installed(self, name: str) -> bool:
        return any(t["name"] == name for t in self.read_trigger_state())

    def delete_in_batches(self, label: str) -> int:
        """Permanently delete every node with *label*, ``batch_size`` per transaction.

        Returns:
            Number of nodes deleted.
        """

        def delete_batch(tx: WriteTransaction) -> int:
            nodes = tx.find_nodes(label)[: self.batch_size]
            for node in nodes:
                if tx.get_node(node.id) is not None:
                    tx.delete_node(node.id)
            return len(nodes)

        total = 0
        while True:
            deleted = self.write(delete_batch)
            total += deleted
            if deleted < self.batch_size:
                break
        log.debug("batch_delete_done", label=label, deleted=total, batch_size=self.batch_size)
        return total


@contextmanager
def allow_writes_without_action(ctx: MigrationContext) -> Iterator[None]:
    """Pause the change recorder for the duration of the block.

    The recorder is resumed afterwards only if it is installed at that point,
    so a block that installs it (paused) leaves it active.
    """
    if ctx.is_trigger_installed(TRACK_ACTION_CHANGES):
        ctx.write(lambda tx: tx.set_trigger_paused(TRACK_ACTION_CHANGES, True))
        log.debug("trigger_paused", trigger=TRACK_ACTION_CHANGES)
    try:
        yield
    finally:
        if ctx.is_trigger_installed(TRACK_ACTION_CHANGES):
            ctx.write(lambda tx: tx.set_trigger_paused(TRACK_ACTION_CHANGES, False))
            log.debug("trigger_resumed", trigger=TRACK_ACTION_CHANGES)


@dataclass(frozen=True)
class Migration:
    """One forward/backward schema or data procedure."""

    id: str
    depends_on: tuple[str, ...]
    forward: Callable[[MigrationContext], None]
    backward: Callable[[MigrationContext], None]


class MigrationManager:
    """Validates, orders, applies and reverses migrations.

    Args:
        ctx: Context handed to every migration procedure.
        migrations: Initial migrations, in registration order.
    """

    def __init__(self, ctx: MigrationContext, migrations: list[Migration] | None = None) -> None:
        self._ctx = ctx
        self._migrations: dict[str, Migration] = {}
        for migration in migrations or []:
            self.register(migration)

    def register(self, migration: Migration) -> None:
        """Add a migration.

        Raises:
            ValueError: If a migration with the same id is already registered.
        """
        if migration.id in self._migrations:
            msg = f"Duplicate migration id {migration.id!r}"
            raise ValueError(msg)
        self._migrations[migration.id] = migration

    @property
    def migration_ids(self) -> list[str]:
        """All registered ids (registration order)."""
        return list(self._migrations)

    def get(self, migration_id: str) -> Migration:
        """Get a registered migration.

        Raises:
            MigrationError: If no migration has that id.
        """
        if migration_id not in self._migrations:
            raise MigrationError(f"Unknown migration {migration_id!r}")
        return self._migrations[migration_id]

    def __contains__(self, migration_id: str) -> bool:
        return migration_id in self._migrations

    def __len__(self) -> int:
        return len(self._migrations)

    # -- Validation ------------------------------------------------------------

    def validate(self) -> list[str]:
        """Validate the dependency DAG.

        Returns:
            List of error strings. Empty means valid.
        """
        errors: list[str] = []
        for migration in self._migrations.values():
            for dep in migration.depends_on:
                if dep not in self._migrations:
                    errors.append(
                        f"Migration {migration.id!r} depends on {dep!r}, which is not registered"
                    )
        if errors:
            return errors

        in_degree, adj = self._graph()
        queue = [mid for mid, deg in in_degree.items() if deg == 0]
        visited = 0
        while queue:
            mid = queue.pop()
            visited += 1
            for neighbor in adj[mid]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)
        if visited != len(self._migrations):
            cycle_members = [mid for mid, deg in in_degree.items() if deg > 0]
            errors.append(f"Dependency cycle detected among: {', '.join(sorted(cycle_members))}")
        return errors

    def _graph(self) -> tuple[dict[str, int], dict[str, list[str]]]:
        in_degree: dict[str, int] = dict.fromkeys(self._migrations, 0)
        adj: dict[str, list[str]] = defaultdict(list)
        for migration in self._migrations.values():
            for dep in migration.depends_on:
                adj[dep].append(migration.id)
                in_degree[migration.id] += 1
        return in_degree, adj

    def execution_order(self) -> list[str]:
        """Migration ids in stable topological order.

        Raises:
            MigrationError: If the DAG is invalid (see ``validate()``).
        """
        errors = self.validate()
        if errors:
            raise MigrationError("; ".join(errors))
        priority = {mid: i for i, mid in enumerate(self._migrations)}
        in_degree, adj = self._graph()

        heap: list[tuple[int, str]] = []
        for mid, deg in in_degree.items():
            if deg == 0:
                heapq.heappush(heap, (priority[mid], mid))

        result: list[str] = []
        while heap:
            _priority, mid = heapq.heappop(heap)
            result.append(mid)
            for neighbor in adj[mid]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    heapq.heappush(heap, (priority[neighbor], neighbor))
        return result

    # -- Applied state ---------------------------------------------------------

    def applied_migrations(self) -> dict[str, dict[str, Any]]:
        """Marker properties of every applied migration, by id."""
        tx = self._ctx.store.begin(write=False)
        try:
            markers = tx.find_nodes(MIGRATION_LABEL)
        finally:
            tx.rollback()
        return {str(m.props["migrationId"]): dict(m.props) for m in markers}

    def pending_migrations(self) -> list[str]:
        applied = self.applied_migrations()
        return [mid for mid in self.execution_order() if mid not in applied]

    # -- Apply / reverse -------------------------------------------------------

    def run_migrations(self) -> list[str]:
        """Apply every pending migration in dependency order.

        Returns:
            Ids of the migrations applied by this call.

        Raises:
            MigrationError: If the DAG is invalid or an applied migration's
                dependency has not been applied.
        """
        order = self.execution_order()
        applied = self.applied_migrations()
        for mid, marker in applied.items():
            if mid not in self._migrations:
                log.warning("unknown_migration_applied", migration=mid)
            for dep in marker.get("dependsOn") or []:
                if dep not in applied:
                    raise MigrationError(
                        f"Migration {mid!r} is applied but its dependency {dep!r} is not"
                    )

        ran: list[str] = []
        for mid in order:
            if mid in applied:
                continue
            migration = self._migrations[mid]
            with allow_writes_without_action(self._ctx):
                migration.forward(self._ctx)
                self._ctx.write(
                    lambda tx, m=migration: tx.create_node(
                        [MIGRATION_LABEL],
                        {
                            "migrationId": m.id,
                            "dependsOn": list(m.depends_on),
                            "appliedAt": datetime.now(UTC).isoformat(),
                        },
                    )
                )
            log.info("migration_applied", migration=mid)
            ran.append(mid)
        return ran

    def reverse_migration(self, migration_id: str) -> None:
        """Run one applied migration's backward procedure.

        Raises:
            MigrationError: If it is unknown, not applied, or another applied
                migration depends on it.
        """
        if migration_id not in self._migrations:
            raise MigrationError(f"Unknown migration {migration_id!r}")
        applied = self.applied_migrations()
        if migration_id not in applied:
            raise MigrationError(f"Migration {migration_id!r} has not been applied")
        dependents = sorted(
            mid
            for mid, marker in applied.items()
            if migration_id in (marker.get("dependsOn") or [])
        )
        if dependents:
            raise MigrationError(
                f"Cannot reverse {migration_id!r}: applied migrations depend on it "
                f"({', '.join(dependents)})"
            )

        migration = self._migrations[migration_id]
        with allow_writes_without_action(self._ctx):
            migration.backward(self._ctx)

            def drop_marker(tx: WriteTransaction) -> None:
                for marker in tx.find_nodes(MIGRATION_LABEL, {"migrationId": migration_id}):
                    tx.delete_node(marker.id)

            self._ctx.write(drop_marker)
        log.info("migration_reversed", migration=migration_id)

    def reverse_all_migrations(self) -> list[str]:
        """Reverse every applied migration in reverse execution order."""
        applied = self.applied_migrations()
        reversed_ids: list[str] = []
        for mid in reversed(self.execution_order()):
            if mid in applied:
                self.reverse_migration(mid)
                reversed_ids.append(mid)
        return reversed_ids


# ---------------------------------------------------------------------------
# Core migrations
# ---------------------------------------------------------------------------


def _root_forward(ctx: MigrationContext) -> None:
    ctx.write(lambda tx: tx.add_constraint("migration_id_uniq", MIGRATION_LABEL, "migrationId"))


def _root_backward(ctx: MigrationContext) -> None:
    ctx.write(lambda tx: tx.drop_constraint("migration_id_uniq"))


def _vnode_forward(ctx: MigrationContext) -> None:
    def add_constraints(tx: WriteTransaction) -> None:
        tx.add_constraint("vnode_slugid_uniq", VNODE_LABEL, "slugId")
        tx.add_constraint("slugid_slugid_uniq", SLUG_ID_LABEL, "slugId")

    ctx.write(add_constraints)


def _vnode_backward(ctx: MigrationContext) -> None:
    def drop_constraints(tx: WriteTransaction) -> None:
        tx.drop_constraint("slugid_slugid_uniq")
        tx.drop_constraint("vnode_slugid_uniq")

    ctx.write(drop_constraints)
    # Removing constraints first makes the bulk deletes cheaper.
    ctx.delete_in_batches(SLUG_ID_LABEL)
    ctx.delete_in_batches(VNODE_LABEL)
    ctx.delete_in_batches(DELETED_VNODE_LABEL)


def _slug_id_trigger_forward(ctx: MigrationContext) -> None:
    ctx.write(lambda tx: tx.install_trigger(SLUG_ID_TRIGGER))


def _slug_id_trigger_backward(ctx: MigrationContext) -> None:
    ctx.write(lambda tx: tx.remove_trigger(SLUG_ID_TRIGGER))


def _system_user_forward(ctx: MigrationContext) -> None:
    # Every User is created by an Action performed by a User, so the system
    # user is bootstrapped together with the Action that created it.
    def create_system_user(tx: WriteTransaction) -> None:
        tx.create_node(
            User.all_labels(),
            {"slugId": "user-system", "fullName": "System"},
            node_id=SYSTEM_VNID,
        )
        action_id = tx.create_node(
            Action.all_labels(),
            {
                "type": "CreateUser",
                "data": "{}",
                "timestamp": datetime.now(UTC).isoformat(),
                "tookMs": 0,
            },
            node_id=new_vnid(),
        )
        tx.create_relationship(SYSTEM_VNID, PERFORMED, action_id)

    ctx.write(create_system_user)


def _system_user_backward(ctx: MigrationContext) -> None:
    def delete_system_user(tx: WriteTransaction) -> None:
        if tx.get_node(SYSTEM_VNID) is not None:
            tx.delete_node(SYSTEM_VNID)

    ctx.write(delete_system_user)


def _track_action_changes_forward(ctx: MigrationContext) -> None:
    # Installed paused; it becomes active once this migration finishes.
    ctx.write(lambda tx: tx.install_trigger(TRACK_ACTION_CHANGES, paused=True))


def _track_action_changes_backward(ctx: MigrationContext) -> None:
    ctx.write(lambda tx: tx.remove_trigger(TRACK_ACTION_CHANGES))


def core_migrations() -> list[Migration]:
    """The migrations every graph needs, in registration order."""
    return [
        Migration("_root", (), _root_forward, _root_backward),
        Migration("vnode", ("_root",), _vnode_forward, _vnode_backward),
        Migration("slugIdTrigger", ("vnode",), _slug_id_trigger_forward, _slug_id_trigger_backward),
        Migration(
            "systemUser", ("vnode", "slugIdTrigger"), _system_user_forward, _system_user_backward
        ),
        Migration(
            "trackActionChanges",
            ("vnode",),
            _track_action_changes_forward,
            _track_action_changes_backward,
        ),
    ]
