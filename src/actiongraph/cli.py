"""actiongraph CLI - typer application entry point."""

from __future__ import annotations

import atexit
import importlib
import json
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from actiongraph.config import ConfigError, load_config, open_store
from actiongraph.graph import (
    SYSTEM_VNID,
    Graph,
    GraphError,
    SchemaRegistry,
    action_summary,
    list_actions,
)
from actiongraph.observability import close_file_logging, configure_logging, get_logger

if TYPE_CHECKING:
    from actiongraph.config import GraphConfig

# Load environment variables from .env file
load_dotenv()

app = typer.Typer(
    name="actiongraph",
    help="actiongraph: audited, undoable writes for a graph datastore.",
    no_args_is_help=True,
)
console = Console()
log = get_logger(__name__)

# Global options set by the callback
_verbose: int = 0
_log_enabled: bool = False
_config_path: Path | None = None


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log_: Annotated[
        bool,
        typer.Option(
            "--log",
            help="Enable JSONL file logging to the configured log_dir (default: ./logs).",
        ),
    ] = False,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Config file or directory containing actiongraph.yaml.",
            envvar="ACTIONGRAPH_CONFIG",
        ),
    ] = None,
) -> None:
    """actiongraph: audited, undoable writes for a graph datastore."""
    global _verbose, _log_enabled, _config_path
    _verbose = verbose
    _log_enabled = log_
    _config_path = config

    configure_logging(verbosity=verbose)


def _load_config() -> GraphConfig:
    try:
        config = load_config(_config_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if _log_enabled:
        log_dir = config.log_dir or Path("logs")
        configure_logging(verbosity=_verbose, log_to_file=True, log_dir=log_dir)
        atexit.register(close_file_logging)
    return config


def _load_schema(target: str | None) -> SchemaRegistry | None:
    """Import the application schema named ``module:attribute``.

    The attribute may be a SchemaRegistry or a function returning one.
    """
    if target is None:
        return None
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        console.print(f"[red]Error:[/red] schema must be 'module:attribute', got {target!r}")
        raise typer.Exit(1)
    try:
        obj = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        console.print(f"[red]Error:[/red] Cannot import schema {target!r}: {e}")
        raise typer.Exit(1) from e

    schema = obj() if callable(obj) and not isinstance(obj, SchemaRegistry) else obj
    if not isinstance(schema, SchemaRegistry):
        console.print(f"[red]Error:[/red] {target!r} is not a SchemaRegistry")
        raise typer.Exit(1)
    return schema


def _get_graph() -> Graph:
    """Open the graph described by the active config."""
    config = _load_config()
    if config.store == "memory":
        console.print(
            "[red]Error:[/red] store 'memory' is discarded when the command exits; "
            "use store: sqlite"
        )
        raise typer.Exit(1)
    schema = _load_schema(config.schema)
    log.debug("graph_opening", store=config.store, db_path=str(config.db_path))
    return Graph(open_store(config), schema, batch_size=config.batch_size)


def _fail(e: Exception) -> typer.Exit:
    console.print(f"[red]Error:[/red] {e}")
    return typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from actiongraph import __version__

    console.print(f"actiongraph v{__version__}")


@app.command()
def migrate() -> None:
    """Apply every pending migration."""
    graph = _get_graph()
    try:
        applied = graph.run_migrations()
    except GraphError as e:
        raise _fail(e) from e
    finally:
        graph.close()

    if not applied:
        console.print("[dim]Nothing to migrate.[/dim]")
        return
    for migration_id in applied:
        console.print(f"[green]✓[/green] {migration_id}")
    console.print(f"Applied {len(applied)} migration(s).")


@app.command()
def unmigrate(
    migration_id: Annotated[
        str | None,
        typer.Argument(help="Migration to reverse."),
    ] = None,
    all_: Annotated[
        bool,
        typer.Option("--all", help="Reverse every applied migration."),
    ] = False,
) -> None:
    """Reverse one migration, or all of them with --all."""
    if (migration_id is None) == (not all_):
        console.print("[red]Error:[/red] Give exactly one of MIGRATION_ID or --all.")
        raise typer.Exit(1)

    graph = _get_graph()
    try:
        if migration_id is not None:
            graph.reverse_migration(migration_id)
            reversed_ids = [migration_id]
        else:
            reversed_ids = graph.reverse_all_migrations()
    except GraphError as e:
        raise _fail(e) from e
    finally:
        graph.close()

    for reversed_id in reversed_ids:
        console.print(f"[yellow]↺[/yellow] {reversed_id}")
    console.print(f"Reversed {len(reversed_ids)} migration(s).")


@app.command()
def migrations() -> None:
    """Show known migrations and whether they are applied."""
    graph = _get_graph()
    try:
        order = graph.migrations.execution_order()
        applied = graph.migrations.applied_migrations()
    except GraphError as e:
        raise _fail(e) from e
    finally:
        graph.close()

    table = Table(title="Migrations")
    table.add_column("Migration", style="cyan")
    table.add_column("Depends On", style="dim")
    table.add_column("Status", style="bold")

    for migration_id in order:
        depends_on = graph.migrations.get(migration_id).depends_on
        status_display = (
            "[green]✓[/green] applied" if migration_id in applied else "[dim]○[/dim] pending"
        )
        table.add_row(migration_id, ", ".join(depends_on) or "-", status_display)

    console.print()
    console.print(table)
    console.print()


@app.command()
def history(
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of Actions to show."),
    ] = 20,
    action_type: Annotated[
        str | None,
        typer.Option("--type", "-t", help="Only show Actions of this type."),
    ] = None,
    actor: Annotated[
        str | None,
        typer.Option("--actor", help="Only show Actions performed by this User VNID."),
    ] = None,
) -> None:
    """Show recent Actions, most recent first."""
    graph = _get_graph()
    try:
        records = list_actions(graph, limit=limit, action_type=action_type, actor_id=actor)
        summary = action_summary(graph)
    finally:
        graph.close()

    table = Table(title=f"Actions ({len(records)} of {summary['total']})")
    table.add_column("Id", style="cyan")
    table.add_column("Type", style="bold")
    table.add_column("Timestamp", style="dim")
    table.add_column("By")
    table.add_column("Modified", justify="right")
    table.add_column("Reverted By", style="yellow")

    for record in records:
        table.add_row(
            record.id,
            record.type,
            record.timestamp,
            record.performed_by or "-",
            str(len(record.modified_nodes)),
            record.reverted_by or "-",
        )

    console.print()
    console.print(table)
    console.print()


@app.command()
def show(
    action_id: Annotated[str, typer.Argument(help="Action to show.")],
) -> None:
    """Show one Action and the changes it made."""
    graph = _get_graph()
    try:
        record = graph.get_action(action_id)
        changes = graph.get_action_changes(action_id)
    except GraphError as e:
        raise _fail(e) from e
    finally:
        graph.close()

    console.print(f"[bold]{record.type}[/bold] [cyan]{record.id}[/cyan]")
    console.print(f"  Timestamp: {record.timestamp}")
    console.print(f"  Performed by: {record.performed_by or '-'}")
    if record.took_ms is not None:
        console.print(f"  Took: {record.took_ms} ms")
    if record.reverted_by:
        console.print(f"  [yellow]Reverted by {record.reverted_by}[/yellow]")
    console.print(f"  Data: {escape(json.dumps(record.data, sort_keys=True))}")
    console.print()

    for node in changes.created_nodes:
        labels = ", ".join(node.labels)
        console.print(f"[green]+[/green] {node.id} ({labels}) {escape(repr(node.properties))}")
    for modified in changes.modified_nodes:
        for name, change in modified.properties.items():
            diff = escape(f"{change.old!r} → {change.new!r}")
            console.print(f"[yellow]~[/yellow] {modified.id}.{name}: {diff}")
    for node_id in changes.soft_deleted_nodes:
        console.print(f"[red]-[/red] {node_id} (deleted)")
    for node_id in changes.un_deleted_nodes:
        console.print(f"[green]+[/green] {node_id} (restored)")
    for rel in changes.created_relationships:
        console.print("[green]+[/green] " + escape(f"({rel.from_id})-[{rel.type}]->({rel.to_id})"))
    for rel in changes.deleted_relationships:
        console.print("[red]-[/red] " + escape(f"({rel.from_id})-[{rel.type}]->({rel.to_id})"))
    if changes.deleted_nodes_count:
        console.print(f"[dim]{changes.deleted_nodes_count} node(s) permanently deleted[/dim]")


@app.command()
def undo(
    action_id: Annotated[str, typer.Argument(help="Action to reverse.")],
    actor: Annotated[
        str,
        typer.Option("--actor", help="VNID of the User performing the undo."),
    ] = SYSTEM_VNID,
) -> None:
    """Reverse a past Action by recording an UndoAction."""
    graph = _get_graph()
    try:
        result = graph.undo(action_id, actor_id=actor)
    except GraphError as e:
        raise _fail(e) from e
    finally:
        graph.close()

    console.print(f"[green]✓[/green] Undid {action_id} with {result.action_id}")
