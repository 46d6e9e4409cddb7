"""Graph configuration loading.

Configuration is read from ``actiongraph.yaml``::

    store: sqlite           # "sqlite" (default) or "memory"
    db_path: data/graph.db  # relative to the config file
    batch_size: 1000        # nodes per transaction for batched teardown
    log_dir: logs           # enables JSONL debug logging
    schema: myapp.schema:registry  # SchemaRegistry (or factory) with the app types

Resolution order for each value:
1. Environment variable (ACTIONGRAPH_STORE, ACTIONGRAPH_DB_PATH, ACTIONGRAPH_BATCH_SIZE)
2. Config file
3. Default
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ruamel.yaml import YAML

from actiongraph.graph.migrations import DEFAULT_BATCH_SIZE

if TYPE_CHECKING:
    from actiongraph.graph.store import GraphStore

CONFIG_FILENAME = "actiongraph.yaml"
STORE_KINDS = ("memory", "sqlite")
DEFAULT_DB_PATH = "actiongraph.db"


class ConfigError(Exception):
    """Raised when graph configuration cannot be loaded."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load config at {path}: {reason}")


@dataclass
class GraphConfig:
    """Where the graph lives and how it is maintained.

    Attributes:
        store: Backend kind, ``"sqlite"`` or ``"memory"``. The memory backend
            lives only as long as the process, so the CLI refuses it.
        db_path: SQLite database file (ignored for the memory backend).
        batch_size: Nodes deleted per transaction when migrations tear down data.
        log_dir: Directory for JSONL debug logs, or None to disable.
        schema: ``module:attribute`` of a SchemaRegistry, or of a function
            returning one, holding the application entity types.
    """

    store: str = "sqlite"
    db_path: Path = Path(DEFAULT_DB_PATH)
    batch_size: int = DEFAULT_BATCH_SIZE
    log_dir: Path | None = None
    schema: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> GraphConfig:
        """Create config from dictionary.

        Args:
            data: Parsed YAML mapping.
            base_dir: Directory relative paths are resolved against.

        Raises:
            ValueError: If a value is of the wrong kind.
        """
        base = base_dir or Path.cwd()

        def resolve(value: Any) -> Path:
            path = Path(str(value))
            return path if path.is_absolute() else base / path

        store = str(data.get("store", "sqlite"))
        if store not in STORE_KINDS:
            raise ValueError(f"store must be one of {', '.join(STORE_KINDS)}, got {store!r}")
        batch_size = int(data.get("batch_size", DEFAULT_BATCH_SIZE))
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        log_dir = data.get("log_dir")
        return cls(
            store=store,
            db_path=resolve(data.get("db_path", DEFAULT_DB_PATH)),
            batch_size=batch_size,
            log_dir=resolve(log_dir) if log_dir else None,
            schema=str(data["schema"]) if data.get("schema") else None,
        )

    def with_env_overrides(self) -> GraphConfig:
        """Apply ACTIONGRAPH_* environment variables on top of this config."""
        store = os.getenv("ACTIONGRAPH_STORE") or self.store
        if store not in STORE_KINDS:
            raise ValueError(f"ACTIONGRAPH_STORE must be one of {', '.join(STORE_KINDS)}")
        db_path = os.getenv("ACTIONGRAPH_DB_PATH")
        batch_size = os.getenv("ACTIONGRAPH_BATCH_SIZE")
        return GraphConfig(
            store=store,
            db_path=Path(db_path) if db_path else self.db_path,
            batch_size=int(batch_size) if batch_size else self.batch_size,
            log_dir=self.log_dir,
            schema=self.schema,
        )


def load_config(path: Path | None = None) -> GraphConfig:
    """Load graph configuration.

    Args:
        path: Config file, or a directory containing ``actiongraph.yaml``.
            If None, ``./actiongraph.yaml`` is used when it exists and the
            defaults otherwise.

    Returns:
        GraphConfig with environment overrides applied.

    Raises:
        ConfigError: If an explicitly given config cannot be loaded.
    """
    if path is None:
        path = Path.cwd() / CONFIG_FILENAME
        if not path.exists():
            try:
                return GraphConfig().with_env_overrides()
            except ValueError as e:
                raise ConfigError(path, str(e)) from e
    elif path.is_dir():
        path = path / CONFIG_FILENAME

    if not path.exists():
        raise ConfigError(path, "File not found")

    yaml = YAML(typ="safe")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.load(f)

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(path, "Expected a mapping at the top level")

        return GraphConfig.from_dict(dict(data), base_dir=path.parent).with_env_overrides()
    except Exception as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(path, str(e)) from e


def open_store(config: GraphConfig) -> GraphStore:
    """Build the backing store described by *config*."""
    if config.store == "sqlite":
        from actiongraph.graph.sqlite_store import SqliteGraphStore

        return SqliteGraphStore(config.db_path)

    from actiongraph.graph.store import MemoryGraphStore

    return MemoryGraphStore()
