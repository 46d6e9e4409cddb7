"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from actiongraph.graph import Graph, MemoryGraphStore, SqliteGraphStore
from tests.fixtures.movies import CreateUser, actions, schema

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from actiongraph.graph import GraphStore


@pytest.fixture(autouse=True)
def isolate_config_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep ACTIONGRAPH_* variables from the developer's shell out of tests."""
    for name in (
        "ACTIONGRAPH_STORE",
        "ACTIONGRAPH_DB_PATH",
        "ACTIONGRAPH_BATCH_SIZE",
        "ACTIONGRAPH_CONFIG",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[GraphStore]:
    """Each backend in turn, empty."""
    backend: GraphStore
    if request.param == "sqlite":
        backend = SqliteGraphStore(tmp_path / "graph.db")
    else:
        backend = MemoryGraphStore()
    yield backend
    backend.close()


@pytest.fixture
def graph(store: GraphStore) -> Graph:
    """A migrated graph with the movie schema and actions."""
    g = Graph(store, schema, actions)
    g.run_migrations()
    return g


@pytest.fixture
def user_id(graph: Graph) -> str:
    """VNID of a regular user created by the system user."""
    result = graph.run_as_system(CreateUser(slugId="user-alex", fullName="Alex"))
    return str(result.result_data["id"])
