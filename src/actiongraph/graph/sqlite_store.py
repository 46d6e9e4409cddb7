"""SQLite-backed graph storage.

SqliteGraphStore implements the GraphStore protocol using stdlib sqlite3.
Each transaction gets its own connection: write transactions start with
``BEGIN IMMEDIATE`` so writers are serialised by SQLite itself, and file
databases use WAL so readers keep a consistent snapshot while a writer is
active. ``":memory:"`` stores are backed by a temporary WAL database file,
removed again by ``close()``, so they isolate readers the same way.

sqlite3 errors are not translated; they propagate to the caller and the
transaction is rolled back.
"""

from __future__ import annotations

import json
import os
import sqlite3
import tempfile
from pathlib import Path
from typing import Any

from actiongraph.graph.store import NodeRecord, RelRecord

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS nodes (
    node_id TEXT PRIMARY KEY,
    labels  JSON NOT NULL,
    props   JSON NOT NULL
);

CREATE TABLE IF NOT EXISTS relationships (
    rel_id   INTEGER PRIMARY KEY AUTOINCREMENT,
    rel_type TEXT NOT NULL,
    from_id  TEXT NOT NULL,
    to_id    TEXT NOT NULL,
    props    JSON NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rels_type ON relationships(rel_type);
CREATE INDEX IF NOT EXISTS idx_rels_from ON relationships(from_id);
CREATE INDEX IF NOT EXISTS idx_rels_to   ON relationships(to_id);

CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value JSON NOT NULL
);
"""


def _row_to_node(row: sqlite3.Row) -> NodeRecord:
    return NodeRecord(
        id=row["node_id"],
        labels=frozenset(json.loads(row["labels"])),
        props=json.loads(row["props"]),
    )


def _row_to_rel(row: sqlite3.Row) -> RelRecord:
    return RelRecord(
        id=row["rel_id"],
        type=row["rel_type"],
        from_id=row["from_id"],
        to_id=row["to_id"],
        props=json.loads(row["props"]),
    )


class SqliteTransaction:
    """A single transaction on its own SQLite connection."""

    def __init__(self, conn: sqlite3.Connection, *, writable: bool) -> None:
        self._conn = conn
        self.writable = writable
        self._closed = False
        self._conn.execute("BEGIN IMMEDIATE" if writable else "BEGIN")

    def _check_writable(self) -> None:
        if not self.writable:
            raise RuntimeError("Cannot write in a read-only transaction")

    # -- Nodes -----------------------------------------------------------------

    def get_node(self, node_id: str) -> NodeRecord | None:
        row = self._conn.execute(
            "SELECT node_id, labels, props FROM nodes WHERE node_id = ?", (node_id,)
        ).fetchone()
        return _row_to_node(row) if row is not None else None

    def find_nodes(
        self, label: str | None = None, props: dict[str, Any] | None = None
    ) -> list[NodeRecord]:
        if label is None:
            rows = self._conn.execute("SELECT node_id, labels, props FROM nodes").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT node_id, labels, props FROM nodes "
                "WHERE EXISTS (SELECT 1 FROM json_each(nodes.labels) WHERE value = ?)",
                (label,),
            ).fetchall()
        nodes = [_row_to_node(row) for row in rows]
        if props:
            nodes = [
                n for n in nodes if all(k in n.props and n.props[k] == v for k, v in props.items())
            ]
        return nodes

    def create_node(self, node_id: str, labels: set[str], props: dict[str, Any]) -> None:
        self._check_writable()
        self._conn.execute(
            "INSERT INTO nodes (node_id, labels, props) VALUES (?, ?, ?)",
            (node_id, json.dumps(sorted(labels)), json.dumps(props)),
        )

    def update_node(
        self,
        node_id: str,
        *,
        labels: set[str] | None = None,
        props: dict[str, Any] | None = None,
    ) -> None:
        self._check_writable()
        if labels is not None:
            self._conn.execute(
                "UPDATE nodes SET labels = ? WHERE node_id = ?",
                (json.dumps(sorted(labels)), node_id),
            )
        if props is not None:
            self._conn.execute(
                "UPDATE nodes SET props = ? WHERE node_id = ?", (json.dumps(props), node_id)
            )

    def delete_node(self, node_id: str) -> None:
        self._check_writable()
        self._conn.execute("DELETE FROM nodes WHERE node_id = ?", (node_id,))

    # -- Relationships ---------------------------------------------------------

    def get_relationship(self, rel_id: int) -> RelRecord | None:
        row = self._conn.execute(
            "SELECT rel_id, rel_type, from_id, to_id, props FROM relationships WHERE rel_id = ?",
            (rel_id,),
        ).fetchone()
        return _row_to_rel(row) if row is not None else None

    def find_relationships(
        self,
        from_id: str | None = None,
        to_id: str | None = None,
        rel_type: str | None = None,
    ) -> list[RelRecord]:
        clauses: list[str] = []
        params: list[str] = []
        if from_id is not None:
            clauses.append("from_id = ?")
            params.append(from_id)
        if to_id is not None:
            clauses.append("to_id = ?")
            params.append(to_id)
        if rel_type is not None:
            clauses.append("rel_type = ?")
            params.append(rel_type)

        # WHERE clause is built from hardcoded column names; values are parameterized.
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        rows = self._conn.execute(
            f"SELECT rel_id, rel_type, from_id, to_id, props FROM relationships{where} "
            "ORDER BY rel_id",
            params,
        ).fetchall()
        return [_row_to_rel(row) for row in rows]

    def create_relationship(
        self, rel_type: str, from_id: str, to_id: str, props: dict[str, Any]
    ) -> int:
        self._check_writable()
        cursor = self._conn.execute(
            "INSERT INTO relationships (rel_type, from_id, to_id, props) VALUES (?, ?, ?, ?)",
            (rel_type, from_id, to_id, json.dumps(props)),
        )
        rel_id = cursor.lastrowid
        if rel_id is None:
            raise RuntimeError("SQLite did not return a relationship id")
        return rel_id

    def update_relationship(self, rel_id: int, props: dict[str, Any]) -> None:
        self._check_writable()
        self._conn.execute(
            "UPDATE relationships SET props = ? WHERE rel_id = ?", (json.dumps(props), rel_id)
        )

    def delete_relationship(self, rel_id: int) -> None:
        self._check_writable()
        self._conn.execute("DELETE FROM relationships WHERE rel_id = ?", (rel_id,))

    # -- Meta ------------------------------------------------------------------

    def get_meta(self, key: str) -> Any:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return json.loads(row["value"])

    def set_meta(self, key: str, value: Any) -> None:
        self._check_writable()
        if value is None:
            self._conn.execute("DELETE FROM meta WHERE key = ?", (key,))
        else:
            self._conn.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, json.dumps(value))
            )

    # -- Lifecycle -------------------------------------------------------------

    def commit(self) -> None:
        if self._closed:
            raise RuntimeError("Transaction is already closed")
        self._closed = True
        try:
            self._conn.execute("COMMIT")
        finally:
            self._conn.close()

    def rollback(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._conn.execute("ROLLBACK")
        finally:
            self._conn.close()


class SqliteGraphStore:
    """SQLite-backed graph store."""

    def __init__(self, db_path: str | Path = ":memory:", *, timeout: float = 5.0) -> None:
        """Open or create a SQLite graph database.

        Args:
            db_path: Path to ``.db`` file, or ``":memory:"`` for a throwaway
                temporary database deleted by ``close()``.
            timeout: Seconds a connection waits for a lock before failing.
        """
        self._timeout = timeout
        self._temp_path: Path | None = None
        if str(db_path) == ":memory:":
            fd, name = tempfile.mkstemp(prefix="actiongraph-", suffix=".db")
            os.close(fd)
            self._temp_path = path = Path(name)
        else:
            path = Path(db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
        self.path = path.resolve()
        self._uri = self.path.as_uri()

        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._uri,
            uri=True,
            timeout=self._timeout,
            isolation_level=None,  # autocommit; transactions are explicit
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def begin(self, *, write: bool) -> SqliteTransaction:
        conn = self._connect()
        try:
            return SqliteTransaction(conn, writable=write)
        except Exception:
            conn.close()
            raise

    def close(self) -> None:
        """Delete the backing file of a ``":memory:"`` store."""
        if self._temp_path is not None:
            for suffix in ("", "-wal", "-shm"):
                Path(f"{self._temp_path}{suffix}").unlink(missing_ok=True)
            self._temp_path = None

    # -- Serialization ---------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Reconstruct the full graph dict from SQLite tables."""
        tx = self.begin(write=False)
        try:
            conn = tx._conn
            nodes = [
                {"id": n.id, "labels": sorted(n.labels), "props": n.props}
                for n in map(
                    _row_to_node,
                    conn.execute("SELECT node_id, labels, props FROM nodes").fetchall(),
                )
            ]
            rels = [
                {"id": r.id, "type": r.type, "from": r.from_id, "to": r.to_id, "props": r.props}
                for r in tx.find_relationships()
            ]
            meta = {
                row["key"]: json.loads(row["value"])
                for row in conn.execute("SELECT key, value FROM meta").fetchall()
            }
        finally:
            tx.rollback()
        return {"nodes": nodes, "relationships": rels, "meta": meta}

    def load_dict(self, data: dict[str, Any]) -> None:
        """Replace the entire contents with a ``to_dict()`` export."""
        tx = self.begin(write=True)
        try:
            conn = tx._conn
            conn.execute("DELETE FROM nodes")
            conn.execute("DELETE FROM relationships")
            conn.execute("DELETE FROM meta")
            conn.executemany(
                "INSERT INTO nodes (node_id, labels, props) VALUES (?, ?, ?)",
                [
                    (n["id"], json.dumps(sorted(n["labels"])), json.dumps(n.get("props", {})))
                    for n in data.get("nodes", [])
                ],
            )
            conn.executemany(
                "INSERT INTO relationships (rel_id, rel_type, from_id, to_id, props) "
                "VALUES (?, ?, ?, ?, ?)",
                [
                    (r["id"], r["type"], r["from"], r["to"], json.dumps(r.get("props", {})))
                    for r in data.get("relationships", [])
                ],
            )
            conn.executemany(
                "INSERT INTO meta (key, value) VALUES (?, ?)",
                [(k, json.dumps(v)) for k, v in data.get("meta", {}).items()],
            )
        except Exception:
            tx.rollback()
            raise
        tx.commit()

    @classmethod
    def from_dict(cls, data: dict[str, Any], db_path: str | Path = ":memory:") -> SqliteGraphStore:
        """Bulk-import a graph dict into a new SqliteGraphStore."""
        store = cls(db_path)
        store.load_dict(data)
        return store
