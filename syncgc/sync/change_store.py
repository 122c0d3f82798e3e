"""SQLite-backed change log and sync-node registry.

The replication layer appends a change row for every mutation and keeps one
sync-node row per peer recording the lowest revision that peer has not yet
consumed. Maintenance work (see ``reclaimer``) reads and trims these tables
through an independent ``StoreScope`` so it never rides on a caller's
transaction.
"""

import json
import logging
import shutil
import sqlite3
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

logger = logging.getLogger(__name__)

# Schema for the change log and sync-node registry
SYNC_SCHEMA = """
-- Change log: one row per mutation, rev assigned in commit order
CREATE TABLE IF NOT EXISTS _changes (
    rev INTEGER PRIMARY KEY AUTOINCREMENT,
    source TEXT,
    table_name TEXT NOT NULL,
    obj_key TEXT NOT NULL,
    change_type INTEGER NOT NULL,
    payload TEXT,
    created_at TEXT NOT NULL
);

-- Sync nodes: per-peer replication state
CREATE TABLE IF NOT EXISTS _sync_nodes (
    id TEXT PRIMARY KEY,
    my_revision TEXT NOT NULL,
    node_type TEXT NOT NULL DEFAULT 'remote',
    url TEXT,
    last_heartbeat TEXT
);

CREATE INDEX IF NOT EXISTS idx_changes_table_key ON _changes(table_name, obj_key);
CREATE INDEX IF NOT EXISTS idx_sync_nodes_revision ON _sync_nodes(my_revision);
"""


class StoreClosedError(RuntimeError):
    """Raised when a closed ChangeStore is used."""


class ChangeType(Enum):
    """Kind of mutation recorded by a change."""

    CREATE = 1
    UPDATE = 2
    DELETE = 3


@dataclass
class Change:
    """A single mutation event in the change log."""

    rev: int
    table_name: str
    obj_key: str
    change_type: ChangeType
    payload: dict[str, Any] | None
    created_at: datetime
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "rev": self.rev,
            "source": self.source,
            "table_name": self.table_name,
            "obj_key": self.obj_key,
            "change_type": self.change_type.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class SyncNode:
    """Replication state of one peer."""

    id: str
    my_revision: int | float | str  # lowest revision not yet consumed
    node_type: str = "remote"  # "local" or "remote"
    url: str | None = None
    last_heartbeat: datetime | None = None


def _row_to_change(row: sqlite3.Row) -> Change:
    return Change(
        rev=row["rev"],
        source=row["source"],
        table_name=row["table_name"],
        obj_key=row["obj_key"],
        change_type=ChangeType(row["change_type"]),
        payload=json.loads(row["payload"]) if row["payload"] else None,
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_sync_node(row: sqlite3.Row) -> SyncNode:
    return SyncNode(
        id=row["id"],
        my_revision=row["my_revision"],
        node_type=row["node_type"],
        url=row["url"],
        last_heartbeat=(
            datetime.fromisoformat(row["last_heartbeat"])
            if row["last_heartbeat"]
            else None
        ),
    )


class StoreScope:
    """Unit of work bound to a private connection.

    Obtained from ``ChangeStore.independent_scope()``. Everything done through
    a scope commits or rolls back together when the scope exits.
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def list_sync_nodes(self) -> list[SyncNode]:
        """Load every sync node."""
        cursor = self._conn.execute(
            "SELECT id, my_revision, node_type, url, last_heartbeat FROM _sync_nodes"
        )
        return [_row_to_sync_node(row) for row in cursor]

    def query_change_keys_below(
        self, revision: int | float, limit: int
    ) -> list[int]:
        """Get primary keys of changes with rev strictly below a revision.

        Args:
            revision: Exclusive upper bound on rev.
            limit: Maximum keys to return.

        Returns:
            Keys in ascending rev order.
        """
        cursor = self._conn.execute(
            "SELECT rev FROM _changes WHERE rev < ? ORDER BY rev ASC LIMIT ?",
            (revision, limit),
        )
        return [row[0] for row in cursor]

    def bulk_delete(self, keys: list[int]) -> int:
        """Delete changes by primary key.

        Keys that no longer exist are ignored.

        Returns:
            Number of rows actually deleted.
        """
        if not keys:
            return 0

        placeholders = ",".join("?" * len(keys))
        cursor = self._conn.execute(
            f"DELETE FROM _changes WHERE rev IN ({placeholders})",
            tuple(keys),
        )
        return cursor.rowcount


class ChangeStore:
    """Change log and sync-node tables in one SQLite database."""

    def __init__(self, db_path: str | Path, busy_timeout: float = 5.0):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            busy_timeout: Seconds a connection waits on a locked database.
        """
        self._memory = str(db_path) == ":memory:"
        # ":memory:" is backed by a throwaway file so scope connections share
        # the same WAL locking as file stores
        self.db_path = None if self._memory else Path(db_path).expanduser()
        self.busy_timeout = busy_timeout
        self._path: Path | None = self.db_path
        self._temp_dir: str | None = None
        self._conn: sqlite3.Connection | None = None

    def _open_connection(self) -> sqlite3.Connection:
        """Open a new connection in autocommit mode."""
        conn = sqlite3.connect(
            str(self._path), timeout=self.busy_timeout, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        return conn

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if self._memory:
            self._temp_dir = tempfile.mkdtemp(prefix="syncgc-")
            self._path = Path(self._temp_dir) / "changes.db"
        else:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = self._open_connection()
        # Lets a reclamation pass commit while readers hold snapshots, and
        # makes writers wait out busy_timeout instead of failing
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SYNC_SCHEMA)

        logger.info(f"ChangeStore connected to {self.db_path or ':memory:'}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            if self._temp_dir:
                shutil.rmtree(self._temp_dir, ignore_errors=True)
                self._temp_dir = None
            logger.debug("ChangeStore closed")

    def is_open(self) -> bool:
        """Whether the store is connected."""
        return self._conn is not None

    def _ensure_open(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreClosedError("ChangeStore is closed")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements in a transaction on the store's own connection.

        This is the caller-side transaction. Work done through
        ``independent_scope()`` never joins it.
        """
        conn = self._ensure_open()
        if conn.in_transaction:
            yield conn
            return

        conn.execute("BEGIN")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    @contextmanager
    def independent_scope(self) -> Iterator[StoreScope]:
        """Open a unit of work on a private connection.

        The connection is created for this scope and closed when it exits,
        so nothing is held once the block is done.

        Raises:
            StoreClosedError: If the store is closed.
        """
        self._ensure_open()
        conn = self._open_connection()
        try:
            # Take the write lock up front so read-then-delete cannot be
            # invalidated by a concurrent writer
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield StoreScope(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def append_change(
        self,
        table_name: str,
        obj_key: str,
        change_type: ChangeType,
        payload: dict[str, Any] | None = None,
        source: str | None = None,
    ) -> Change:
        """Append a change to the log.

        Args:
            table_name: Table the mutated object belongs to.
            obj_key: Primary key of the mutated object.
            change_type: Kind of mutation.
            payload: Object data or modifications, if any.
            source: Node that originated the change.

        Returns:
            The stored Change with its assigned rev.
        """
        conn = self._ensure_open()
        created_at = datetime.now()

        cursor = conn.execute(
            """
            INSERT INTO _changes (
                source, table_name, obj_key, change_type, payload, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                source,
                table_name,
                obj_key,
                change_type.value,
                json.dumps(payload) if payload is not None else None,
                created_at.isoformat(),
            ),
        )

        change = Change(
            rev=cursor.lastrowid,
            source=source,
            table_name=table_name,
            obj_key=obj_key,
            change_type=change_type,
            payload=payload,
            created_at=created_at,
        )
        logger.debug(f"Appended change rev={change.rev} on {table_name}:{obj_key}")
        return change

    def upsert_sync_node(
        self,
        node_id: str,
        my_revision: int | float | str,
        node_type: str = "remote",
        url: str | None = None,
    ) -> SyncNode:
        """Create or update a sync node and refresh its heartbeat."""
        conn = self._ensure_open()
        heartbeat = datetime.now()

        conn.execute(
            """
            INSERT INTO _sync_nodes (id, my_revision, node_type, url, last_heartbeat)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                my_revision = excluded.my_revision,
                node_type = excluded.node_type,
                url = excluded.url,
                last_heartbeat = excluded.last_heartbeat
            """,
            (node_id, str(my_revision), node_type, url, heartbeat.isoformat()),
        )

        return SyncNode(
            id=node_id,
            my_revision=my_revision,
            node_type=node_type,
            url=url,
            last_heartbeat=heartbeat,
        )

    def remove_sync_node(self, node_id: str) -> bool:
        """Remove a sync node.

        Returns:
            True if a node was removed.
        """
        conn = self._ensure_open()
        cursor = conn.execute("DELETE FROM _sync_nodes WHERE id = ?", (node_id,))
        return cursor.rowcount > 0

    def list_sync_nodes(self) -> list[SyncNode]:
        """Get all sync nodes."""
        return StoreScope(self._ensure_open()).list_sync_nodes()

    def list_changes(self, limit: int = 1000) -> list[Change]:
        """Get changes, oldest first."""
        conn = self._ensure_open()

        cursor = conn.execute(
            """
            SELECT rev, source, table_name, obj_key, change_type, payload, created_at
            FROM _changes
            ORDER BY rev ASC
            LIMIT ?
            """,
            (limit,),
        )
        return [_row_to_change(row) for row in cursor]

    def count_changes(self) -> int:
        conn = self._ensure_open()
        return conn.execute("SELECT COUNT(*) FROM _changes").fetchone()[0]

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Dictionary with change and node counts and rev range.
        """
        conn = self._ensure_open()

        row = conn.execute(
            "SELECT COUNT(*), MIN(rev), MAX(rev) FROM _changes"
        ).fetchone()
        stats: dict[str, Any] = {
            "total_changes": row[0],
            "min_rev": row[1],
            "max_rev": row[2],
        }

        cursor = conn.execute(
            "SELECT node_type, COUNT(*) FROM _sync_nodes GROUP BY node_type"
        )
        stats["nodes_by_type"] = {r[0]: r[1] for r in cursor}
        stats["total_nodes"] = sum(stats["nodes_by_type"].values())

        if self.db_path is not None and self.db_path.exists():
            stats["db_size_mb"] = round(
                self.db_path.stat().st_size / (1024 * 1024), 2
            )

        return stats
