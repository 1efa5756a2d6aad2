"""
Persistence for Agentic Workspace.

Provides a SQLite-backed record store. Every row is keyed by
``(workspace_id, tier, id)``; there are no keys that span workspaces.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Union

logger = logging.getLogger("agentic_workspace.storage")


# Tiers used by the components
TIER_WORKSPACE = "workspace"
TIER_EPISODIC = "episodic"
TIER_SEMANTIC = "semantic"
TIER_PROCEDURAL = "procedural"
TIER_PINNED = "pinned"
TIER_OVERRIDE = "override"
TIER_META = "meta"


class RecordEncoder(json.JSONEncoder):
    """JSON encoder that handles sets and objects with ``to_dict``."""

    def default(self, obj):
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        if hasattr(obj, "value"):
            return obj.value
        return super().default(obj)


def safe_json_dumps(obj: Any) -> str:
    """Serialize a record to JSON."""
    return json.dumps(obj, cls=RecordEncoder)


class RecordStore:
    """SQLite storage for workspace-scoped records.

    A single connection is shared behind a lock so that ``":memory:"``
    databases work across threads (promotion runs on a worker pool).
    """

    def __init__(self, db_path: Union[str, Path, None] = None):
        """Initialize the record store.

        Args:
            db_path: Path to the SQLite database, or ":memory:" (default)
        """
        self.db_path = str(db_path) if db_path is not None else ":memory:"
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    workspace_id TEXT NOT NULL,
                    tier TEXT NOT NULL,
                    id TEXT NOT NULL,
                    seq INTEGER NOT NULL DEFAULT 0,
                    data TEXT NOT NULL,
                    PRIMARY KEY (workspace_id, tier, id)
                )
            """)
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_records_seq ON records(workspace_id, tier, seq)"
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run several writes atomically.

        Commits on success and rolls back if the block raises.
        """
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def put(
        self,
        workspace_id: str,
        tier: str,
        record_id: str,
        data: dict[str, Any],
        seq: int = 0,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Insert or replace one record.

        When ``conn`` is given the write joins an open ``transaction()``.
        """
        sql = (
            "INSERT OR REPLACE INTO records (workspace_id, tier, id, seq, data) "
            "VALUES (?, ?, ?, ?, ?)"
        )
        params = (workspace_id, tier, str(record_id), seq, safe_json_dumps(data))
        if conn is not None:
            conn.execute(sql, params)
            return
        with self.transaction() as tx:
            tx.execute(sql, params)

    def get(self, workspace_id: str, tier: str, record_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data FROM records WHERE workspace_id = ? AND tier = ? AND id = ?",
                (workspace_id, tier, str(record_id)),
            ).fetchone()
        return json.loads(row["data"]) if row else None

    def scan(self, workspace_id: str, tier: str) -> list[dict[str, Any]]:
        """All records of one tier in one workspace, ordered by seq then id."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT data FROM records WHERE workspace_id = ? AND tier = ? ORDER BY seq, id",
                (workspace_id, tier),
            ).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def list_tier(self, tier: str) -> list[dict[str, Any]]:
        """Records of one tier across all workspaces (workspace rows only)."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT data FROM records WHERE tier = ? ORDER BY workspace_id, seq, id",
                (tier,),
            ).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def delete(
        self,
        workspace_id: str,
        tier: str,
        record_ids: Iterable[str],
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        params = [(workspace_id, tier, str(rid)) for rid in record_ids]
        if not params:
            return
        sql = "DELETE FROM records WHERE workspace_id = ? AND tier = ? AND id = ?"
        if conn is not None:
            conn.executemany(sql, params)
            return
        with self.transaction() as tx:
            tx.executemany(sql, params)

    def clear(
        self,
        workspace_id: str,
        tier: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Delete a workspace's records, optionally restricted to one tier."""
        if tier is None:
            sql, params = "DELETE FROM records WHERE workspace_id = ?", (workspace_id,)
        else:
            sql = "DELETE FROM records WHERE workspace_id = ? AND tier = ?"
            params = (workspace_id, tier)
        if conn is not None:
            return conn.execute(sql, params).rowcount
        with self.transaction() as tx:
            rowcount = tx.execute(sql, params).rowcount
        logger.debug("Cleared %d records for %s (tier=%s)", rowcount, workspace_id, tier)
        return rowcount

    def count(self, workspace_id: str, tier: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM records WHERE workspace_id = ? AND tier = ?",
                (workspace_id, tier),
            ).fetchone()
        return int(row["n"])
