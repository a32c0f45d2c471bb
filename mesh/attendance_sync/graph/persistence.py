"""
Local SQLite persistence for the graph store.

Stores the graph as an append-or-merge log keyed by (path, field): every
field state the store accepts is upserted, so a peer restarting from the
same file recovers its already-synced graph without waiting for relays.

Invariants:
    - One SQLite file per peer
    - A row only ever holds the winning state for its (path, field)
    - The file is a cache of merged state; it can be deleted and rebuilt
      from peers at the cost of a full resync

Table schema:
    field_log:
        - path_json TEXT (JSON array of segments)
        - field TEXT
        - value_json TEXT
        - ts REAL (writer timestamp)
        - writer TEXT
        - sig TEXT (nullable)
        - stored_at INTEGER (Unix ms)
        - PRIMARY KEY (path_json, field)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Iterator
from pathlib import Path as FsPath
from typing import Mapping

from ..merge.resolver import FieldState
from .path import Path

logger = logging.getLogger(__name__)


class SqliteGraphLog:
    """SQLite-backed field log.

    Thread safety:
        A single connection is shared and guarded by a lock; the graph
        store already serializes writes, the lock covers direct callers.

    Example:
        >>> log = SqliteGraphLog("/var/lib/attendance/peer.db")
        >>> log.open()
        >>> log.upsert(("app", "node"), {"name": FieldState("Ada", 1.0, "peer-a")})
        >>> list(log.load())
        [(('app', 'node'), 'name', FieldState(value='Ada', ts=1.0, writer='peer-a', sig=None))]
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the log.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL journal mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = FsPath(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> None:
        """Open (and create if needed) the database file."""
        if self._conn is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        if self.wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        self._create_schema(conn)
        self._conn = conn
        logger.info("Opened graph log", extra={"db_path": str(self.db_path)})

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS field_log (
                path_json TEXT NOT NULL,
                field TEXT NOT NULL,
                value_json TEXT NOT NULL,
                ts REAL NOT NULL,
                writer TEXT NOT NULL,
                sig TEXT,
                stored_at INTEGER NOT NULL,
                PRIMARY KEY (path_json, field)
            );

            CREATE INDEX IF NOT EXISTS idx_field_log_ts ON field_log(ts);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    def _require(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError(f"Graph log not open: {self.db_path}")
        return self._conn

    def upsert(self, path: Path, states: Mapping[str, FieldState]) -> None:
        """Record winning field states for a node.

        All fields of one call are written in a single transaction.
        """
        if not states:
            return
        path_json = json.dumps(list(path))
        now = int(time.time() * 1000)
        rows = [
            (path_json, name, json.dumps(state.value), state.ts, state.writer, state.sig, now)
            for name, state in states.items()
        ]

        with self._lock:
            conn = self._require()
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.executemany(
                    """
                    INSERT INTO field_log (path_json, field, value_json, ts, writer, sig, stored_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (path_json, field) DO UPDATE SET
                        value_json = excluded.value_json,
                        ts = excluded.ts,
                        writer = excluded.writer,
                        sig = excluded.sig,
                        stored_at = excluded.stored_at
                    """,
                    rows,
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def load(self) -> Iterator[tuple[Path, str, FieldState]]:
        """Yield every stored (path, field, state), oldest first."""
        with self._lock:
            rows = self._require().execute(
                "SELECT path_json, field, value_json, ts, writer, sig FROM field_log ORDER BY ts"
            ).fetchall()

        for row in rows:
            path = tuple(json.loads(row["path_json"]))
            state = FieldState(
                value=json.loads(row["value_json"]),
                ts=row["ts"],
                writer=row["writer"],
                sig=row["sig"],
            )
            yield path, row["field"], state

    def count(self) -> int:
        with self._lock:
            row = self._require().execute("SELECT COUNT(*) AS n FROM field_log").fetchone()
        return row["n"]
