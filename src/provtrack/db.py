"""SQLite database shared by the session, event and lineage stores."""

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from provtrack import config

SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    source_type TEXT NOT NULL,
    source_id TEXT NOT NULL,
    user_id TEXT,
    organization_id TEXT NOT NULL,
    project_id TEXT,
    category TEXT NOT NULL,
    action TEXT NOT NULL,
    label TEXT,
    parent_event_ids TEXT NOT NULL DEFAULT '[]',
    confidence REAL NOT NULL DEFAULT 1.0,
    search_text TEXT NOT NULL DEFAULT '',
    tags TEXT NOT NULL DEFAULT '[]',
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_source ON events(source_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_events_category ON events(category, action);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    organization_id TEXT NOT NULL,
    project_id TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT,
    expired_at TEXT,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_start ON sessions(start_time);
CREATE INDEX IF NOT EXISTS idx_sessions_open ON sessions(end_time, expired_at);

CREATE TABLE IF NOT EXISTS lineage_edges (
    parent_id TEXT NOT NULL,
    child_id TEXT NOT NULL,
    confidence REAL NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (parent_id, child_id)
);

CREATE INDEX IF NOT EXISTS idx_edges_child ON lineage_edges(child_id);

CREATE TABLE IF NOT EXISTS lineage_paths (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    path TEXT NOT NULL,
    path_length INTEGER NOT NULL,
    path_type TEXT NOT NULL,
    confidence REAL NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (source_id, target_id, path)
);

CREATE INDEX IF NOT EXISTS idx_paths_source ON lineage_paths(source_id);
CREATE INDEX IF NOT EXISTS idx_paths_target ON lineage_paths(target_id);
CREATE INDEX IF NOT EXISTS idx_paths_key ON lineage_paths(source_id, target_id, path_length);
"""


class Database:
    """Lazily opened SQLite connection guarded by a lock.

    The connection may be used from the event loop thread and from the
    worker threads the flush worker hands blocking writes to, so every
    access goes through ``lock``.
    """

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = db_path or config.DB_PATH
        self.lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            if str(self.db_path) != ":memory:":
                config.ensure_dirs()
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock for one atomic unit of work; commit or roll back."""
        with self.lock:
            conn = self.conn
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    def query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self.lock:
            return self.conn.execute(sql, params).fetchall()

    def close(self) -> None:
        with self.lock:
            if self._conn:
                self._conn.close()
                self._conn = None
