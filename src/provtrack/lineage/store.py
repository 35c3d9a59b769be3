"""SQLite persistence for lineage edges and materialized paths.

Both tables are append-only. Path rows are unique on (source, target, path),
so re-deriving an identical chain is a no-op.
"""

import json
import sqlite3
from datetime import datetime, timezone

from provtrack.db import Database
from provtrack.lineage.models import LineageEdge, LineagePath


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_path(row: sqlite3.Row) -> LineagePath:
    return LineagePath(
        source_id=row["source_id"],
        target_id=row["target_id"],
        path=tuple(json.loads(row["path"])),
        confidence=row["confidence"],
        path_type=row["path_type"],
    )


class PathStore:
    """Edge log and path table.

    The write helpers take the connection of an open transaction so that the
    tracker can make one link, with all the paths it derives, atomic.
    """

    def __init__(self, db: Database):
        self.db = db

    def insert_edge(self, conn: sqlite3.Connection, edge: LineageEdge) -> bool:
        cursor = conn.execute(
            """INSERT OR IGNORE INTO lineage_edges (parent_id, child_id, confidence, created_at)
            VALUES (?, ?, ?, ?)""",
            (edge.parent_id, edge.child_id, edge.confidence, _now()),
        )
        return cursor.rowcount > 0

    def direct_path_exists(self, conn: sqlite3.Connection, source_id: str, target_id: str) -> bool:
        row = conn.execute(
            """SELECT 1 FROM lineage_paths
            WHERE source_id = ? AND target_id = ? AND path_type = 'direct' LIMIT 1""",
            (source_id, target_id),
        ).fetchone()
        return row is not None

    def insert_path(self, conn: sqlite3.Connection, path: LineagePath) -> bool:
        cursor = conn.execute(
            """INSERT OR IGNORE INTO lineage_paths
            (source_id, target_id, path, path_length, path_type, confidence, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                path.source_id,
                path.target_id,
                json.dumps(list(path.path)),
                path.length,
                path.path_type,
                path.confidence,
                _now(),
            ),
        )
        return cursor.rowcount > 0

    def paths_ending_at(self, conn: sqlite3.Connection, target_id: str) -> list[LineagePath]:
        rows = conn.execute(
            "SELECT * FROM lineage_paths WHERE target_id = ?", (target_id,)
        ).fetchall()
        return [_row_to_path(r) for r in rows]

    def paths_starting_at(self, conn: sqlite3.Connection, source_id: str) -> list[LineagePath]:
        rows = conn.execute(
            "SELECT * FROM lineage_paths WHERE source_id = ?", (source_id,)
        ).fetchall()
        return [_row_to_path(r) for r in rows]

    def paths_touching(self, event_id: str, limit: int = 100) -> list[LineagePath]:
        """Paths that start or end at ``event_id``, shortest first."""
        rows = self.db.query(
            """SELECT * FROM lineage_paths WHERE source_id = ? OR target_id = ?
            ORDER BY path_length, id LIMIT ?""",
            (event_id, event_id, limit),
        )
        return [_row_to_path(r) for r in rows]

    def load_edges(self) -> list[LineageEdge]:
        rows = self.db.query(
            "SELECT parent_id, child_id, confidence FROM lineage_edges ORDER BY created_at"
        )
        return [LineageEdge(r["parent_id"], r["child_id"], r["confidence"]) for r in rows]

    def count_paths(self) -> int:
        return self.db.query("SELECT COUNT(*) AS n FROM lineage_paths")[0]["n"]
