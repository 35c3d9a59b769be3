"""Append-only SQLite event log."""

import json
import sqlite3
from datetime import datetime

from provtrack.db import Database
from provtrack.errors import StorageWriteError
from provtrack.events.models import Event


class EventStore:
    """Durable event log. Events are inserted once and never rewritten.

    Inserts ignore ids that already exist, so a batch retried after a
    write that actually landed does not duplicate anything.
    """

    def __init__(self, db: Database):
        self.db = db

    def append_events(self, events: list[Event]) -> int:
        """Write a batch in one transaction. Returns the number of new rows."""
        try:
            with self.db.transaction() as conn:
                before = conn.total_changes
                conn.executemany(
                    """INSERT OR IGNORE INTO events
                    (id, timestamp, source_type, source_id, user_id, organization_id,
                     project_id, category, action, label, parent_event_ids, confidence,
                     search_text, tags, data)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    [
                        (
                            e.id,
                            e.timestamp.isoformat(),
                            e.source_type,
                            e.source_id,
                            e.user_id,
                            e.organization_id,
                            e.project_id,
                            e.category.value,
                            e.action,
                            e.label,
                            json.dumps(list(e.parent_event_ids)),
                            e.confidence,
                            e.search_text,
                            json.dumps(list(e.tags)),
                            e.model_dump_json(),
                        )
                        for e in events
                    ],
                )
                return conn.total_changes - before
        except sqlite3.Error as e:
            raise StorageWriteError(f"Failed to write {len(events)} events: {e}") from e

    def get_event(self, event_id: str) -> Event | None:
        rows = self.db.query("SELECT data FROM events WHERE id = ?", (event_id,))
        return Event.model_validate_json(rows[0]["data"]) if rows else None

    def events_for_session(
        self,
        session_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 1000,
    ) -> list[Event]:
        """Events produced by one session, oldest first."""
        sql = "SELECT data FROM events WHERE source_id = ?"
        params: list = [session_id]
        if since:
            sql += " AND timestamp >= ?"
            params.append(since.isoformat())
        if until:
            sql += " AND timestamp <= ?"
            params.append(until.isoformat())
        sql += " ORDER BY timestamp, id LIMIT ?"
        params.append(limit)
        return [Event.model_validate_json(r["data"]) for r in self.db.query(sql, params)]

    def count(self) -> int:
        return self.db.query("SELECT COUNT(*) AS n FROM events")[0]["n"]
