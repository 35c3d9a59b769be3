"""Session lifecycle: a live working set backed by SQLite snapshots."""

import asyncio
import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog
from pydantic import ValidationError as PydanticValidationError

from provtrack.config import RECENT_WINDOW, SESSION_TTL_SECONDS
from provtrack.db import Database
from provtrack.errors import SessionExpired, SessionNotFound, StorageWriteError, ValidationError
from provtrack.session.models import Decision, Session, SessionMetrics, utcnow

logger = structlog.get_logger(__name__)


class SessionStore:
    """Owns session state and the recent-event window used for default parents.

    Reads are served from the live set, falling back to the snapshot table.
    Every mutation re-checks expiry and persists a fresh snapshot.
    """

    def __init__(
        self,
        db: Database,
        recent_window: int = RECENT_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.recent_window = recent_window
        self.clock = clock
        self._live: dict[str, Session] = {}

    @staticmethod
    def _snapshot(session: Session) -> tuple:
        return (
            session.id,
            session.owner_id,
            session.organization_id,
            session.project_id,
            session.start_time.isoformat(),
            session.end_time.isoformat() if session.end_time else None,
            session.model_dump_json(),
        )

    def _write_snapshot(self, session: Session) -> None:
        try:
            with self.db.transaction() as conn:
                # Serialized under the lock, so whichever write lands last
                # carries the newest state.
                conn.execute(
                    """INSERT INTO sessions
                    (id, owner_id, organization_id, project_id, start_time, end_time, data)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        project_id = excluded.project_id,
                        end_time = excluded.end_time,
                        data = excluded.data""",
                    self._snapshot(session),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(f"Failed to save session {session.id}: {e}") from e

    def _save(self, session: Session) -> None:
        self._write_snapshot(session)
        self._live[session.id] = session

    async def persist(self, session: Session) -> None:
        """Write a snapshot of ``session`` from a worker thread, off the event loop."""
        await asyncio.to_thread(self._write_snapshot, session)

    def _load(self, session_id: str) -> Session | None:
        rows = self.db.query("SELECT data FROM sessions WHERE id = ?", (session_id,))
        return Session.model_validate_json(rows[0]["data"]) if rows else None

    def create_session(
        self,
        owner_id: str,
        organization_id: str,
        project_id: str | None = None,
        intent: str | None = None,
        environment: str = "development",
        metadata: dict | None = None,
    ) -> Session:
        """Start a new session with zeroed metrics."""
        try:
            session = Session(
                owner_id=owner_id,
                organization_id=organization_id,
                project_id=project_id,
                start_time=self.clock(),
                current_intent=intent,
                task_description=intent,
                environment=environment,
                metadata=metadata or {},
            )
        except PydanticValidationError as e:
            raise ValidationError("Invalid session parameters", e.errors()) from e
        self._save(session)
        logger.info("session_created", session_id=session.id, owner_id=owner_id)
        return session

    def get_session(self, session_id: str) -> Session | None:
        """Get a session by ID. Expired sessions stay readable until evicted."""
        session = self._live.get(session_id)
        if session is None:
            session = self._load(session_id)
            if session is not None:
                self._live[session_id] = session
        return session

    def require_session(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def is_expired(self, session: Session) -> bool:
        return session.is_expired(self.clock())

    def _writable(self, session_id: str) -> Session:
        session = self.require_session(session_id)
        if self.is_expired(session):
            raise SessionExpired(session_id)
        return session

    def append_event(self, session: Session, event_id: str) -> None:
        """Push ``event_id`` onto the recent window in memory only.

        The caller has already checked that ``session`` is writable and is
        responsible for persisting it.
        """
        session.recent_event_ids.append(event_id)
        if len(session.recent_event_ids) > self.recent_window:
            del session.recent_event_ids[: -self.recent_window]
        session.metrics.events_count += 1
        self._live[session.id] = session

    def add_event_to_session(self, session_id: str, event_id: str) -> None:
        session = self._writable(session_id)
        self.append_event(session, event_id)
        self._save(session)

    def add_decision(
        self,
        session_id: str,
        decision: str,
        reasoning: str,
        alternatives: list[str] | None = None,
        confidence: float = 0.9,
        type: str = "architecture",
    ) -> str:
        """Record a decision and return its id."""
        session = self._writable(session_id)
        try:
            entry = Decision(
                timestamp=self.clock(),
                type=type,
                decision=decision,
                reasoning=reasoning,
                alternatives=alternatives or [],
                confidence=confidence,
            )
        except PydanticValidationError as e:
            raise ValidationError("Invalid decision", e.errors()) from e
        session.decisions.append(entry)
        session.metrics.decisions_count += 1
        self._save(session)
        return entry.id

    def add_files_to_scope(self, session_id: str, files: list[str]) -> None:
        session = self._writable(session_id)
        for path in files:
            if path not in session.files_in_scope:
                session.files_in_scope.append(path)
        self._save(session)

    def update_metrics(self, session_id: str, **counters: int) -> SessionMetrics:
        """Shallow-merge counters into the session metrics."""
        session = self._writable(session_id)
        unknown = set(counters) - set(SessionMetrics.model_fields)
        if unknown:
            raise ValidationError(f"Unknown metrics: {', '.join(sorted(unknown))}")
        merged = session.metrics.model_dump() | counters
        try:
            session.metrics = SessionMetrics.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError("Invalid metrics", e.errors()) from e
        self._save(session)
        return session.metrics

    def update_intent(self, session_id: str, intent: str) -> None:
        session = self._writable(session_id)
        session.current_intent = intent
        self._save(session)

    def end_session(self, session_id: str) -> Session:
        """Mark the session terminal. Later writes fail with SessionExpired."""
        session = self._writable(session_id)
        session.end_time = self.clock()
        self._save(session)
        logger.info(
            "session_ended",
            session_id=session_id,
            events=session.metrics.events_count,
            decisions=session.metrics.decisions_count,
        )
        return session

    def _cutoff(self, now: datetime) -> str:
        return (now - timedelta(seconds=SESSION_TTL_SECONDS)).isoformat()

    def get_active_sessions(self) -> list[Session]:
        """Non-ended sessions younger than the TTL, including ones only on disk."""
        now = self.clock()
        rows = self.db.query(
            "SELECT id, data FROM sessions WHERE end_time IS NULL AND start_time > ?",
            (self._cutoff(now),),
        )
        for row in rows:
            if row["id"] not in self._live:
                self._live[row["id"]] = Session.model_validate_json(row["data"])
        return [s for s in list(self._live.values()) if not s.is_expired(now)]

    def list_sessions(self, limit: int = 20) -> list[Session]:
        """List stored sessions, newest first, including ended ones."""
        rows = self.db.query(
            "SELECT data FROM sessions ORDER BY start_time DESC LIMIT ?", (limit,)
        )
        return [Session.model_validate_json(r["data"]) for r in rows]

    def cleanup_expired_sessions(self) -> int:
        """Retire sessions that aged out without being ended.

        Marks their snapshots expired and drops every session older than the
        TTL, ended or not, from the live set. Snapshots stay readable through
        ``get_session``. Returns the number of sessions newly retired.
        """
        now = self.clock()
        cutoff = self._cutoff(now)
        with self.db.transaction() as conn:
            retired = conn.execute(
                """UPDATE sessions SET expired_at = ?
                WHERE end_time IS NULL AND expired_at IS NULL AND start_time < ?""",
                (now.isoformat(), cutoff),
            ).rowcount

        stale = [
            s.id
            for s in list(self._live.values())
            if now - s.start_time > timedelta(seconds=SESSION_TTL_SECONDS)
        ]
        for session_id in stale:
            self._live.pop(session_id, None)
        logger.info("expired_sessions_cleaned", count=retired, evicted=len(stale))
        return retired
