"""Wires the session store, event capture and lineage tracker together.

Startup:
- Rebuild the lineage adjacency index from the edge log
- Start the batch flush timer and the maintenance timers

Shutdown:
- Drain the event queue through a final flush
- Evict stale caches and expired sessions, close the database
"""

import asyncio
from collections.abc import Callable
from pathlib import Path

import structlog

from provtrack.config import (
    CACHE_CLEANUP_INTERVAL,
    INTEGRITY_AUDIT_INTERVAL,
    ORGANIZATION_ID,
    SESSION_SWEEP_INTERVAL,
)
from provtrack.db import Database
from provtrack.events.bus import EventBus
from provtrack.events.capture import EventCapture
from provtrack.events.store import EventStore
from provtrack.lineage.store import PathStore
from provtrack.lineage.tracker import LineageTracker
from provtrack.session.store import SessionStore

logger = structlog.get_logger(__name__)


class Runtime:
    def __init__(
        self,
        db_path: Path | str | None = None,
        organization_id: str = ORGANIZATION_ID,
        **capture_options,
    ):
        self.organization_id = organization_id
        self.db = Database(db_path)
        self.sessions = SessionStore(self.db)
        self.events = EventStore(self.db)
        self.lineage = LineageTracker(PathStore(self.db))
        self.bus = EventBus()
        self.capture = EventCapture(
            self.sessions, self.lineage, self.events, self.bus, **capture_options
        )
        self._loaded = False
        self._tasks: list[asyncio.Task] = []

    def load(self) -> None:
        """Rebuild in-memory indexes from the database (once)."""
        if not self._loaded:
            self.lineage.load()
            self._loaded = True

    async def start(self) -> None:
        self.load()
        self.capture.start()
        self._tasks = [
            asyncio.create_task(self._every(CACHE_CLEANUP_INTERVAL, "cache_cleanup", self.lineage.cleanup)),
            asyncio.create_task(
                self._every(SESSION_SWEEP_INTERVAL, "session_sweep", self.sessions.cleanup_expired_sessions)
            ),
            asyncio.create_task(self._every(INTEGRITY_AUDIT_INTERVAL, "integrity_audit", self._audit)),
        ]
        logger.info("runtime_started", db=str(self.db.db_path), organization_id=self.organization_id)

    async def _every(self, interval: float, name: str, job: Callable[[], object]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                job()
            except Exception:
                # The graph and session set keep changing underneath; try again next tick.
                logger.exception("maintenance_job_failed", job=name)

    def _audit(self) -> None:
        report = self.lineage.verify_integrity()
        logger.info("integrity_audit", valid=report.valid, issues=len(report.issues))

    async def stop(self) -> int:
        """Graceful shutdown. Returns the number of events that could not be written."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        unwritten = await self.capture.cleanup()
        self.lineage.cleanup()
        self.sessions.cleanup_expired_sessions()
        self.db.close()
        logger.info("runtime_stopped", unwritten=unwritten)
        return unwritten

    def close(self) -> None:
        """Release the database without touching the capture queue (read-only use)."""
        self.db.close()
