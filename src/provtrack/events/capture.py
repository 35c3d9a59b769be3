"""Event capture: validation, identity, default lineage and batched persistence.

Durability contract: ``capture_event`` returns as soon as the event is
queued, not once it is written. Queued events are flushed in batches by a
single worker (size threshold or timer, whichever comes first). A failed
batch goes back to the front of the queue and the timer backs off
exponentially, so delivery to the store is at-least-once and eventually
durable. Events still queued when the process dies without ``cleanup()``
are lost.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from provtrack.config import (
    BATCH_SIZE,
    CHANNEL_CALCULATIONS,
    CHANNEL_NEW_EVENTS,
    FLUSH_INTERVAL,
    INSIGHT_THRESHOLD,
    MAX_BACKOFF,
    WRITE_TIMEOUT,
    stream_channel,
)
from provtrack.errors import SessionExpired, StorageWriteError, ValidationError
from provtrack.events.bus import EventBus
from provtrack.events.ids import new_event_id
from provtrack.events.models import (
    CaptureEventInput,
    Event,
    EventCategory,
    build_search_text,
    extract_tags,
    parse_payload,
)
from provtrack.events.store import EventStore
from provtrack.lineage.tracker import LineageTracker
from provtrack.session.store import SessionStore

logger = structlog.get_logger(__name__)


@dataclass
class CaptureResult:
    event_id: str
    status: str = "captured"


@dataclass
class BatchCaptureResult:
    event_ids: list[str] = field(default_factory=list)
    status: str = "batch_captured"


class EventCapture:
    def __init__(
        self,
        sessions: SessionStore,
        lineage: LineageTracker,
        store: EventStore,
        bus: EventBus,
        batch_size: int = BATCH_SIZE,
        flush_interval: float = FLUSH_INTERVAL,
        max_backoff: float = MAX_BACKOFF,
        write_timeout: float = WRITE_TIMEOUT,
        id_factory=new_event_id,
    ):
        self.sessions = sessions
        self.lineage = lineage
        self.store = store
        self.bus = bus
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.max_backoff = max_backoff
        self.write_timeout = write_timeout
        self._new_id = id_factory

        self._queue: list[Event] = []
        self._flush_lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()
        self._interval = flush_interval
        self._retry_at = 0.0
        self._timer: asyncio.Task | None = None
        self._pending: asyncio.Task | None = None
        self.stats = {"captured": 0, "flushes": 0, "failed_flushes": 0, "written": 0}

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def current_interval(self) -> float:
        """Delay before the next timer flush; grows while flushes fail."""
        return self._interval

    @property
    def is_flushing(self) -> bool:
        return self._flush_lock.locked()

    def queued_ids(self) -> list[str]:
        return [e.id for e in self._queue]

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def _validate(self, data: CaptureEventInput | dict[str, Any]) -> CaptureEventInput:
        if isinstance(data, CaptureEventInput):
            return data
        try:
            return CaptureEventInput.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError("Invalid event", e.errors()) from e

    async def capture_event(
        self, session_id: str, data: CaptureEventInput | dict[str, Any]
    ) -> CaptureResult:
        """Validate, identify, link and queue one event for ``session_id``.

        Without an explicit parent the event is linked to the newest event in
        the session's recent window. Raises ValidationError, SessionNotFound
        or SessionExpired before any side effect takes place.
        """
        payload = self._validate(data)
        try:
            value = parse_payload(payload.category, payload.value)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid {payload.category.value} payload", e.errors()) from e

        session = self.sessions.require_session(session_id)
        if self.sessions.is_expired(session):
            raise SessionExpired(session_id)

        # No awaits until the event is queued and in the window: parent
        # resolution and the window append must not interleave with another
        # capture. The expiry check above stands for the whole capture.
        if payload.parent_event_id:
            parent_ids: tuple[str, ...] = (payload.parent_event_id,)
        elif session.last_event_id:
            parent_ids = (session.last_event_id,)
        else:
            parent_ids = ()

        git = payload.git_context
        event = Event(
            id=self._new_id(),
            timestamp=self.sessions.clock(),
            source_id=session.id,
            user_id=session.owner_id,
            organization_id=session.organization_id,
            project_id=session.project_id,
            environment=session.environment,
            category=payload.category,
            action=payload.action,
            label=payload.label,
            value=value,
            intent=session.current_intent,
            parent_event_ids=parent_ids,
            git_commit=git.commit if git else None,
            git_branch=git.branch if git else None,
            git_repository=git.repository if git else None,
            pr_number=git.pr_number if git else None,
            confidence=payload.confidence,
            search_text=build_search_text(
                payload.category.value, payload.action, payload.label, payload.value
            ),
            tags=extract_tags(payload.category.value, payload.action, payload.value),
            metadata=payload.metadata,
        )

        self._queue.append(event)
        self.sessions.append_event(session, event.id)
        self.stats["captured"] += 1

        # Durable writes run on worker threads. The lock is FIFO, so links
        # and snapshots land in capture order.
        async with self._persist_lock:
            try:
                await asyncio.to_thread(
                    self.lineage.add_link,
                    parent_ids[0] if parent_ids else None,
                    event.id,
                    payload.confidence,
                )
            except StorageWriteError:
                # The parent id is still recorded on the event itself.
                logger.error("lineage_link_failed", event_id=event.id, exc_info=True)
            try:
                await self.sessions.persist(session)
            except StorageWriteError:
                logger.error("session_snapshot_failed", session_id=session.id, exc_info=True)

        await self._publish(event)

        if len(self._queue) >= self.batch_size:
            self._trigger_flush()

        logger.debug(
            "event_captured",
            event_id=event.id,
            category=event.category.value,
            action=event.action,
        )
        return CaptureResult(event_id=event.id)

    async def capture_batch(
        self, session_id: str, events: list[CaptureEventInput | dict[str, Any]]
    ) -> BatchCaptureResult:
        """Capture events in order, each one the parent of the next.

        Explicit parents on all but the first event are overridden. Every
        input is validated before the first one is captured.
        """
        inputs = [self._validate(e) for e in events]
        result = BatchCaptureResult()
        parent_id: str | None = None
        for item in inputs:
            if parent_id:
                item = item.model_copy(update={"parent_event_id": parent_id})
            captured = await self.capture_event(session_id, item)
            result.event_ids.append(captured.event_id)
            parent_id = captured.event_id
        return result

    async def _publish(self, event: Event) -> None:
        await self.bus.publish(CHANNEL_NEW_EVENTS, event.notification())
        await self.bus.publish(
            stream_channel(event.organization_id), event.model_dump(mode="json")
        )

    # ------------------------------------------------------------------
    # Batch flushing
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic flush timer. Needs a running event loop."""
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._run_timer(), name="provtrack-flush-timer")

    async def _run_timer(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self._interval)
            if self._queue and loop.time() >= self._retry_at:
                try:
                    await self.flush()
                except Exception:
                    # The batch is back in the queue; keep the timer alive.
                    logger.exception("timer_flush_failed")

    def _trigger_flush(self) -> None:
        if self._pending and not self._pending.done():
            return
        if asyncio.get_running_loop().time() < self._retry_at:
            return  # backing off; the timer retries
        self._pending = asyncio.create_task(self.flush())

    async def flush(self) -> bool:
        """Write the oldest batch. Returns False if it failed or another flush is running."""
        if self._flush_lock.locked():
            return False

        async with self._flush_lock:
            if not self._queue:
                return True

            batch = self._queue[: self.batch_size]
            del self._queue[: len(batch)]
            self.stats["flushes"] += 1
            try:
                written = await asyncio.wait_for(
                    asyncio.to_thread(self.store.append_events, batch),
                    timeout=self.write_timeout,
                )
            except (StorageWriteError, asyncio.TimeoutError) as e:
                self._queue[:0] = batch
                self._interval = min(self.max_backoff, self._interval * 2)
                self._retry_at = asyncio.get_running_loop().time() + self._interval
                self.stats["failed_flushes"] += 1
                logger.warning(
                    "batch_flush_failed",
                    size=len(batch),
                    queued=len(self._queue),
                    retry_in=self._interval,
                    error=str(e) or type(e).__name__,
                )
                return False
            except BaseException:
                # Cancelled or unexpected: keep the batch, let the error through.
                self._queue[:0] = batch
                raise

            self._interval = self.flush_interval
            self._retry_at = 0.0
            self.stats["written"] += written
            logger.info("batch_flushed", size=len(batch), written=written, queued=len(self._queue))

        await self._trigger_downstream(batch)
        if len(self._queue) >= self.batch_size:
            self._trigger_flush()
        return True

    async def _trigger_downstream(self, batch: list[Event]) -> None:
        """Notify out-of-process calculators about a persisted batch."""
        for event in batch:
            if event.category in (EventCategory.ANALYSIS, EventCategory.CODE_CHANGE):
                await self.bus.publish(
                    CHANNEL_CALCULATIONS,
                    {"type": "metric", "eventId": event.id, "timestamp": event.timestamp.isoformat()},
                )

        analysis = [e.id for e in batch if e.category == EventCategory.ANALYSIS]
        if len(analysis) >= INSIGHT_THRESHOLD:
            await self.bus.publish(
                CHANNEL_CALCULATIONS,
                {"type": "insight", "eventIds": analysis, "timestamp": self.sessions.clock().isoformat()},
            )

    async def cleanup(self) -> int:
        """Stop the timer and drain the queue. Returns events left unwritten.

        Best effort: a flush that fails during shutdown leaves its events
        in the queue and they are reported, not retried.
        """
        if self._timer:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        if self._pending and not self._pending.done():
            await self._pending

        while self._queue:
            if not await self.flush():
                break

        if self._queue:
            logger.error("final_flush_incomplete", unwritten=len(self._queue))
        return len(self._queue)
