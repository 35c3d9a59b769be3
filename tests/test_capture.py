"""Tests for event capture and batched persistence."""

import asyncio
import threading
import time
from datetime import timedelta

import pytest

from provtrack.config import CHANNEL_CALCULATIONS, CHANNEL_NEW_EVENTS, stream_channel
from provtrack.errors import SessionExpired, SessionNotFound, StorageWriteError, ValidationError
from provtrack.events.bus import EventBus
from provtrack.events.capture import EventCapture
from provtrack.events.store import EventStore
from provtrack.lineage.store import PathStore
from provtrack.lineage.tracker import LineageTracker
from provtrack.session.store import SessionStore


class RecordingStore:
    """Event store stand-in that records batches and can fail or stall on demand."""

    def __init__(self):
        self.batches: list[list[str]] = []
        self.calls = 0
        self.failures = 0
        self.delay = 0.0
        self.gate: threading.Event | None = None
        self.error: Exception | None = None

    def append_events(self, events) -> int:
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=2)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            error, self.error = self.error, None
            raise error
        if self.failures:
            self.failures -= 1
            raise StorageWriteError("disk full")
        self.batches.append([e.id for e in events])
        return len(events)


@pytest.fixture
def sessions(db):
    return SessionStore(db)


@pytest.fixture
def lineage(db):
    return LineageTracker(PathStore(db))


@pytest.fixture
def session(sessions):
    return sessions.create_session(
        owner_id="user-1",
        organization_id="org-1",
        project_id="proj-1",
        intent="Refactor auth",
    )


@pytest.fixture
def make_capture(sessions, lineage):
    def factory(store=None, **options):
        options.setdefault("flush_interval", 3600)
        return EventCapture(sessions, lineage, store or RecordingStore(), EventBus(), **options)

    return factory


def analysis(n: int = 0) -> dict:
    return {
        "category": "analysis",
        "action": "complexity_calculation",
        "value": {"metric": "complexity", "result": n},
    }


class TestCaptureEvent:
    @pytest.mark.asyncio
    async def test_returns_once_queued(self, make_capture, session, lineage):
        capture = make_capture()
        result = await capture.capture_event(session.id, analysis())

        assert result.status == "captured"
        assert result.event_id.startswith("evt_")
        assert capture.queued_ids() == [result.event_id]
        assert capture.store.batches == []
        assert lineage.has_event(result.event_id)

    @pytest.mark.asyncio
    async def test_defaults_to_last_session_event_as_parent(self, make_capture, session, lineage, db):
        capture = make_capture(store=EventStore(db))
        first = await capture.capture_event(session.id, analysis(1))
        second = await capture.capture_event(session.id, analysis(2))

        assert lineage.get_parents(first.event_id) == []
        assert lineage.get_parents(second.event_id) == [first.event_id]

        assert await capture.flush()
        stored = capture.store.get_event(second.event_id)
        assert stored.parent_event_ids == (first.event_id,)

    @pytest.mark.asyncio
    async def test_explicit_parent(self, make_capture, session, lineage):
        capture = make_capture()
        await capture.capture_event(session.id, analysis())
        result = await capture.capture_event(
            session.id, {**analysis(), "parentEventId": "evt_external", "confidence": 0.7}
        )
        assert lineage.get_parents(result.event_id) == ["evt_external"]
        tree = lineage.get_lineage_tree(result.event_id, "ancestors")
        assert tree.event.confidence == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_event_carries_session_context(self, make_capture, session, db):
        capture = make_capture(store=EventStore(db))
        result = await capture.capture_event(
            session.id,
            {
                "category": "code_change",
                "action": "file_modified",
                "label": "src/auth.py",
                "value": {"filePath": "src/auth.py", "linesAdded": 4},
                "gitContext": {"commit": "abc123", "branch": "main"},
            },
        )
        await capture.flush()

        event = capture.store.get_event(result.event_id)
        assert event.source_id == session.id
        assert event.user_id == "user-1"
        assert event.organization_id == "org-1"
        assert event.project_id == "proj-1"
        assert event.intent == "Refactor auth"
        assert event.git_commit == "abc123"
        assert event.value.kind == "code_change"
        assert event.value.lines_added == 4
        assert "file_modified" in event.tags

    @pytest.mark.asyncio
    async def test_concurrent_captures_form_a_chain(self, make_capture, session, sessions, lineage):
        capture = make_capture()
        await asyncio.gather(*(capture.capture_event(session.id, analysis(i)) for i in range(10)))

        window = sessions.get_session(session.id).recent_event_ids
        assert len(window) == 10
        for parent, child in zip(window, window[1:]):
            assert lineage.get_parents(child) == [parent]

    @pytest.mark.asyncio
    async def test_invalid_input_has_no_side_effects(self, make_capture, session, sessions):
        capture = make_capture()
        with pytest.raises(ValidationError):
            await capture.capture_event(session.id, {**analysis(), "confidence": 2})
        with pytest.raises(ValidationError):
            await capture.capture_event(session.id, {"category": "gossip", "action": "x"})
        with pytest.raises(ValidationError):
            await capture.capture_event(
                session.id, {"category": "code_change", "action": "edit", "value": {"linesAdded": -3}}
            )

        assert capture.queue_length == 0
        assert sessions.get_session(session.id).metrics.events_count == 0

    @pytest.mark.asyncio
    async def test_unknown_session(self, make_capture):
        capture = make_capture()
        with pytest.raises(SessionNotFound):
            await capture.capture_event("cs_missing", analysis())

    @pytest.mark.asyncio
    async def test_expired_session(self, make_capture, session, sessions):
        capture = make_capture()
        sessions.end_session(session.id)
        with pytest.raises(SessionExpired):
            await capture.capture_event(session.id, analysis())
        assert capture.queue_length == 0

    @pytest.mark.asyncio
    async def test_expiry_is_checked_once_per_capture(self, make_capture, session, sessions):
        # The first clock read lands just inside the TTL, every later one just past it.
        ticks = iter([timedelta(hours=24) - timedelta(seconds=1)])
        sessions.clock = lambda: session.start_time + next(ticks, timedelta(hours=24, seconds=1))
        capture = make_capture()

        result = await capture.capture_event(session.id, analysis())
        assert result.status == "captured"
        assert capture.queued_ids() == [result.event_id]
        assert sessions.get_session(session.id).last_event_id == result.event_id

    @pytest.mark.asyncio
    async def test_loop_stays_responsive_while_database_is_busy(
        self, make_capture, session, lineage, db
    ):
        capture = make_capture()
        first = await capture.capture_event(session.id, analysis(1))

        held = threading.Event()

        def hold_database():
            with db.lock:
                held.set()
                time.sleep(0.4)

        holder = threading.Thread(target=hold_database)
        holder.start()
        held.wait(timeout=2)

        loop = asyncio.get_running_loop()
        gaps: list[float] = []

        async def tick():
            last = loop.time()
            while True:
                await asyncio.sleep(0.02)
                now = loop.time()
                gaps.append(now - last)
                last = now

        ticker = asyncio.create_task(tick())
        second = await capture.capture_event(session.id, analysis(2))
        ticker.cancel()
        try:
            await ticker
        except asyncio.CancelledError:
            pass
        holder.join()

        assert gaps
        assert max(gaps) < 0.2
        assert lineage.get_parents(second.event_id) == [first.event_id]

    @pytest.mark.asyncio
    async def test_publishes_notifications(self, make_capture, session):
        capture = make_capture()
        listener = capture.bus.subscribe(CHANNEL_NEW_EVENTS)
        result = await capture.capture_event(session.id, analysis())

        message = listener.get_nowait()
        assert message.payload["eventId"] == result.event_id
        assert message.payload["sessionId"] == session.id

        streamed = capture.bus.recent(stream_channel("org-1"))
        assert streamed[0].payload["id"] == result.event_id


class TestCaptureBatch:
    @pytest.mark.asyncio
    async def test_chains_events_in_order(self, make_capture, session, lineage):
        capture = make_capture()
        first = await capture.capture_event(session.id, analysis())
        result = await capture.capture_batch(
            session.id,
            [analysis(1), {**analysis(2), "parentEventId": "evt_elsewhere"}, analysis(3)],
        )

        assert result.status == "batch_captured"
        a, b, c = result.event_ids
        assert lineage.get_parents(a) == [first.event_id]
        assert lineage.get_parents(b) == [a]
        assert lineage.get_parents(c) == [b]

    @pytest.mark.asyncio
    async def test_validates_everything_first(self, make_capture, session):
        capture = make_capture()
        with pytest.raises(ValidationError):
            await capture.capture_batch(session.id, [analysis(1), {"category": "analysis", "action": ""}])
        assert capture.queue_length == 0


class TestFlushing:
    @pytest.mark.asyncio
    async def test_size_threshold_then_timer(self, make_capture, session):
        capture = make_capture(flush_interval=0.05)
        ids = [(await capture.capture_event(session.id, analysis(i))).event_id for i in range(101)]

        await capture._pending
        assert capture.store.batches == [ids[:100]]
        assert capture.queued_ids() == [ids[100]]

        capture.start()
        await asyncio.sleep(0.3)
        assert capture.store.batches == [ids[:100], ids[100:]]
        assert capture.queue_length == 0
        assert await capture.cleanup() == 0

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_events(self, make_capture, session):
        store = RecordingStore()
        store.failures = 1
        capture = make_capture(store=store, flush_interval=10)
        ids = [(await capture.capture_event(session.id, analysis(i))).event_id for i in range(100)]

        assert await capture._pending is False
        assert capture.queued_ids() == ids
        assert capture.current_interval == 20
        assert capture.stats["failed_flushes"] == 1

        assert await capture.flush() is True
        assert store.batches == [ids]
        assert capture.queue_length == 0
        assert capture.current_interval == 10

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, make_capture, session):
        store = RecordingStore()
        store.failures = 100
        capture = make_capture(store=store, flush_interval=1.0, max_backoff=4.0)
        await capture.capture_event(session.id, analysis())

        for _ in range(5):
            assert await capture.flush() is False
        assert capture.current_interval == 4.0
        assert capture.queue_length == 1

    @pytest.mark.asyncio
    async def test_size_trigger_waits_out_backoff(self, make_capture, session):
        store = RecordingStore()
        store.failures = 1
        capture = make_capture(store=store, batch_size=2)
        await capture.capture_event(session.id, analysis(1))
        await capture.capture_event(session.id, analysis(2))
        await capture._pending
        assert store.calls == 1

        await capture.capture_event(session.id, analysis(3))
        await asyncio.sleep(0)
        assert store.calls == 1
        assert capture.queue_length == 3

    @pytest.mark.asyncio
    async def test_timer_survives_unexpected_errors(self, make_capture, session):
        store = RecordingStore()
        store.error = RuntimeError("driver bug")
        capture = make_capture(store=store, flush_interval=0.05)
        result = await capture.capture_event(session.id, analysis())

        capture.start()
        await asyncio.sleep(0.4)
        assert store.calls >= 2
        assert store.batches == [[result.event_id]]
        assert await capture.cleanup() == 0

    @pytest.mark.asyncio
    async def test_write_timeout_requeues(self, make_capture, session):
        store = RecordingStore()
        store.delay = 0.3
        capture = make_capture(store=store, write_timeout=0.05)
        await capture.capture_event(session.id, analysis())

        assert await capture.flush() is False
        assert capture.queue_length == 1

    @pytest.mark.asyncio
    async def test_one_flush_at_a_time(self, make_capture, session):
        store = RecordingStore()
        store.gate = threading.Event()
        capture = make_capture(store=store)
        await capture.capture_event(session.id, analysis())

        running = asyncio.create_task(capture.flush())
        await asyncio.sleep(0.05)
        assert capture.is_flushing
        assert await capture.flush() is False

        store.gate.set()
        assert await running is True
        assert store.calls == 1

    @pytest.mark.asyncio
    async def test_downstream_calculations(self, make_capture, session):
        capture = make_capture()
        for i in range(3):
            await capture.capture_event(session.id, analysis(i))
        await capture.capture_event(session.id, {"category": "code_change", "action": "file_created"})
        await capture.capture_event(session.id, {"category": "planning", "action": "outline"})
        await capture.flush()

        messages = [m.payload for m in capture.bus.recent(CHANNEL_CALCULATIONS)]
        assert [m["type"] for m in messages].count("metric") == 4
        insights = [m for m in messages if m["type"] == "insight"]
        assert len(insights) == 1
        assert len(insights[0]["eventIds"]) == 3

    @pytest.mark.asyncio
    async def test_cleanup_drains_queue(self, make_capture, session, db):
        capture = make_capture(store=EventStore(db))
        capture.start()
        for i in range(5):
            await capture.capture_event(session.id, analysis(i))

        assert await capture.cleanup() == 0
        assert capture.store.count() == 5

    @pytest.mark.asyncio
    async def test_cleanup_reports_unwritten(self, make_capture, session):
        store = RecordingStore()
        store.failures = 100
        capture = make_capture(store=store)
        await capture.capture_event(session.id, analysis(1))
        await capture.capture_event(session.id, analysis(2))

        assert await capture.cleanup() == 2
