"""Tests for runtime wiring, shutdown and the notification bus."""

import asyncio

import pytest

from provtrack.events.bus import EventBus
from provtrack.runtime import Runtime


class TestRuntime:
    @pytest.mark.asyncio
    async def test_stop_drains_queue_and_restart_reloads(self, tmp_path):
        db_path = tmp_path / "test.db"
        rt = Runtime(db_path=db_path, flush_interval=60)
        await rt.start()

        session = rt.sessions.create_session(owner_id="user-1", organization_id="org-1")
        first = await rt.capture.capture_event(session.id, {"category": "analysis", "action": "lint"})
        second = await rt.capture.capture_event(session.id, {"category": "analysis", "action": "test"})
        assert rt.events.count() == 0

        assert await rt.stop() == 0

        restarted = Runtime(db_path=db_path)
        restarted.load()
        try:
            assert restarted.events.count() == 2
            assert restarted.lineage.get_parents(second.event_id) == [first.event_id]
            assert restarted.sessions.get_session(session.id).last_event_id == second.event_id
        finally:
            restarted.close()

    @pytest.mark.asyncio
    async def test_timer_flushes_in_background(self, tmp_path):
        rt = Runtime(db_path=tmp_path / "test.db", flush_interval=0.05)
        await rt.start()
        try:
            session = rt.sessions.create_session(owner_id="user-1", organization_id="org-1")
            await rt.capture.capture_event(session.id, {"category": "review", "action": "approve"})
            await asyncio.sleep(0.3)
            assert rt.events.count() == 1
        finally:
            await rt.stop()


class TestEventBus:
    @pytest.mark.asyncio
    async def test_delivers_to_subscribers(self):
        bus = EventBus()
        first = bus.subscribe("events:new")
        second = bus.subscribe("events:new")

        assert await bus.publish("events:new", {"eventId": "evt_1"}) == 2
        assert (await first.get()).payload == {"eventId": "evt_1"}
        assert (await second.get()).payload == {"eventId": "evt_1"}

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        queue = bus.subscribe("events:new")
        bus.unsubscribe("events:new", queue)

        assert await bus.publish("events:new", {}) == 0
        assert bus.subscriber_count("events:new") == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_without_blocking(self):
        bus = EventBus(queue_size=1)
        queue = bus.subscribe("events:new")

        await bus.publish("events:new", 1)
        assert await bus.publish("events:new", 2) == 0
        assert bus.dropped == 1
        assert queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            await bus.publish("calculations:queue", i)
        assert [m.payload for m in bus.recent("calculations:queue")] == [2, 3, 4]
