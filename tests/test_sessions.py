"""Tests for session lifecycle storage."""

import pytest

from provtrack.errors import SessionExpired, SessionNotFound, ValidationError
from provtrack.session.store import SessionStore


@pytest.fixture
def store(db, clock):
    """Create a SessionStore on a temp database with a controllable clock."""
    return SessionStore(db, clock=clock)


@pytest.fixture
def session(store):
    return store.create_session(
        owner_id="user-1",
        organization_id="org-1",
        project_id="proj-1",
        intent="Add user authentication",
    )


class TestSessionStore:
    def test_create_and_get(self, store, session):
        assert session.id.startswith("cs_")
        assert session.current_intent == "Add user authentication"
        assert session.task_description == "Add user authentication"
        assert session.metrics.events_count == 0
        assert session.end_time is None

        retrieved = store.get_session(session.id)
        assert retrieved is not None
        assert retrieved.owner_id == "user-1"
        assert retrieved.organization_id == "org-1"

    def test_get_nonexistent(self, store):
        assert store.get_session("nonexistent") is None
        with pytest.raises(SessionNotFound):
            store.require_session("nonexistent")

    def test_invalid_environment(self, store):
        with pytest.raises(ValidationError):
            store.create_session(owner_id="u", organization_id="o", environment="moon")

    def test_reload_from_snapshot(self, db, clock, session):
        fresh = SessionStore(db, clock=clock)
        reloaded = fresh.get_session(session.id)
        assert reloaded is not None
        assert reloaded.current_intent == "Add user authentication"

    def test_recent_window_keeps_last_100(self, store, session):
        for i in range(150):
            store.add_event_to_session(session.id, f"evt_{i:03d}")

        current = store.get_session(session.id)
        assert len(current.recent_event_ids) == 100
        assert current.recent_event_ids[0] == "evt_050"
        assert current.last_event_id == "evt_149"
        assert current.metrics.events_count == 150

    def test_add_decision(self, store, session):
        decision_id = store.add_decision(
            session.id,
            decision="Use JWT",
            reasoning="Stateless auth",
            alternatives=["Server sessions"],
        )
        assert decision_id.startswith("dec_")

        current = store.get_session(session.id)
        assert current.metrics.decisions_count == 1
        assert current.decisions[0].confidence == 0.9
        assert current.decisions[0].alternatives == ["Server sessions"]

    def test_decision_confidence_out_of_range(self, store, session):
        with pytest.raises(ValidationError):
            store.add_decision(session.id, decision="d", reasoning="r", confidence=1.5)
        assert store.get_session(session.id).decisions == []

    def test_files_in_scope_is_a_union(self, store, session):
        store.add_files_to_scope(session.id, ["src/auth.py", "src/routes.py"])
        store.add_files_to_scope(session.id, ["src/auth.py", "tests/test_auth.py"])

        files = store.get_session(session.id).files_in_scope
        assert files == ["src/auth.py", "src/routes.py", "tests/test_auth.py"]

    def test_update_metrics_merges(self, store, session):
        store.update_metrics(session.id, lines_added=10)
        metrics = store.update_metrics(session.id, files_modified=2)
        assert metrics.lines_added == 10
        assert metrics.files_modified == 2
        assert metrics.lines_removed == 0

    def test_update_metrics_rejects_unknown(self, store, session):
        with pytest.raises(ValidationError, match="coverage"):
            store.update_metrics(session.id, coverage=80)

    def test_update_intent(self, store, session):
        store.update_intent(session.id, "Fix login redirect")
        current = store.get_session(session.id)
        assert current.current_intent == "Fix login redirect"
        assert current.task_description == "Add user authentication"

    def test_end_session_blocks_writes(self, store, session):
        ended = store.end_session(session.id)
        assert ended.end_time is not None
        assert store.is_expired(ended)

        with pytest.raises(SessionExpired):
            store.add_event_to_session(session.id, "evt_late")
        with pytest.raises(SessionExpired):
            store.add_decision(session.id, decision="d", reasoning="r")
        with pytest.raises(SessionExpired):
            store.end_session(session.id)

    def test_session_expires_after_a_day(self, store, session, clock):
        clock.advance(hours=23)
        store.add_event_to_session(session.id, "evt_ok")

        clock.advance(hours=2)
        assert store.is_expired(store.get_session(session.id))
        with pytest.raises(SessionExpired):
            store.add_event_to_session(session.id, "evt_late")

    def test_active_sessions(self, store, session, clock):
        other = store.create_session(owner_id="user-2", organization_id="org-1")
        store.end_session(other.id)

        active = store.get_active_sessions()
        assert [s.id for s in active] == [session.id]

        clock.advance(hours=25)
        assert store.get_active_sessions() == []

    def test_cleanup_expired_sessions(self, store, session, clock):
        ended = store.create_session(owner_id="user-2", organization_id="org-1")
        store.end_session(ended.id)

        assert store.cleanup_expired_sessions() == 0

        clock.advance(hours=25)
        assert store.cleanup_expired_sessions() == 1
        assert session.id not in [s.id for s in store.get_active_sessions()]
        # Snapshots survive eviction
        assert store.get_session(session.id) is not None

    def test_active_sessions_survive_a_restart(self, db, clock, store, session):
        ended = store.create_session(owner_id="user-2", organization_id="org-1")
        store.end_session(ended.id)

        reopened = SessionStore(db, clock=clock)
        assert [s.id for s in reopened.get_active_sessions()] == [session.id]

        clock.advance(hours=25)
        assert reopened.get_active_sessions() == []

    def test_cleanup_after_a_restart(self, db, clock, session):
        clock.advance(hours=25)
        reopened = SessionStore(db, clock=clock)

        assert reopened.cleanup_expired_sessions() == 1
        assert reopened.cleanup_expired_sessions() == 0
        assert SessionStore(db, clock=clock).cleanup_expired_sessions() == 0

    def test_cleanup_evicts_aged_out_sessions(self, store, session, clock):
        ended = store.create_session(owner_id="user-2", organization_id="org-1")
        store.end_session(ended.id)

        clock.advance(hours=25)
        store.cleanup_expired_sessions()
        assert store._live == {}
        # Ended and retired sessions still load from their snapshots
        assert store.get_session(ended.id).end_time is not None
        assert store.get_session(session.id) is not None

    def test_list_sessions_newest_first(self, store, clock):
        for i in range(3):
            store.create_session(owner_id=f"user-{i}", organization_id="org")
            clock.advance(minutes=1)

        sessions = store.list_sessions()
        assert [s.owner_id for s in sessions] == ["user-2", "user-1", "user-0"]
        assert len(store.list_sessions(limit=2)) == 2
