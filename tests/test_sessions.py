"""Tests for the prefixed session store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ops_agent.errors import SessionVersionConflict
from ops_agent.sessions import SessionStore, find_session, session_prefix


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _store(prefix="plt", ttl=60, directory=None, clock=None) -> SessionStore:
    return SessionStore(prefix, ttl_seconds=ttl, directory=directory, clock=clock or FakeClock())


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_create_then_get(self):
        store = _store()
        session = store.create_session({"x": 1})
        loaded = store.get_session(session.session_id)
        assert loaded is not None
        assert loaded.data == {"x": 1}
        assert loaded.created_at == session.created_at
        assert loaded.version == 1

    def test_ids_carry_prefix_and_are_unique(self):
        store = _store("qry")
        ids = {store.create_session({}).session_id for _ in range(50)}
        assert len(ids) == 50
        assert all(sid.startswith("qry-") for sid in ids)
        assert all(session_prefix(sid) == "qry" for sid in ids)

    def test_unknown_id_returns_none(self):
        assert _store().get_session("plt-0-deadbeef") is None

    def test_foreign_prefix_returns_none(self):
        other = _store("dvl")
        session = other.create_session({"x": 1})
        assert _store("plt").get_session(session.session_id) is None

    def test_update_merges_shallowly(self):
        store = _store()
        session = store.create_session({"x": 1, "nested": {"a": 1}})
        store.update_session(session.session_id, {"y": 2, "nested": {"b": 2}})
        assert store.get_session(session.session_id).data == {"x": 1, "y": 2, "nested": {"b": 2}}

    def test_update_bumps_activity_and_version(self):
        clock = FakeClock()
        store = _store(clock=clock)
        session = store.create_session({"x": 1})
        clock.advance(10)
        updated = store.update_session(session.session_id, {"y": 2})
        assert updated.last_activity_at == session.created_at + timedelta(seconds=10)
        assert updated.version == 2

    def test_update_unknown_returns_none(self):
        assert _store().update_session("plt-0-deadbeef", {"y": 2}) is None

    def test_replace_discards_old_keys(self):
        store = _store()
        session = store.create_session({"x": 1})
        store.replace_session(session.session_id, {"y": 2})
        assert store.get_session(session.session_id).data == {"y": 2}

    def test_delete_and_list(self):
        store = _store()
        a = store.create_session({"n": 1})
        b = store.create_session({"n": 2})
        assert sorted(store.list_sessions()) == sorted([a.session_id, b.session_id])
        assert store.delete_session(a.session_id) is True
        assert store.delete_session(a.session_id) is False
        assert store.list_sessions() == [b.session_id]

    def test_clear_all(self):
        store = _store()
        for n in range(3):
            store.create_session({"n": n})
        assert store.clear_all() == 3
        assert store.list_sessions() == []

    def test_returned_session_is_a_copy(self):
        store = _store()
        session = store.create_session({"items": [1]})
        session.data["items"].append(2)
        assert store.get_session(session.session_id).data == {"items": [1]}

    def test_invalid_prefix_rejected(self):
        with pytest.raises(ValueError):
            SessionStore("bad-prefix")


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


class TestExpiry:
    def test_expires_after_ttl(self):
        clock = FakeClock()
        store = _store(ttl=60, clock=clock)
        session = store.create_session({"x": 1})
        clock.advance(61)
        assert store.get_session(session.session_id) is None
        assert store.list_sessions() == []

    def test_activity_extends_lifetime(self):
        clock = FakeClock()
        store = _store(ttl=60, clock=clock)
        session = store.create_session({"x": 1})
        clock.advance(50)
        store.update_session(session.session_id, {"y": 2})
        clock.advance(50)
        assert store.get_session(session.session_id).data == {"x": 1, "y": 2}

    def test_expired_session_cannot_be_updated(self):
        clock = FakeClock()
        store = _store(ttl=60, clock=clock)
        session = store.create_session({"x": 1})
        clock.advance(120)
        assert store.update_session(session.session_id, {"y": 2}) is None


# ---------------------------------------------------------------------------
# Optimistic versioning
# ---------------------------------------------------------------------------


class TestVersioning:
    def test_matching_version_succeeds(self):
        store = _store()
        session = store.create_session({"x": 1})
        updated = store.update_session(session.session_id, {"x": 2}, expected_version=1)
        assert updated.version == 2

    def test_stale_version_raises(self):
        store = _store()
        session = store.create_session({"x": 1})
        store.update_session(session.session_id, {"x": 2})
        with pytest.raises(SessionVersionConflict) as exc_info:
            store.update_session(session.session_id, {"x": 3}, expected_version=1)
        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 2
        assert store.get_session(session.session_id).data == {"x": 2}

    def test_without_version_last_write_wins(self):
        store = _store()
        session = store.create_session({"x": 1})
        store.update_session(session.session_id, {"x": 2})
        store.update_session(session.session_id, {"x": 3})
        assert store.get_session(session.session_id).data == {"x": 3}


# ---------------------------------------------------------------------------
# File persistence and routing
# ---------------------------------------------------------------------------


class TestFilePersistence:
    def test_sessions_survive_a_new_store(self, tmp_path):
        clock = FakeClock()
        first = _store("dvl", directory=tmp_path, clock=clock)
        session = first.create_session({"repo": "https://example.com/docs.git"})

        path = tmp_path / "dvl-sessions" / f"{session.session_id}.json"
        assert path.is_file()

        second = _store("dvl", directory=tmp_path, clock=clock)
        assert second.get_session(session.session_id).data == {"repo": "https://example.com/docs.git"}
        assert second.list_sessions() == [session.session_id]

    def test_expired_file_is_removed_on_read(self, tmp_path):
        clock = FakeClock()
        store = _store("dvl", ttl=10, directory=tmp_path, clock=clock)
        session = store.create_session({})
        clock.advance(11)
        assert store.get_session(session.session_id) is None
        assert not (tmp_path / "dvl-sessions" / f"{session.session_id}.json").exists()

    def test_unreadable_file_is_treated_as_missing(self, tmp_path):
        store = _store("plt", directory=tmp_path)
        (tmp_path / "plt-sessions").mkdir()
        (tmp_path / "plt-sessions" / "plt-1-abcdef12.json").write_text("{not json")
        assert store.get_session("plt-1-abcdef12") is None


class TestRouting:
    def test_find_session_routes_by_prefix(self):
        clock = FakeClock()
        stores = [_store(p, clock=clock) for p in ("plt", "qry", "dvl")]
        session = stores[1].create_session({"intent": "what runs?"})

        found = find_session(session.session_id, stores)
        assert found is not None
        store, loaded = found
        assert store.prefix == "qry"
        assert loaded.data == {"intent": "what runs?"}

    def test_find_session_unknown_prefix(self):
        assert find_session("zzz-1-abcdef12", [_store("plt")]) is None

    def test_session_prefix_without_separator(self):
        assert session_prefix("opaque") == ""
