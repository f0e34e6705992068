"""Tests for the session adapter and the in-memory store behind it."""

from datetime import datetime, timedelta, timezone

import pytest

from examrevise.service.errors import InternalError, NotFoundError
from examrevise.service.sessions import SessionStore
from examrevise.storage.errors import ConstraintViolation
from examrevise.storage.memory import MemoryStore
from examrevise.storage.models import DeviceProfile

TTL = timedelta(days=7)
LAPTOP = DeviceProfile(browser="Chrome", os="Windows", device="Desktop")
PHONE = DeviceProfile(browser="Safari", os="iOS", device="Mobile", mobile=True)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


class BrokenRecords:
    """Record store whose every call fails."""

    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise RuntimeError(f"{name} unavailable")

        return _fail


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sessions(store, clock):
    return SessionStore(store, ttl=TTL, clock=clock)


def _open(sessions, token, device=LAPTOP, user_id=1, method="email"):
    return sessions.create(user_id, token, device, "203.0.113.1", "pytest-agent", method)


class TestCreate:
    def test_create_persists_active_session(self, sessions, clock):
        session = _open(sessions, "tok-1")
        assert session.is_active is True
        assert session.expires_at == clock.now + TTL
        assert session.last_activity == clock.now
        assert sessions.find_active("tok-1").session_id == session.session_id

    def test_create_honours_explicit_expiry(self, sessions, clock):
        expires = clock.now + timedelta(hours=2)
        session = sessions.create(
            1, "tok-1", LAPTOP, None, None, "oauth", expires_at=expires
        )
        assert session.expires_at == expires
        assert session.login_method == "oauth"

    def test_duplicate_token_rejected_by_store(self, store, sessions):
        _open(sessions, "tok-1")
        with pytest.raises(InternalError) as excinfo:
            _open(sessions, "tok-1")
        assert isinstance(excinfo.value.__cause__, ConstraintViolation)

    def test_store_failure_is_internal_error(self, clock):
        broken = SessionStore(BrokenRecords(), ttl=TTL, clock=clock)
        with pytest.raises(InternalError) as excinfo:
            _open(broken, "tok-1")
        assert excinfo.value.message == "Failed to create session. Please try again."

    def test_returned_session_is_a_copy(self, store, sessions):
        session = _open(sessions, "tok-1")
        session.is_active = False
        session.device_info.browser = "Mutated"
        stored = sessions.find_active("tok-1")
        assert stored.is_active is True
        assert stored.device_info.browser == "Chrome"


class TestInvalidate:
    def test_invalidate_is_idempotent(self, sessions):
        _open(sessions, "tok-1")
        assert sessions.invalidate("tok-1") is True
        assert sessions.invalidate("tok-1") is True
        with pytest.raises(NotFoundError):
            sessions.find_active("tok-1")

    def test_invalidate_unknown_token_is_silent(self, sessions):
        assert sessions.invalidate("never-issued") is True

    def test_invalidate_reports_store_errors_without_raising(self, clock):
        assert SessionStore(BrokenRecords(), ttl=TTL, clock=clock).invalidate("tok-1") is False

    @pytest.mark.parametrize("count", [0, 1, 3])
    def test_invalidate_others_returns_count(self, sessions, count):
        for i in range(count):
            _open(sessions, f"tok-{i}")
        _open(sessions, "other-user", user_id=2)
        assert sessions.invalidate_others(1) == count
        assert sessions.list_active(1) == []
        assert len(sessions.list_active(2)) == 1

    def test_invalidate_others_keeps_excepted_token(self, sessions):
        _open(sessions, "keep")
        _open(sessions, "drop", device=PHONE)
        assert sessions.invalidate_others(1, except_token="keep") == 1
        assert [s.session_token for s in sessions.list_active(1)] == ["keep"]

    def test_invalidate_others_swallows_store_errors(self, clock):
        assert SessionStore(BrokenRecords(), ttl=TTL, clock=clock).invalidate_others(1) == 0


class TestLookup:
    def test_expired_session_is_not_active(self, sessions, clock):
        _open(sessions, "tok-1")
        clock.now = clock.now + TTL
        with pytest.raises(NotFoundError):
            sessions.find_active("tok-1")
        assert sessions.list_active(1) == []

    def test_touch_updates_last_activity(self, sessions, clock):
        _open(sessions, "tok-1")
        clock.now = clock.now + timedelta(minutes=30)
        sessions.touch("tok-1")
        assert sessions.find_active("tok-1").last_activity == clock.now

    def test_touch_swallows_store_errors(self, clock):
        SessionStore(BrokenRecords(), ttl=TTL, clock=clock).touch("tok-1")

    def test_list_active_orders_by_recent_activity(self, sessions, clock):
        _open(sessions, "older")
        clock.now = clock.now + timedelta(minutes=5)
        _open(sessions, "newer", device=PHONE)
        assert [s.session_token for s in sessions.list_active(1)] == ["newer", "older"]


class TestPurge:
    def test_purge_removes_only_sessions_past_grace(self, sessions, store, clock):
        _open(sessions, "old")
        clock.now = clock.now + timedelta(days=3)
        _open(sessions, "recent")
        clock.now = clock.now + TTL + timedelta(hours=1)
        # "old" expired three days ago, "recent" one hour ago
        assert sessions.purge_expired(timedelta(hours=24)) == 1
        assert store.get_active_session("recent", clock.now) is None
        assert "recent" in store._token_index
        assert "old" not in store._token_index

    def test_purge_with_nothing_expired(self, sessions):
        _open(sessions, "tok-1")
        assert sessions.purge_expired() == 0
