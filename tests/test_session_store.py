"""Tests for the session store, its sliding TTL, per-user cap and binding checks."""

from dataclasses import replace
from datetime import timedelta

import pytest

from orgauth.storage.memory_cache import MemoryCache
from orgauth.storage.models import Role, Session, User, utcnow
from orgauth.storage.revocation import RevocationStore
from orgauth.storage.sessions import (
    IP_MISMATCH,
    SESSION_NOT_FOUND,
    USER_AGENT_MISMATCH,
    SessionStore,
)

TTL = 3600


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def store(cache):
    return SessionStore(cache, ttl_seconds=TTL, max_sessions=3)


@pytest.fixture
def user():
    return User(
        id="user-1",
        email="manager@example.com",
        organization_id="org-1",
        password_hash="x",
        role=Role.MANAGER,
        assigned_departments=["d1"],
    )


def _session(user, *, age_minutes: int = 0, ip="10.0.0.1", agent="pytest"):
    session = Session.new(user, ip_address=ip, user_agent=agent)
    stamp = utcnow() - timedelta(minutes=age_minutes)
    return replace(session, created_at=stamp, last_activity_at=stamp)


class TestCreateAndValidate:
    async def test_created_session_round_trips(self, store, user):
        session = _session(user)
        await store.create(session)

        loaded = await store.get(user.id, session.id)
        assert loaded is not None
        assert loaded.role is Role.MANAGER
        assert loaded.assigned_departments == ["d1"]
        assert loaded.ip_address == "10.0.0.1"

    async def test_key_layout(self, store):
        assert store.session_key("u", "s") == "session:u:s"

    async def test_validate_accepts_matching_binding(self, store, user):
        session = _session(user)
        await store.create(session)

        result = await store.validate(user.id, session.id, "10.0.0.1", "pytest")
        assert result.valid
        assert result.session.id == session.id

    async def test_validate_unknown_session(self, store, user):
        result = await store.validate(user.id, "nope", "10.0.0.1", "pytest")

        assert not result.valid
        assert result.reason == SESSION_NOT_FOUND

    async def test_validate_different_ip(self, store, user):
        session = _session(user)
        await store.create(session)

        result = await store.validate(user.id, session.id, "10.9.9.9", "pytest")
        assert result.reason == IP_MISMATCH

    async def test_validate_different_user_agent(self, store, user):
        session = _session(user)
        await store.create(session)

        result = await store.validate(user.id, session.id, "10.0.0.1", "curl/8")
        assert result.reason == USER_AGENT_MISMATCH

    async def test_ip_is_checked_before_user_agent(self, store, user):
        session = _session(user)
        await store.create(session)

        result = await store.validate(user.id, session.id, "10.9.9.9", "curl/8")
        assert result.reason == IP_MISMATCH


class TestSessionCap:
    async def test_fourth_session_evicts_least_recently_active(self, store, user):
        oldest = _session(user, age_minutes=30)
        middle = _session(user, age_minutes=20)
        newer = _session(user, age_minutes=10)
        for session in (oldest, middle, newer):
            await store.create(session)

        evicted = []
        newest = _session(user)
        await store.create(newest, on_evicted=evicted.append)

        remaining = await store.list_by_user(user.id)
        assert [s.id for s in remaining] == [newest.id, newer.id, middle.id]
        assert [s.id for s in evicted] == [oldest.id]
        assert await store.get(user.id, oldest.id) is None

    async def test_cap_is_per_user(self, store, user):
        other = replace(user, id="user-2")
        for _ in range(3):
            await store.create(_session(user))
        await store.create(_session(other))

        assert len(await store.list_by_user(user.id)) == 3
        assert len(await store.list_by_user(other.id)) == 1


class TestExpiry:
    async def test_session_expires_after_ttl(self, store, clock, user):
        session = _session(user)
        await store.create(session)

        clock.advance(TTL + 1)

        assert await store.get(user.id, session.id) is None
        assert await store.list_by_user(user.id) == []

    async def test_touch_slides_the_ttl(self, store, clock, user):
        session = _session(user)
        await store.create(session)

        clock.advance(TTL * 0.8)
        touched = await store.touch(user.id, session.id)
        clock.advance(TTL * 0.8)

        assert touched is not None
        assert touched.last_activity_at >= session.last_activity_at
        assert await store.get(user.id, session.id) is not None

    async def test_touch_does_not_resurrect_deleted_session(self, store, user):
        session = _session(user)
        await store.create(session)
        await store.delete(user.id, session.id)

        assert await store.touch(user.id, session.id) is None
        assert await store.get(user.id, session.id) is None

    async def test_list_prunes_expired_index_members(self, store, cache, clock, user):
        first = _session(user, age_minutes=5)
        await store.create(first)
        clock.advance(TTL / 2)
        second = _session(user)
        await store.create(second)

        clock.advance(TTL / 2 + 1)

        assert [s.id for s in await store.list_by_user(user.id)] == [second.id]
        assert await cache.smembers(store.index_key(user.id)) == {second.id}


class TestDeletion:
    async def test_delete_reports_whether_anything_was_removed(self, store, user):
        session = _session(user)
        await store.create(session)

        assert await store.delete(user.id, session.id)
        assert not await store.delete(user.id, session.id)

    async def test_delete_all_can_keep_the_current_session(self, store, user):
        keep = _session(user)
        await store.create(keep)
        await store.create(_session(user))
        await store.create(_session(user))

        removed = await store.delete_all(user.id, except_session_id=keep.id)

        assert removed == 2
        assert [s.id for s in await store.list_by_user(user.id)] == [keep.id]


class TestRevocationStore:
    async def test_revoked_token_is_reported_until_its_expiry(self, cache, clock):
        revocations = RevocationStore(cache)

        assert await revocations.revoke("tid", 60)
        assert await revocations.is_revoked("tid")
        assert not await revocations.is_revoked("other")

        clock.advance(61)
        assert not await revocations.is_revoked("tid")

    async def test_already_expired_token_is_not_stored(self, cache):
        revocations = RevocationStore(cache)

        assert not await revocations.revoke("tid", 0)
        assert not await revocations.is_revoked("tid")
