"""Tests for the session lifecycle: issue, validate, rotate, revoke, purge."""

import asyncio
import threading
import time
from datetime import timedelta

import pytest

from tokenward.service.errors import (
    ServerError,
    SessionInactiveError,
    SessionNotFoundError,
    TokenExpiredError,
    TokenInvalidError,
)
from tokenward.service.sessions import SessionLifecycleManager
from tokenward.service.tokens import TokenCodec
from tokenward.storage.errors import StoreUnavailable
from tokenward.storage.memory import MemoryStore
from tokenward.storage.models import RequestContext, Session, SessionState

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


class FlakyStore:
    """Delegates to a MemoryStore but fails the first ``failures`` calls of one op."""

    def __init__(self, inner: MemoryStore, op: str, failures: int):
        self._inner = inner
        self._op = op
        self.remaining = failures

    def __getattr__(self, name):
        target = getattr(self._inner, name)
        if name != self._op:
            return target

        def _wrapped(*args, **kwargs):
            if self.remaining > 0:
                self.remaining -= 1
                raise StoreUnavailable("connection reset")
            return target(*args, **kwargs)

        return _wrapped


class TestIssue:
    async def test_issued_access_token_subject_is_user(self, sessions, codec, user):
        issued = await sessions.issue(user, RequestContext("10.0.0.1", CHROME_WINDOWS))
        payload = codec.verify_access_token(issued.tokens.access_token)
        assert codec.subject(payload) == user.id

    async def test_issue_persists_enriched_active_session(self, sessions, memory_store, user, clock):
        issued = await sessions.issue(user, RequestContext("10.0.0.1", CHROME_WINDOWS))
        stored = memory_store.get_session(issued.session_id)
        assert stored.is_active
        assert stored.state(clock.now()) is SessionState.ACTIVE
        assert stored.device_info.browser == "Chrome"
        assert stored.device_info.os == "Windows"
        assert stored.location.country == "US"
        assert stored.ip_address == "10.0.0.1"

    async def test_expiries_are_independent_and_bounded_by_ceiling(self, sessions, memory_store, user, clock):
        issued = await sessions.issue(user)
        stored = memory_store.get_session(issued.session_id)
        now = clock.now()
        assert stored.access_token_expires_at == now + timedelta(minutes=15)
        assert stored.refresh_token_expires_at == now + timedelta(days=7)
        assert stored.expires_at == now + timedelta(days=30)
        assert issued.expires_at == stored.expires_at

    async def test_issue_without_context_uses_unknown_device(self, sessions, memory_store, user):
        issued = await sessions.issue(user)
        stored = memory_store.get_session(issued.session_id)
        assert stored.device_info.browser == "Unknown"
        assert stored.location.country == "Local"


class TestValidateAccess:
    async def test_validate_returns_session_and_user(self, sessions, user):
        issued = await sessions.issue(user)
        session, owner = await sessions.validate_access(issued.tokens.access_token)
        assert session.id == issued.session_id
        assert owner.id == user.id

    async def test_validate_updates_last_activity(self, sessions, memory_store, user, clock):
        issued = await sessions.issue(user)
        clock.advance(minutes=5)
        await sessions.validate_access(issued.tokens.access_token)
        assert memory_store.get_session(issued.session_id).last_activity == clock.now()

    async def test_expired_access_token(self, sessions, user, clock):
        issued = await sessions.issue(user)
        clock.advance(minutes=16)
        with pytest.raises(TokenExpiredError) as exc_info:
            await sessions.validate_access(issued.tokens.access_token)
        assert exc_info.value.token_kind == "access"

    async def test_revoked_session_is_not_found(self, sessions, user):
        issued = await sessions.issue(user)
        await sessions.revoke(issued.session_id)
        with pytest.raises(SessionNotFoundError):
            await sessions.validate_access(issued.tokens.access_token)

    async def test_inactive_owner_is_rejected(self, sessions, memory_store, user):
        issued = await sessions.issue(user)
        memory_store.set_user_active(user.id, False)
        with pytest.raises(SessionInactiveError):
            await sessions.validate_access(issued.tokens.access_token)

    async def test_refresh_token_cannot_authenticate(self, sessions, user):
        issued = await sessions.issue(user)
        with pytest.raises(TokenInvalidError):
            await sessions.validate_access(issued.tokens.refresh_token)


class TestRefresh:
    async def test_refresh_rotates_both_tokens(self, sessions, memory_store, user):
        issued = await sessions.issue(user)
        pair = await sessions.refresh(issued.tokens.refresh_token)
        assert pair.access_token != issued.tokens.access_token
        assert pair.refresh_token != issued.tokens.refresh_token
        stored = memory_store.get_session(issued.session_id)
        assert stored.refresh_token == pair.refresh_token
        assert stored.access_token == pair.access_token

    async def test_refresh_succeeds_at_most_once(self, sessions, user):
        issued = await sessions.issue(user)
        await sessions.refresh(issued.tokens.refresh_token)
        with pytest.raises(SessionNotFoundError):
            await sessions.refresh(issued.tokens.refresh_token)

    async def test_superseded_access_token_stops_working(self, sessions, user):
        issued = await sessions.issue(user)
        pair = await sessions.refresh(issued.tokens.refresh_token)
        with pytest.raises(SessionNotFoundError):
            await sessions.validate_access(issued.tokens.access_token)
        session, _ = await sessions.validate_access(pair.access_token)
        assert session.id == issued.session_id

    async def test_refresh_after_access_expiry(self, sessions, user, clock):
        issued = await sessions.issue(user)
        clock.advance(hours=1)
        with pytest.raises(TokenExpiredError):
            await sessions.validate_access(issued.tokens.access_token)
        pair = await sessions.refresh(issued.tokens.refresh_token)
        session, _ = await sessions.validate_access(pair.access_token)
        assert session.id == issued.session_id

    async def test_expired_refresh_token(self, sessions, user, clock):
        issued = await sessions.issue(user)
        clock.advance(days=7, seconds=1)
        with pytest.raises(TokenExpiredError) as exc_info:
            await sessions.refresh(issued.tokens.refresh_token)
        assert exc_info.value.token_kind == "refresh"

    async def test_inactive_owner_cannot_refresh(self, sessions, memory_store, user):
        issued = await sessions.issue(user)
        memory_store.set_user_active(user.id, False)
        with pytest.raises(SessionInactiveError):
            await sessions.refresh(issued.tokens.refresh_token)
        stored = memory_store.get_session(issued.session_id)
        assert stored.refresh_token == issued.tokens.refresh_token

    async def test_refresh_of_revoked_session(self, sessions, user):
        issued = await sessions.issue(user)
        await sessions.revoke(issued.session_id)
        with pytest.raises(SessionNotFoundError):
            await sessions.refresh(issued.tokens.refresh_token)

    async def test_rotation_never_extends_ceiling(self, memory_store, codec, user, clock):
        manager = SessionLifecycleManager(
            memory_store, codec, session_ttl=timedelta(days=10), clock=clock.now
        )
        issued = await manager.issue(user)
        clock.advance(days=6)
        pair = await manager.refresh(issued.tokens.refresh_token)
        stored = memory_store.get_session(issued.session_id)
        assert stored.expires_at == issued.expires_at
        assert pair.refresh_token_expires_at == issued.expires_at
        assert stored.refresh_token_expires_at <= stored.expires_at

    async def test_session_past_ceiling_cannot_refresh(self, memory_store, codec, user, clock):
        manager = SessionLifecycleManager(
            memory_store, codec, session_ttl=timedelta(days=10), clock=clock.now
        )
        issued = await manager.issue(user)
        clock.advance(days=6)
        pair = await manager.refresh(issued.tokens.refresh_token)
        clock.advance(days=4, seconds=1)
        with pytest.raises((SessionNotFoundError, TokenExpiredError)):
            await manager.refresh(pair.refresh_token)

    async def test_subject_mismatch_is_invalid(self, sessions, memory_store, codec, user, clock, fast_hasher):
        other = memory_store.create_user("mallory@example.com", fast_hasher.hash("x" * 12))
        now = clock.now()
        forged = Session(
            id=Session.new_id(),
            user_id=user.id,
            access_token=codec.generate_access_token({"sub": user.id}),
            refresh_token=codec.generate_refresh_token({"sub": other.id}),
            access_token_expires_at=now + timedelta(minutes=15),
            refresh_token_expires_at=now + timedelta(days=7),
            expires_at=now + timedelta(days=30),
            last_activity=now,
            created_at=now,
            updated_at=now,
        )
        memory_store.create_session(forged)
        with pytest.raises(TokenInvalidError):
            await sessions.refresh(forged.refresh_token)

    def test_concurrent_refresh_has_single_winner(self, sessions, user):
        issued = asyncio.run(sessions.issue(user))
        token = issued.tokens.refresh_token
        barrier = threading.Barrier(8)
        outcomes = []
        outcomes_lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                asyncio.run(sessions.refresh(token))
                result = "ok"
            except SessionNotFoundError:
                result = "not_found"
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("not_found") == 7


class TestRevoke:
    async def test_revoke_is_idempotent(self, sessions, memory_store, user, clock):
        issued = await sessions.issue(user)
        await sessions.revoke(issued.session_id)
        await sessions.revoke(issued.session_id)
        stored = memory_store.get_session(issued.session_id)
        assert not stored.is_active
        assert stored.state(clock.now()) is SessionState.TERMINAL
        assert stored.deactivated_at == clock.now()

    async def test_revoke_unknown_session_is_noop(self, sessions):
        await sessions.revoke("does-not-exist")

    async def test_multi_device_revoke_all_except_current(self, sessions, user):
        device_a = await sessions.issue(user, RequestContext("10.0.0.1", CHROME_WINDOWS))
        assert await sessions.active_sessions_count(user.id) == 1
        await sessions.issue(user, RequestContext("150.0.0.9", SAFARI_IPHONE))
        assert await sessions.active_sessions_count(user.id) == 2

        revoked = await sessions.revoke_all(user.id, except_session_id=device_a.session_id)

        assert revoked == 1
        remaining = await sessions.get_active_sessions(user.id)
        assert [s.id for s in remaining] == [device_a.session_id]

    async def test_revoke_all_without_exception(self, sessions, user):
        for _ in range(3):
            await sessions.issue(user)
        assert await sessions.revoke_all(user.id) == 3
        assert await sessions.active_sessions_count(user.id) == 0

    async def test_active_sessions_sorted_by_last_activity(self, sessions, user, clock):
        first = await sessions.issue(user)
        clock.advance(minutes=1)
        second = await sessions.issue(user)
        clock.advance(minutes=1)
        await sessions.validate_access(first.tokens.access_token)
        listed = await sessions.get_active_sessions(user.id)
        assert [s.id for s in listed] == [first.session_id, second.session_id]

    async def test_get_session_is_scoped_to_owner(self, sessions, memory_store, user, fast_hasher):
        other = memory_store.create_user("bob@example.com", fast_hasher.hash("x" * 12))
        issued = await sessions.issue(user)
        assert (await sessions.get_session(issued.session_id, user.id)).id == issued.session_id
        assert await sessions.get_session(issued.session_id, other.id) is None


class TestPurge:
    async def test_purge_removes_terminal_and_expired(self, sessions, memory_store, user, clock):
        kept = await sessions.issue(user)
        revoked = await sessions.issue(user)
        await sessions.revoke(revoked.session_id)

        assert await sessions.purge_expired() == 1
        assert memory_store.get_session(revoked.session_id) is None
        assert memory_store.get_session(kept.session_id) is not None

        clock.advance(days=8)
        assert await sessions.purge_expired() == 1
        assert memory_store.get_session(kept.session_id) is None

    async def test_purge_is_repeatable(self, sessions, user):
        issued = await sessions.issue(user)
        await sessions.revoke(issued.session_id)
        assert await sessions.purge_expired() == 1
        assert await sessions.purge_expired() == 0


class TestStoreFailures:
    async def test_transient_failure_is_retried_once(self, memory_store, codec, user, clock):
        flaky = FlakyStore(memory_store, "create_session", failures=1)
        manager = SessionLifecycleManager(flaky, codec, clock=clock.now)
        issued = await manager.issue(user)
        assert memory_store.get_session(issued.session_id) is not None

    async def test_persistent_failure_surfaces_as_server_error(self, memory_store, codec, user, clock):
        flaky = FlakyStore(memory_store, "find_by_access_token", failures=2)
        manager = SessionLifecycleManager(flaky, codec, clock=clock.now)
        issued = await manager.issue(user)
        with pytest.raises(ServerError) as exc_info:
            await manager.validate_access(issued.tokens.access_token)
        assert "connection reset" not in exc_info.value.message


class TestShortAccessTtl:
    async def test_access_expires_while_refresh_still_works(self, fast_hasher):
        store = MemoryStore()
        owner = store.create_user("ttl@example.com", fast_hasher.hash("x" * 12))
        codec = TokenCodec(
            access_secret="short-ttl-access-secret-0123456789abcdef",
            refresh_secret="short-ttl-refresh-secret-0123456789abcde",
            access_ttl=timedelta(seconds=1),
            refresh_ttl=timedelta(minutes=5),
        )
        manager = SessionLifecycleManager(store, codec, session_ttl=timedelta(hours=1))
        issued = await manager.issue(owner)

        time.sleep(1.2)

        with pytest.raises(TokenExpiredError):
            await manager.validate_access(issued.tokens.access_token)
        pair = await manager.refresh(issued.tokens.refresh_token)
        session, _ = await manager.validate_access(pair.access_token)
        assert session.id == issued.session_id
