import pytest

from tokenward.service.auth import AuthService
from tokenward.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    ValidationError,
)
from tokenward.storage.models import RequestContext

PASSWORD = "CorrectHorse9!"


@pytest.fixture
def auth(memory_store, sessions, lock_guard, fast_hasher):
    return AuthService(memory_store, sessions, lock_guard, password_hasher=fast_hasher)


class TestRegister:
    async def test_register_opens_session(self, auth, memory_store, codec):
        user, issued = await auth.register("New@Example.com", "longenough1")
        assert user.email == "new@example.com"
        assert user.password_hash != "longenough1"
        payload = codec.verify_access_token(issued.tokens.access_token)
        assert codec.subject(payload) == user.id
        assert memory_store.get_session(issued.session_id).user_id == user.id

    async def test_short_password_rejected(self, auth):
        with pytest.raises(ValidationError):
            await auth.register("short@example.com", "seven77")

    async def test_duplicate_email_conflicts(self, auth, user):
        with pytest.raises(ConflictError):
            await auth.register("ALICE@example.com", "longenough1")


class TestLogin:
    async def test_login_success_resets_attempts(self, auth, memory_store, lock_guard, user, clock):
        lock_guard.record_failure(user)
        logged_in, issued = await auth.login(
            "alice@example.com", PASSWORD, RequestContext("10.1.1.1", "Firefox/121.0")
        )
        stored = memory_store.get_user(user.id)
        assert stored.login_attempts == 0
        assert stored.last_login == clock.now()
        assert logged_in.last_login == clock.now()
        assert memory_store.get_session(issued.session_id).device_info.browser == "Firefox"

    async def test_unknown_email_and_wrong_password_look_the_same(self, auth, user):
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth.login("alice@example.com", "wrong-password")
        assert unknown.value.status_code == wrong.value.status_code == 401
        assert unknown.value.message == wrong.value.message
        assert unknown.value.error_code == wrong.value.error_code

    async def test_five_failures_lock_even_correct_password(self, auth, memory_store, user):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("alice@example.com", "wrong-password")
        with pytest.raises(AccountLockedError) as exc_info:
            await auth.login("alice@example.com", PASSWORD)
        assert exc_info.value.lock_until == memory_store.get_user(user.id).lock_until

    async def test_locked_login_does_not_count_attempts(self, auth, memory_store, user):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("alice@example.com", "wrong-password")
        with pytest.raises(AccountLockedError):
            await auth.login("alice@example.com", "wrong-password")
        assert memory_store.get_user(user.id).login_attempts == 5

    async def test_login_works_after_lock_expires(self, auth, user, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("alice@example.com", "wrong-password")
        clock.advance(hours=2, minutes=1)
        logged_in, _ = await auth.login("alice@example.com", PASSWORD)
        assert logged_in.login_attempts == 0

    async def test_inactive_account_rejected(self, auth, memory_store, user):
        memory_store.set_user_active(user.id, False)
        with pytest.raises(AccountInactiveError):
            await auth.login("alice@example.com", PASSWORD)


def test_verify_password_handles_bad_hashes(auth):
    assert auth.verify_password(None, "x") is False
    assert auth.verify_password("not-an-argon2-hash", "x") is False
    assert auth.verify_password(auth.hash_password("secret-pass"), "secret-pass") is True
