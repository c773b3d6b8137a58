from __future__ import annotations

from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokenward.logging import get_logger
from tokenward.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    ValidationError,
)
from tokenward.service.lockout import AccountLockGuard
from tokenward.service.sessions import SessionLifecycleManager
from tokenward.storage.common import UserStore
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import IssuedSession, RequestContext, User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class AuthService:
    """Credential login and registration on top of the session lifecycle."""

    def __init__(
        self,
        store: UserStore,
        sessions: SessionLifecycleManager,
        lock_guard: AccountLockGuard,
        *,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.lock_guard = lock_guard
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        # Verified against on unknown emails so both failure paths do the same work
        self._dummy_hash = self._pwd_hasher.hash("tokenward-timing-equaliser")
        self.logger = logger

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unverifiable")
            return False

    async def register(
        self,
        email: str,
        password: str,
        context: Optional[RequestContext] = None,
    ) -> Tuple[User, IssuedSession]:
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        try:
            user = self.store.create_user(email, self.hash_password(password))
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from None
        self.logger.info("user_registered", user_id=user.id)
        issued = await self.sessions.issue(user, context)
        return user, issued

    async def login(
        self,
        email: str,
        password: str,
        context: Optional[RequestContext] = None,
    ) -> Tuple[User, IssuedSession]:
        user = self.store.get_user_by_email(email)
        if not user:
            self.verify_password(self._dummy_hash, password)
            self.logger.info("login_failed", reason="invalid_credentials")
            raise InvalidCredentialsError()

        now = self.lock_guard.now()
        if self.lock_guard.is_locked(user, now):
            self.logger.info("login_rejected_locked", user_id=user.id)
            raise AccountLockedError(lock_until=user.lock_until)
        if not user.is_active:
            raise AccountInactiveError("account is deactivated")

        if not self.verify_password(user.password_hash, password):
            self.lock_guard.record_failure(user)
            self.logger.info("login_failed", user_id=user.id, reason="invalid_credentials")
            raise InvalidCredentialsError()

        user = self.lock_guard.record_success(user)
        self.store.record_login(user.id, now)
        user.last_login = now
        issued = await self.sessions.issue(user, context)
        self.logger.info("login_succeeded", user_id=user.id, session_id=issued.session_id)
        return user, issued
