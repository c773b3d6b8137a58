from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from tokenward.storage.models import Session, User


@dataclass(frozen=True)
class LimitResult:
    allowed: bool
    count: int
    limit: int
    retry_after_seconds: int
    reset_at_ms: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class SessionStore(Protocol):
    """Persistence for session records.

    Every mutation is a single-record atomic operation at the store boundary;
    callers never read-modify-write a session.
    """

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_active_by_user(self, user_id: str) -> List[Session]: ...

    def find_by_access_token(self, access_token: str) -> Optional[Session]: ...

    def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def update_activity(self, session_id: str) -> None: ...

    def rotate_tokens(
        self,
        session_id: str,
        expected_refresh_token: str,
        new_access_token: str,
        new_refresh_token: str,
        access_token_expires_at: datetime,
        refresh_token_expires_at: datetime,
    ) -> Session: ...

    def deactivate(self, session_id: str) -> bool: ...

    def deactivate_all_for_user(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def delete_expired(self, now: Optional[datetime] = None) -> int: ...


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def increment_login_attempts(
        self,
        user_id: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> User: ...

    def reset_login_attempts(self, user_id: str) -> User: ...

    def record_login(self, user_id: str, when: datetime) -> None: ...


class CounterStore(Protocol):
    """Fixed-window request counter used by admission control."""

    def hit(self, key: str, limit: int, window_ms: int) -> LimitResult: ...


class AuthStore(SessionStore, UserStore, Protocol):
    """A backend that holds both sessions and users."""

