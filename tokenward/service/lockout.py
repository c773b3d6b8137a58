from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from tokenward.logging import get_logger
from tokenward.storage.common import UserStore
from tokenward.storage.models import User, is_locked

logger = get_logger(__name__)

DEFAULT_LOCK_THRESHOLD = 5
DEFAULT_LOCK_DURATION = timedelta(hours=2)


class AccountLockGuard:
    """Brute-force protection backed by atomic store counters.

    The guard never reads-modifies-writes a user: increments and resets are
    single store operations, and the locked state is always derived from
    ``lock_until`` so an expired lock needs no explicit unlock.
    """

    def __init__(
        self,
        store: UserStore,
        *,
        threshold: int = DEFAULT_LOCK_THRESHOLD,
        lock_duration: timedelta = DEFAULT_LOCK_DURATION,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("lock threshold must be at least 1")
        self.store = store
        self.threshold = threshold
        self.lock_duration = lock_duration
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    def record_failure(self, user: User) -> User:
        now = self.now()
        lock_until = now + self.lock_duration
        updated = self.store.increment_login_attempts(
            user.id,
            threshold=self.threshold,
            lock_until=lock_until,
            now=now,
        )
        if updated.lock_until == lock_until:
            logger.warning(
                "account_locked",
                user_id=user.id,
                login_attempts=updated.login_attempts,
                lock_until=lock_until.isoformat(),
            )
        else:
            logger.info(
                "login_failure_recorded",
                user_id=user.id,
                login_attempts=updated.login_attempts,
            )
        return updated

    def record_success(self, user: User) -> User:
        return self.store.reset_login_attempts(user.id)

    def is_locked(self, user: User, now: Optional[datetime] = None) -> bool:
        return is_locked(user.lock_until, now or self.now())

    def security_status(self, user: User) -> Dict[str, Any]:
        """Summarise a user's lockout state for the security-status endpoint."""

        locked = self.is_locked(user)
        if locked:
            level = "locked"
        elif user.login_attempts >= 3:
            level = "danger"
        elif user.login_attempts > 0:
            level = "warning"
        else:
            level = "good"
        return {
            "login_attempts": user.login_attempts,
            "is_locked": locked,
            "lock_until": user.lock_until if locked else None,
            "last_login": user.last_login,
            "is_active": user.is_active,
            "security_level": level,
        }
