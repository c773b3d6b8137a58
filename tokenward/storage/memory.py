from __future__ import annotations

import copy
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from tokenward.logging import get_logger
from tokenward.storage.common import LimitResult
from tokenward.storage.errors import ConstraintViolation, StoreConflict
from tokenward.storage.models import Session, User


class MemoryStore:
    """In-process session and user store.

    Every operation runs under one re-entrant lock, which makes each call
    atomic with respect to every other call on the same instance. Records are
    copied on the way in and out so callers can never mutate stored state
    behind the lock's back.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self._by_access: Dict[str, str] = {}
        self._by_refresh: Dict[str, str] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # RLock so helpers can nest inside public operations
        self._data_lock = threading.RLock()

    def _now(self) -> datetime:
        return self._clock()

    # user / auth
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                role=role,
                is_active=is_active,
                created_at=self._now(),
            )
            self.users[user.id] = user
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.deepcopy(user) if user else None

    def set_user_active(self, user_id: str, is_active: bool) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.is_active = is_active

    def increment_login_attempts(
        self,
        user_id: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            if user.lock_until is not None and user.lock_until <= now:
                # Previous lock ran out: start a fresh count
                user.login_attempts = 1
                user.lock_until = None
            else:
                user.login_attempts += 1
            if user.login_attempts >= threshold and not user.locked_at(now):
                user.lock_until = lock_until
            return copy.deepcopy(user)

    def reset_login_attempts(self, user_id: str) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            user.login_attempts = 0
            user.lock_until = None
            return copy.deepcopy(user)

    def record_login(self, user_id: str, when: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login = when

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"field": "id"})
            if session.refresh_token in self._by_refresh:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token"}
                )
            stored = copy.deepcopy(session)
            self.sessions[stored.id] = stored
            self._by_access[stored.access_token] = stored.id
            self._by_refresh[stored.refresh_token] = stored.id
            return copy.deepcopy(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.deepcopy(sess) if sess else None

    def find_active_by_user(self, user_id: str) -> List[Session]:
        now = self._now()
        with self._data_lock:
            live = [
                copy.deepcopy(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active and s.expires_at > now
            ]
        return sorted(live, key=lambda s: s.last_activity, reverse=True)

    def find_by_access_token(self, access_token: str) -> Optional[Session]:
        now = self._now()
        with self._data_lock:
            sess = self.sessions.get(self._by_access.get(access_token, ""))
            if (
                not sess
                or not sess.is_active
                or sess.access_token_expires_at <= now
                or sess.expires_at <= now
            ):
                return None
            return copy.deepcopy(sess)

    def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        now = self._now()
        with self._data_lock:
            sess = self.sessions.get(self._by_refresh.get(refresh_token, ""))
            if (
                not sess
                or not sess.is_active
                or sess.refresh_token_expires_at <= now
                or sess.expires_at <= now
            ):
                return None
            return copy.deepcopy(sess)

    def update_activity(self, session_id: str) -> None:
        now = self._now()
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return
            sess.last_activity = now
            sess.updated_at = now

    def rotate_tokens(
        self,
        session_id: str,
        expected_refresh_token: str,
        new_access_token: str,
        new_refresh_token: str,
        access_token_expires_at: datetime,
        refresh_token_expires_at: datetime,
    ) -> Session:
        now = self._now()
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active or sess.refresh_token != expected_refresh_token:
                raise StoreConflict(
                    "refresh token already rotated or session inactive",
                    {"session_id": session_id},
                )
            if new_refresh_token in self._by_refresh:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token"}
                )
            self._by_access.pop(sess.access_token, None)
            self._by_refresh.pop(sess.refresh_token, None)
            sess.access_token = new_access_token
            sess.refresh_token = new_refresh_token
            sess.access_token_expires_at = access_token_expires_at
            sess.refresh_token_expires_at = refresh_token_expires_at
            sess.last_activity = now
            sess.updated_at = now
            self._by_access[new_access_token] = sess.id
            self._by_refresh[new_refresh_token] = sess.id
            return copy.deepcopy(sess)

    def deactivate(self, session_id: str) -> bool:
        now = self._now()
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            self._deactivate_locked(sess, now)
            return True

    def deactivate_all_for_user(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        now = self._now()
        with self._data_lock:
            targets = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active and s.id != except_session_id
            ]
            for sess in targets:
                self._deactivate_locked(sess, now)
            return len(targets)

    def _deactivate_locked(self, sess: Session, now: datetime) -> None:
        sess.is_active = False
        sess.deactivated_at = now
        sess.updated_at = now

    def delete_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = now or self._now()
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if not s.is_active
                or s.expires_at < cutoff
                or s.refresh_token_expires_at < cutoff
            ]
            for sid in stale:
                sess = self.sessions.pop(sid)
                self._by_access.pop(sess.access_token, None)
                self._by_refresh.pop(sess.refresh_token, None)
            if stale:
                self.logger.info("sessions_purged", count=len(stale))
            return len(stale)


class MemoryCounterStore:
    """Per-process fixed-window counters.

    Correct for a single instance; separate processes each keep their own
    windows, so a multi-instance deployment should use ``RedisCache``.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        self._lock = threading.Lock()
        # key -> (window reset timestamp ms, count)
        self._counters: Dict[str, tuple[int, int]] = {}

    def hit(self, key: str, limit: int, window_ms: int) -> LimitResult:
        now_ms = int(self._clock() * 1000)
        with self._lock:
            reset_at, count = self._counters.get(key, (now_ms + window_ms, 0))
            if now_ms >= reset_at:
                reset_at, count = now_ms + window_ms, 0
            count += 1
            self._counters[key] = (reset_at, count)
            self._sweep(now_ms)
        allowed = count <= limit
        return LimitResult(
            allowed=allowed,
            count=count,
            limit=limit,
            retry_after_seconds=0 if allowed else window_ms // 1000,
            reset_at_ms=reset_at,
        )

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()

    def _sweep(self, now_ms: int) -> None:
        # Bound memory: drop windows that have already closed
        if len(self._counters) < 10000:
            return
        for key in [k for k, (reset_at, _) in self._counters.items() if reset_at <= now_ms]:
            self._counters.pop(key, None)
