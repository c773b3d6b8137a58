from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from tokenward.logging import get_logger, mask_token
from tokenward.service.devices import enrich
from tokenward.service.errors import (
    ServerError,
    SessionInactiveError,
    SessionNotFoundError,
    TokenInvalidError,
)
from tokenward.service.tokens import TokenCodec
from tokenward.storage.common import AuthStore
from tokenward.storage.errors import StoreConflict, StoreUnavailable
from tokenward.storage.models import (
    IssuedSession,
    RequestContext,
    Session,
    TokenPair,
    User,
)

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_SESSION_TTL = timedelta(days=30)


class SessionLifecycleManager:
    """Issue, validate, rotate and revoke sessions.

    A session moves from active, to access-expired (refresh still valid), to
    terminal (revoked, refresh expired or past its ceiling). Terminal is
    absorbing: nothing here ever reactivates a session. Rotation is guarded by
    a compare-and-swap on the presented refresh token, so concurrent refreshes
    with the same token produce exactly one new pair.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        *,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.session_ttl = session_ttl
        self._clock = clock or codec.now

    def now(self) -> datetime:
        return self._clock()

    def _call_store(self, op: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a store operation, retrying once on a transient failure."""

        try:
            return fn(*args, **kwargs)
        except StoreUnavailable as exc:
            logger.warning("store_retry", op=op, error=str(exc))
        try:
            return fn(*args, **kwargs)
        except StoreUnavailable as exc:
            logger.error("store_unavailable", op=op, error=str(exc))
            raise ServerError("session store unavailable") from exc

    def _token_claims(self, user_id: str, session_id: str) -> dict:
        return {"sub": user_id, "sid": session_id}

    def _expiries(self, now: datetime, ceiling: datetime) -> Tuple[datetime, datetime]:
        # Neither token may outlive the session ceiling
        access_exp = min(now + self.codec.access_ttl, ceiling)
        refresh_exp = min(now + self.codec.refresh_ttl, ceiling)
        return access_exp, refresh_exp

    async def issue(self, user: User, context: Optional[RequestContext] = None) -> IssuedSession:
        context = context or RequestContext()
        device_info, location = enrich(context)
        now = self.now()
        session_id = Session.new_id()
        claims = self._token_claims(user.id, session_id)
        ceiling = now + self.session_ttl
        access_exp, refresh_exp = self._expiries(now, ceiling)
        session = Session(
            id=session_id,
            user_id=user.id,
            access_token=self.codec.generate_access_token(claims),
            refresh_token=self.codec.generate_refresh_token(claims),
            access_token_expires_at=access_exp,
            refresh_token_expires_at=refresh_exp,
            expires_at=ceiling,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            device_info=device_info,
            location=location,
            is_active=True,
            last_activity=now,
            created_at=now,
            updated_at=now,
        )
        self._call_store("create_session", self.store.create_session, session)
        logger.info(
            "session_issued",
            user_id=user.id,
            session_id=session_id,
            browser=device_info.browser,
            device=device_info.device,
        )
        return IssuedSession(
            session_id=session_id,
            tokens=TokenPair(
                access_token=session.access_token,
                refresh_token=session.refresh_token,
                access_token_expires_at=access_exp,
                refresh_token_expires_at=refresh_exp,
            ),
            expires_at=ceiling,
        )

    async def validate_access(self, access_token: str) -> Tuple[Session, User]:
        payload = self.codec.verify_access_token(access_token)
        session = self._call_store(
            "find_by_access_token", self.store.find_by_access_token, access_token
        )
        if not session:
            raise SessionNotFoundError("session not found")
        if self.codec.subject(payload) != session.user_id:
            raise TokenInvalidError("access token subject mismatch")
        user = self._call_store("get_user", self.store.get_user, session.user_id)
        if not user or not user.is_active:
            raise SessionInactiveError("session owner is not active")
        self._call_store("update_activity", self.store.update_activity, session.id)
        session.last_activity = self.now()
        return session, user

    async def refresh(self, refresh_token: str) -> TokenPair:
        payload = self.codec.verify_refresh_token(refresh_token)
        session = self._call_store(
            "find_by_refresh_token", self.store.find_by_refresh_token, refresh_token
        )
        if not session:
            raise SessionNotFoundError("session not found")
        if self.codec.subject(payload) != session.user_id:
            logger.warning(
                "refresh_subject_mismatch",
                session_id=session.id,
                fingerprint=mask_token(refresh_token),
            )
            raise TokenInvalidError("refresh token subject mismatch")
        owner = self._call_store("get_user", self.store.get_user, session.user_id)
        if not owner or not owner.is_active:
            raise SessionInactiveError("session owner is not active")

        now = self.now()
        claims = self._token_claims(session.user_id, session.id)
        access_exp, refresh_exp = self._expiries(now, session.expires_at)
        new_access = self.codec.generate_access_token(claims)
        new_refresh = self.codec.generate_refresh_token(claims)
        try:
            self._call_store(
                "rotate_tokens",
                self.store.rotate_tokens,
                session.id,
                refresh_token,
                new_access,
                new_refresh,
                access_exp,
                refresh_exp,
            )
        except StoreConflict:
            # Another caller rotated first; the presented token is spent
            logger.info(
                "refresh_conflict",
                session_id=session.id,
                user_id=session.user_id,
                fingerprint=mask_token(refresh_token),
            )
            raise SessionNotFoundError("session not found") from None
        logger.info("session_rotated", session_id=session.id, user_id=session.user_id)
        return TokenPair(
            access_token=new_access,
            refresh_token=new_refresh,
            access_token_expires_at=access_exp,
            refresh_token_expires_at=refresh_exp,
        )

    async def revoke(self, session_id: str) -> None:
        if self._call_store("deactivate", self.store.deactivate, session_id):
            logger.info("session_revoked", session_id=session_id)

    async def revoke_all(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        count = self._call_store(
            "deactivate_all_for_user",
            self.store.deactivate_all_for_user,
            user_id,
            except_session_id,
        )
        logger.info(
            "sessions_revoked",
            user_id=user_id,
            count=count,
            kept_session_id=except_session_id,
        )
        return count

    async def get_active_sessions(self, user_id: str) -> List[Session]:
        return self._call_store(
            "find_active_by_user", self.store.find_active_by_user, user_id
        )

    async def active_sessions_count(self, user_id: str) -> int:
        return len(await self.get_active_sessions(user_id))

    async def get_session(self, session_id: str, user_id: str) -> Optional[Session]:
        """Return the session only if it belongs to ``user_id``."""

        session = self._call_store("get_session", self.store.get_session, session_id)
        if not session or session.user_id != user_id:
            return None
        return session

    async def purge_expired(self) -> int:
        return self._call_store(
            "delete_expired", self.store.delete_expired, self.now()
        )
