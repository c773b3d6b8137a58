from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenward.logging import get_logger
from tokenward.storage.errors import ConstraintViolation, StoreConflict, StoreUnavailable
from tokenward.storage.models import DeviceInfo, Location, Session, User

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_user (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT,
    role TEXT NOT NULL DEFAULT 'user',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    login_attempts INTEGER NOT NULL DEFAULT 0 CHECK (login_attempts >= 0),
    lock_until TIMESTAMPTZ,
    last_login TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS auth_session (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    access_token TEXT NOT NULL,
    refresh_token TEXT NOT NULL UNIQUE,
    access_token_expires_at TIMESTAMPTZ NOT NULL,
    refresh_token_expires_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    ip_address TEXT,
    user_agent TEXT,
    device_info JSONB,
    location JSONB,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    deactivated_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS auth_session_user_active_idx ON auth_session (user_id, is_active);
CREATE INDEX IF NOT EXISTS auth_session_access_token_idx ON auth_session (access_token);
CREATE INDEX IF NOT EXISTS auth_session_expires_at_idx ON auth_session (expires_at);
"""

# Restart the counter when the previous lock has already run out
_NEXT_ATTEMPTS_SQL = (
    "CASE WHEN lock_until IS NOT NULL AND lock_until <= %(now)s "
    "THEN 1 ELSE login_attempts + 1 END"
)


class PostgresStore:
    """Postgres-backed session and user store.

    Every mutation is a single statement, so atomicity comes from the database
    rather than from application locks.
    """

    def __init__(
        self,
        dsn: str,
        *,
        ensure_schema: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self.ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.warning("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def _now(self) -> datetime:
        return self._clock()

    def ensure_schema(self) -> None:
        """Create the user and session tables if they are missing."""

        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)

    # user / auth
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            password_hash=password_hash,
            role=role,
            is_active=is_active,
            created_at=self._now(),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, role, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.password_hash,
                        user.role,
                        user.is_active,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return _user_from_row(row) if row else None

    def increment_login_attempts(
        self,
        user_id: str,
        *,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> User:
        params = {
            "now": now,
            "threshold": threshold,
            "lock_until": lock_until,
            "user_id": user_id,
        }
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user SET
                    login_attempts = {_NEXT_ATTEMPTS_SQL},
                    lock_until = CASE
                        WHEN lock_until IS NOT NULL AND lock_until > %(now)s THEN lock_until
                        WHEN {_NEXT_ATTEMPTS_SQL} >= %(threshold)s THEN %(lock_until)s
                        ELSE NULL
                    END
                WHERE id = %(user_id)s
                RETURNING *
                """,
                params,
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return _user_from_row(row)

    def reset_login_attempts(self, user_id: str) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET login_attempts = 0, lock_until = NULL
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return _user_from_row(row)

    def record_login(self, user_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login = %s WHERE id = %s", (when, user_id)
            )

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, access_token, refresh_token,
                        access_token_expires_at, refresh_token_expires_at, expires_at,
                        ip_address, user_agent, device_info, location, is_active,
                        last_activity, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.access_token,
                        session.refresh_token,
                        session.access_token_expires_at,
                        session.refresh_token_expires_at,
                        session.expires_at,
                        session.ip_address,
                        session.user_agent,
                        json.dumps(asdict(session.device_info)),
                        json.dumps(asdict(session.location)),
                        session.is_active,
                        session.last_activity,
                        session.created_at,
                        session.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "refresh_token"}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def find_active_by_user(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY last_activity DESC
                """,
                (user_id, self._now()),
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    def find_by_access_token(self, access_token: str) -> Optional[Session]:
        now = self._now()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE access_token = %s AND is_active
                  AND access_token_expires_at > %s AND expires_at > %s
                """,
                (access_token, now, now),
            ).fetchone()
        return _session_from_row(row) if row else None

    def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        now = self._now()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE refresh_token = %s AND is_active
                  AND refresh_token_expires_at > %s AND expires_at > %s
                """,
                (refresh_token, now, now),
            ).fetchone()
        return _session_from_row(row) if row else None

    def update_activity(self, session_id: str) -> None:
        now = self._now()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_session SET last_activity = %s, updated_at = %s
                WHERE id = %s AND is_active
                """,
                (now, now, session_id),
            )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE auth_session SET
                        access_token = %s,
                        refresh_token = %s,
                        access_token_expires_at = %s,
                        refresh_token_expires_at = %s,
                        last_activity = %s,
                        updated_at = %s
                    WHERE id = %s AND refresh_token = %s AND is_active
                    RETURNING *
                    """,
                    (
                        new_access_token,
                        new_refresh_token,
                        access_token_expires_at,
                        refresh_token_expires_at,
                        now,
                        now,
                        session_id,
                        expected_refresh_token,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "refresh_token"}
            )
        if not row:
            raise StoreConflict(
                "refresh token already rotated or session inactive",
                {"session_id": session_id},
            )
        return _session_from_row(row)

    def deactivate(self, session_id: str) -> bool:
        now = self._now()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, deactivated_at = %s, updated_at = %s
                WHERE id = %s AND is_active
                """,
                (now, now, session_id),
            )
            return cur.rowcount == 1

    def deactivate_all_for_user(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        now = self._now()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, deactivated_at = %s, updated_at = %s
                WHERE user_id = %s AND is_active AND id IS DISTINCT FROM %s
                """,
                (now, now, user_id, except_session_id),
            )
            return cur.rowcount

    def delete_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = now or self._now()
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM auth_session
                WHERE NOT is_active OR expires_at < %s OR refresh_token_expires_at < %s
                """,
                (cutoff, cutoff),
            )
            count = cur.rowcount
        if count:
            self.logger.info("sessions_purged", count=count)
        return count


def _json_field(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    return raw if isinstance(raw, dict) else {}


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row.get("password_hash"),
        role=row.get("role") or "user",
        is_active=bool(row.get("is_active", True)),
        login_attempts=int(row.get("login_attempts") or 0),
        lock_until=row.get("lock_until"),
        last_login=row.get("last_login"),
        created_at=row["created_at"],
    )


def _session_from_row(row: Dict[str, Any]) -> Session:
    device = _json_field(row.get("device_info"))
    location = _json_field(row.get("location"))
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        access_token_expires_at=row["access_token_expires_at"],
        refresh_token_expires_at=row["refresh_token_expires_at"],
        expires_at=row["expires_at"],
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        device_info=DeviceInfo(**{k: v for k, v in device.items() if k in ("browser", "os", "device")}),
        location=Location(**{k: v for k, v in location.items() if k in ("country", "city", "region")}),
        is_active=bool(row.get("is_active", False)),
        last_activity=row["last_activity"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deactivated_at=row.get("deactivated_at"),
    )
