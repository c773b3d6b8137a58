from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DeviceInfo:
    browser: str = "Unknown"
    os: str = "Unknown"
    device: str = "Unknown"


@dataclass
class Location:
    country: str = "Unknown"
    city: str = "Unknown"
    region: str = "Unknown"


@dataclass
class RequestContext:
    """What the transport layer knows about the caller."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SessionState(str, Enum):
    ACTIVE = "active"
    ACCESS_EXPIRED = "access_expired"
    TERMINAL = "terminal"


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def locked_at(self, now: datetime) -> bool:
        return is_locked(self.lock_until, now)


def is_locked(lock_until: Optional[datetime], now: datetime) -> bool:
    """Locked only while ``lock_until`` is still in the future."""
    return lock_until is not None and lock_until > now


@dataclass
class Session:
    id: str
    user_id: str
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    location: Location = field(default_factory=Location)
    is_active: bool = True
    last_activity: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deactivated_at: Optional[datetime] = None

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def is_access_expired(self, now: datetime) -> bool:
        return now >= self.access_token_expires_at

    def is_refresh_expired(self, now: datetime) -> bool:
        return now >= self.refresh_token_expires_at

    def is_past_ceiling(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid_for_refresh(self, now: datetime) -> bool:
        return self.is_active and not self.is_refresh_expired(now) and not self.is_past_ceiling(now)

    def state(self, now: datetime) -> SessionState:
        if not self.is_active or not self.is_valid_for_refresh(now):
            return SessionState.TERMINAL
        if self.is_access_expired(now):
            return SessionState.ACCESS_EXPIRED
        return SessionState.ACTIVE


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    token_type: str = "bearer"

    @property
    def expires_in(self) -> int:
        """Seconds until the access token expires, measured from now."""
        return max(0, int((self.access_token_expires_at - utcnow()).total_seconds()))


@dataclass
class IssuedSession:
    session_id: str
    tokens: TokenPair
    expires_at: datetime
