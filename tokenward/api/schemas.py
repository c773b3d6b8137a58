from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tokenward.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "method_not_allowed",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_locked",
    "account_inactive",
    "token_expired",
    "token_invalid",
    "session_not_found",
    "session_inactive",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("password must be at least 8 characters")
        return value


class LoginRequest(BaseModel):
    # Login does not validate email shape so malformed input fails like a wrong password
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    all_devices: bool = False


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime


class AuthResponse(BaseModel):
    user_id: str
    email: str
    role: str = "user"
    session_id: str
    session_expires_at: datetime
    tokens: TokenPairResponse


class DeviceInfoResponse(BaseModel):
    browser: str
    os: str
    device: str


class LocationResponse(BaseModel):
    country: str
    city: str
    region: str


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    is_active: bool
    is_current: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: DeviceInfoResponse
    location: LocationResponse
    security_level: str


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total: int


class RevokeResponse(BaseModel):
    revoked: int


class SecurityStatusResponse(BaseModel):
    login_attempts: int
    is_locked: bool
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    is_active: bool
    security_level: str
    active_sessions: int


class RateLimitsResponse(BaseModel):
    rules: Dict[str, Dict[str, int]]
    enforced: bool


class DeviceStatsResponse(BaseModel):
    devices: Dict[str, int]
    browsers: Dict[str, int]
    operating_systems: Dict[str, int]
    total: int


class LocationStatsResponse(BaseModel):
    countries: Dict[str, int]
    cities: Dict[str, int]
    total: int


class SuspiciousSessionResponse(BaseModel):
    session_id: str
    reason: str
    device_info: DeviceInfoResponse
    location: LocationResponse
    last_activity: datetime


class SecurityOverviewResponse(BaseModel):
    total_sessions: int
    security_levels: Dict[str, int]
    suspicious_sessions: List[SuspiciousSessionResponse]


class LoginAttemptsResetResponse(BaseModel):
    user_id: str
    login_attempts: int
    is_locked: bool
