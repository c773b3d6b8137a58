from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from tokenward.logging import get_logger
from tokenward.service.errors import (
    InvalidDurationFormat,
    TokenExpiredError,
    TokenInvalidError,
)

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_MS = {
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
}

# Claims the codec owns; callers cannot override them
_RESERVED_CLAIMS = frozenset({"iss", "aud", "iat", "exp", "jti", "token_type"})


def parse_duration(value: str) -> int:
    """Convert ``<integer><s|m|h|d>`` to milliseconds.

    >>> parse_duration("15m")
    900000
    """
    if not isinstance(value, str):
        raise InvalidDurationFormat(value)
    match = _DURATION_RE.match(value)
    if not match:
        raise InvalidDurationFormat(value)
    amount, unit = match.groups()
    return int(amount) * _UNIT_MS[unit]


def duration_to_timedelta(value: str) -> timedelta:
    return timedelta(milliseconds=parse_duration(value))


def generate_opaque_secret() -> str:
    """320 bits of randomness, hex encoded."""
    return secrets.token_hex(40)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Stateless HS256 signing and verification for access/refresh tokens.

    Access and refresh tokens are signed with separate secrets and carry a
    ``token_type`` claim, so neither can stand in for the other even when
    both secrets are configured to the same value.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: Optional[str] = None,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        issuer: str = "tokenward",
        audience: str = "tokenward-clients",
        leeway: timedelta = timedelta(0),
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not access_secret:
            raise ValueError("access_secret is required")
        self._secrets = {
            ACCESS: access_secret.encode(),
            REFRESH: (refresh_secret or access_secret).encode(),
        }
        self.ttls = {ACCESS: access_ttl, REFRESH: refresh_ttl}
        self.issuer = issuer
        self.audience = audience
        self._leeway = leeway.total_seconds()
        self._clock = clock or time.time

    @property
    def access_ttl(self) -> timedelta:
        return self.ttls[ACCESS]

    @property
    def refresh_ttl(self) -> timedelta:
        return self.ttls[REFRESH]

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # -- generation ---------------------------------------------------------

    def generate_access_token(self, claims: dict[str, Any]) -> str:
        return self._generate(ACCESS, claims)

    def generate_refresh_token(self, claims: dict[str, Any]) -> str:
        return self._generate(REFRESH, claims)

    def _generate(self, token_kind: str, claims: dict[str, Any]) -> str:
        iat = self._clock()
        exp = iat + self.ttls[token_kind].total_seconds()
        payload = {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "iat": int(iat),
                "exp": round(exp, 3),
                # Unique per token so two pairs minted in the same tick differ
                "jti": uuid.uuid4().hex,
                "token_type": token_kind,
            }
        )
        return self._encode(token_kind, payload)

    def _encode(self, token_kind: str, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":"), default=str).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secrets[token_kind], signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    # -- verification -------------------------------------------------------

    def verify_access_token(self, token: str) -> dict[str, Any]:
        return self._verify(ACCESS, token)

    def verify_refresh_token(self, token: str) -> dict[str, Any]:
        return self._verify(REFRESH, token)

    def _verify(self, token_kind: str, token: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenInvalidError(f"{token_kind} token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError(f"{token_kind} token malformed") from None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", token_kind=token_kind)
            raise TokenInvalidError(f"{token_kind} token malformed") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError(f"{token_kind} token algorithm not accepted")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(
                self._secrets[token_kind], signing_input.encode(), hashlib.sha256
            ).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError(f"{token_kind} token signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError(f"{token_kind} token malformed") from None
        if not isinstance(payload, dict):
            raise TokenInvalidError(f"{token_kind} token malformed")

        if payload.get("token_type") != token_kind:
            raise TokenInvalidError(f"expected a {token_kind} token")
        if payload.get("iss") != self.issuer:
            raise TokenInvalidError(f"{token_kind} token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalidError(f"{token_kind} token audience mismatch")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError(f"{token_kind} token has no expiry") from None
        if exp_ts <= self._clock() - self._leeway:
            raise TokenExpiredError(token_kind)
        return payload

    @staticmethod
    def subject(payload: dict[str, Any]) -> Optional[str]:
        sub = payload.get("sub")
        return str(sub) if sub is not None else None
