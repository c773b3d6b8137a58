from __future__ import annotations

import json
import os
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokenward.logging import get_logger
from tokenward.service.admission import DEFAULT_RULES, EndpointClass, RateLimitRule
from tokenward.service.tokens import duration_to_timedelta, parse_duration

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, validated once at startup.

    Components never read this object globally; the runtime derives plain
    values (timedeltas, thresholds, rule tables) and passes them into each
    constructor.
    """

    access_token_secret: str | None = env_field(None, "JWT_SECRET")
    refresh_token_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Falls back to JWT_SECRET when unset",
    )
    access_token_ttl: str = env_field("15m", "JWT_EXPIRES_IN")
    refresh_token_ttl: str = env_field("7d", "JWT_REFRESH_EXPIRES_IN")
    session_ttl: str = env_field(
        "30d",
        "SESSION_EXPIRES_IN",
        description="Absolute session ceiling, independent of token TTLs",
    )
    jwt_issuer: str = env_field("tokenward", "JWT_ISSUER")
    jwt_audience: str = env_field("tokenward-clients", "JWT_AUDIENCE")
    lock_threshold: int = env_field(5, "LOCK_THRESHOLD", ge=1)
    lock_duration: str = env_field("2h", "LOCK_DURATION")
    rate_limits: dict[str, dict[str, Any]] = env_field(
        {},
        "RATE_LIMITS",
        description='Per-class overrides, e.g. {"auth": {"window": "15m", "max_requests": 10}}',
    )
    rate_limit_enforced: bool = env_field(True, "RATE_LIMIT_ENFORCED")
    database_url: str | None = env_field(None, "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")
    log_level: str = env_field("INFO", "LOG_LEVEL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("access_token_ttl", "refresh_token_ttl", "session_ttl", "lock_duration")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        parse_duration(value)
        return value

    @field_validator("rate_limits", mode="before")
    @classmethod
    def _parse_rate_limits(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            value = json.loads(value)
        if not isinstance(value, dict):
            raise ValueError("RATE_LIMITS must be a JSON object")
        for name, rule in value.items():
            EndpointClass(name)
            if not isinstance(rule, dict):
                raise ValueError(f"rate limit for {name} must be an object")
            if "window" in rule:
                parse_duration(rule["window"])
            if "max_requests" in rule and int(rule["max_requests"]) < 1:
                raise ValueError(f"rate limit max_requests for {name} must be positive")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        if not self.access_token_secret or len(self.access_token_secret) < MIN_SECRET_LENGTH:
            raise ValueError(f"JWT_SECRET must be set to at least {MIN_SECRET_LENGTH} characters")
        if self.refresh_token_secret and len(self.refresh_token_secret) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT_REFRESH_SECRET must be at least {MIN_SECRET_LENGTH} characters"
            )
        if not self.refresh_token_secret:
            logger.warning(
                "refresh_secret_defaulted",
                message="JWT_REFRESH_SECRET unset; refresh tokens share the access secret",
            )
        if self.session_ttl_delta < self.refresh_ttl_delta:
            raise ValueError("SESSION_EXPIRES_IN must be at least JWT_REFRESH_EXPIRES_IN")
        return self

    @property
    def access_ttl_delta(self) -> timedelta:
        return duration_to_timedelta(self.access_token_ttl)

    @property
    def refresh_ttl_delta(self) -> timedelta:
        return duration_to_timedelta(self.refresh_token_ttl)

    @property
    def session_ttl_delta(self) -> timedelta:
        return duration_to_timedelta(self.session_ttl)

    @property
    def lock_duration_delta(self) -> timedelta:
        return duration_to_timedelta(self.lock_duration)

    def rate_limit_rules(self) -> dict[EndpointClass, RateLimitRule]:
        """Default rule table with any configured overrides applied."""

        rules = dict(DEFAULT_RULES)
        for name, override in self.rate_limits.items():
            cls_ = EndpointClass(name)
            base = rules[cls_]
            window_ms = (
                parse_duration(override["window"]) if "window" in override else base.window_ms
            )
            rules[cls_] = RateLimitRule(
                window_ms=window_ms,
                max_requests=int(override.get("max_requests", base.max_requests)),
            )
        return rules


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
