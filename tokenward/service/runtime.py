from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from tokenward.config import Settings, get_settings
from tokenward.logging import get_logger
from tokenward.service.admission import AdmissionController, AdmissionPolicy
from tokenward.service.auth import AuthService
from tokenward.service.lockout import AccountLockGuard
from tokenward.service.sessions import SessionLifecycleManager
from tokenward.service.tokens import TokenCodec
from tokenward.storage.memory import MemoryCounterStore, MemoryStore
from tokenward.storage.postgres import PostgresStore
from tokenward.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the wired service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store: Union[MemoryStore, PostgresStore] = self._build_store()
        self.counters: Union[MemoryCounterStore, RedisCache] = self._build_counters()

        self.codec = TokenCodec(
            access_secret=self.settings.access_token_secret,
            refresh_secret=self.settings.refresh_token_secret,
            access_ttl=self.settings.access_ttl_delta,
            refresh_ttl=self.settings.refresh_ttl_delta,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )
        self.sessions = SessionLifecycleManager(
            self.store, self.codec, session_ttl=self.settings.session_ttl_delta
        )
        self.lock_guard = AccountLockGuard(
            self.store,
            threshold=self.settings.lock_threshold,
            lock_duration=self.settings.lock_duration_delta,
        )
        self.auth = AuthService(self.store, self.sessions, self.lock_guard)
        self.admission = AdmissionController(
            self.counters,
            rules=self.settings.rate_limit_rules(),
            policy=AdmissionPolicy(enforce=self.settings.rate_limit_enforced),
        )
        logger.info(
            "runtime_init_completed",
            store_type=type(self.store).__name__,
            counter_type=type(self.counters).__name__,
            rate_limit_enforced=self.settings.rate_limit_enforced,
        )

    def _build_store(self) -> Union[MemoryStore, PostgresStore]:
        if self.settings.use_memory_store:
            return MemoryStore()
        if not self.settings.database_url:
            raise RuntimeError("DATABASE_URL is required unless USE_MEMORY_STORE=true")
        try:
            return PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _build_counters(self) -> Union[MemoryCounterStore, RedisCache]:
        if not self.settings.redis_url:
            logger.info(
                "rate_limit_counters_in_process",
                message="REDIS_URL unset; admission windows are per process",
            )
            return MemoryCounterStore()
        try:
            cache = RedisCache(self.settings.redis_url)
            cache.verify_connection()
            return cache
        except RedisError as exc:
            if not self.settings.test_mode:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or unset REDIS_URL"
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            return MemoryCounterStore()

    def close(self) -> None:
        if isinstance(self.counters, RedisCache):
            self.counters.close()
        if isinstance(self.store, PostgresStore):
            self.store.pool.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(settings: Optional[Settings] = None) -> Runtime:
    """Rebuild the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        runtime = Runtime(settings)
        return runtime
