from __future__ import annotations

import hashlib
import time
from typing import Callable, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tokenward.logging import get_logger
from tokenward.storage.common import LimitResult
from tokenward.storage.errors import StoreUnavailable


class RedisCache:
    """Redis-backed fixed-window counters shared by every app instance."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic increment; the first hit in a window arms the expiry, so the
    # window is anchored at that hit and the key disappears when it closes
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('PEXPIRE', key, window_ms)
end

local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {count, ttl}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._clock = clock or time.time
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        self.client.ping()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the logical key so caller-supplied parts cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def hit(self, key: str, limit: int, window_ms: int) -> LimitResult:
        safe_key = self._normalize_rate_key(key)
        try:
            count, ttl_ms = self._fixed_window(keys=[safe_key], args=[window_ms])
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self.logger.warning("redis_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

        count = int(count)
        now_ms = int(self._clock() * 1000)
        allowed = count <= limit
        return LimitResult(
            allowed=allowed,
            count=count,
            limit=limit,
            retry_after_seconds=0 if allowed else window_ms // 1000,
            reset_at_ms=now_ms + max(0, int(ttl_ms)),
        )

    def close(self) -> None:
        self.client.close()
