from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Union

from tokenward.logging import get_logger
from tokenward.service.errors import RateLimitedError
from tokenward.storage.common import CounterStore, LimitResult
from tokenward.storage.errors import StoreUnavailable
from tokenward.storage.memory import MemoryCounterStore

logger = get_logger(__name__)


class EndpointClass(str, Enum):
    GENERAL = "general"
    AUTH = "auth"
    PASSWORD_RESET = "password_reset"
    AVATAR_UPLOAD = "avatar_upload"
    PROFILE_UPDATE = "profile_update"
    READ_ONLY = "read_only"
    ADMIN = "admin"


@dataclass(frozen=True)
class RateLimitRule:
    window_ms: int
    max_requests: int

    @property
    def retry_after_seconds(self) -> int:
        return self.window_ms // 1000


_MINUTE_MS = 60 * 1000

DEFAULT_RULES: Dict[EndpointClass, RateLimitRule] = {
    EndpointClass.GENERAL: RateLimitRule(15 * _MINUTE_MS, 100),
    EndpointClass.AUTH: RateLimitRule(15 * _MINUTE_MS, 10),
    EndpointClass.PASSWORD_RESET: RateLimitRule(60 * _MINUTE_MS, 5),
    EndpointClass.AVATAR_UPLOAD: RateLimitRule(15 * _MINUTE_MS, 10),
    EndpointClass.PROFILE_UPDATE: RateLimitRule(15 * _MINUTE_MS, 20),
    EndpointClass.READ_ONLY: RateLimitRule(15 * _MINUTE_MS, 200),
    EndpointClass.ADMIN: RateLimitRule(15 * _MINUTE_MS, 50),
}


@dataclass(frozen=True)
class AdmissionPolicy:
    """Whether admission limits are enforced at all.

    Test suites and local tooling construct ``AdmissionPolicy(enforce=False)``
    explicitly; nothing in this module inspects the environment.
    """

    enforce: bool = True


class AdmissionController:
    """Fixed-window request gate, one independent window per endpoint class and key.

    Counters are defence in depth: when the shared counter store is
    unavailable the controller keeps counting in-process rather than failing
    open or rejecting traffic.
    """

    def __init__(
        self,
        counter_store: CounterStore,
        rules: Optional[Mapping[EndpointClass, RateLimitRule]] = None,
        policy: Optional[AdmissionPolicy] = None,
    ) -> None:
        self.counter_store = counter_store
        self.rules: Dict[EndpointClass, RateLimitRule] = dict(DEFAULT_RULES)
        if rules:
            self.rules.update(rules)
        self.policy = policy or AdmissionPolicy()
        self._fallback = MemoryCounterStore()

    def rule_for(self, endpoint_class: Union[EndpointClass, str]) -> RateLimitRule:
        return self.rules[EndpointClass(endpoint_class)]

    @staticmethod
    def counter_key(
        endpoint_class: EndpointClass, ip: str, identity: Optional[str] = None
    ) -> str:
        if endpoint_class is EndpointClass.ADMIN and identity:
            return f"{endpoint_class.value}:{ip}:{identity}"
        return f"{endpoint_class.value}:{ip}"

    def _hit(self, key: str, rule: RateLimitRule) -> LimitResult:
        try:
            return self.counter_store.hit(key, rule.max_requests, rule.window_ms)
        except StoreUnavailable as exc:
            logger.warning("rate_limit_store_unavailable", error=str(exc))
            return self._fallback.hit(key, rule.max_requests, rule.window_ms)

    def check(
        self,
        endpoint_class: Union[EndpointClass, str],
        *,
        ip: str,
        route: str,
        method: str,
        identity: Optional[str] = None,
    ) -> LimitResult:
        """Count one request and raise ``RateLimitedError`` once the window is full."""

        endpoint_class = EndpointClass(endpoint_class)
        rule = self.rules[endpoint_class]
        if not self.policy.enforce:
            return LimitResult(
                allowed=True,
                count=0,
                limit=rule.max_requests,
                retry_after_seconds=0,
                reset_at_ms=0,
            )

        ip = ip or "unknown"
        result = self._hit(self.counter_key(endpoint_class, ip, identity), rule)
        if result.allowed:
            return result

        log_fields = {
            "type": endpoint_class.value,
            "ip": ip,
            "route": route,
            "method": method,
            "retry_after": rule.retry_after_seconds,
        }
        if endpoint_class is EndpointClass.ADMIN and identity:
            log_fields["user_id"] = identity
        logger.warning("rate_limit_exceeded", **log_fields)
        raise RateLimitedError(
            retry_after_seconds=rule.retry_after_seconds,
            endpoint_class=endpoint_class.value,
        )

    def describe(self) -> Dict[str, Dict[str, int]]:
        """Configured limits per endpoint class, for diagnostics."""

        return {
            cls.value: {
                "window_ms": rule.window_ms,
                "max_requests": rule.max_requests,
                "retry_after_seconds": rule.retry_after_seconds,
            }
            for cls, rule in self.rules.items()
        }
