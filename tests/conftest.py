import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment defaults must be in place before anything builds Settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-prod"
)
os.environ.setdefault("RATE_LIMIT_ENFORCED", "false")
os.environ.setdefault("SESSION_PURGE_INTERVAL", "0")
os.environ.pop("REDIS_URL", None)
os.environ.pop("DATABASE_URL", None)

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tokenward.config import reset_settings_cache  # noqa: E402
from tokenward.service.lockout import AccountLockGuard  # noqa: E402
from tokenward.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenward.service.sessions import SessionLifecycleManager  # noqa: E402
from tokenward.service.tokens import TokenCodec  # noqa: E402
from tokenward.storage.memory import MemoryStore  # noqa: E402

ACCESS_SECRET = "unit-access-secret-0123456789abcdefghijklmnop"
REFRESH_SECRET = "unit-refresh-secret-0123456789abcdefghijklmno"


class FakeClock:
    """Manually advanced clock shared by codec, store and services."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def timestamp(self) -> float:
        return self.current.timestamp()

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_settings_cache()
    reset_runtime_for_tests()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock.now)


@pytest.fixture
def codec(clock):
    return TokenCodec(
        access_secret=ACCESS_SECRET,
        refresh_secret=REFRESH_SECRET,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        clock=clock.timestamp,
    )


@pytest.fixture
def sessions(memory_store, codec, clock):
    return SessionLifecycleManager(
        memory_store, codec, session_ttl=timedelta(days=30), clock=clock.now
    )


@pytest.fixture
def lock_guard(memory_store, clock):
    return AccountLockGuard(
        memory_store, threshold=5, lock_duration=timedelta(hours=2), clock=clock.now
    )


@pytest.fixture
def fast_hasher():
    """Cheap argon2id parameters so suites stay fast."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def user(memory_store, fast_hasher):
    return memory_store.create_user("alice@example.com", fast_hasher.hash("CorrectHorse9!"))


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
