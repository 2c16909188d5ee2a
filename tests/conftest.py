import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Settings are read at import time, so the environment must be ready first
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("IDENTITY_JWT_SECRET", "test-identity-secret-for-testing-only-do-not-use")
os.environ.setdefault("APP_BASE_URL", "http://testserver")
# Rate limit and denylist state stays per-process so tests cannot leak into each other
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from projectflow.config import Settings  # noqa: E402
from projectflow.service.runtime import reset_runtime_for_tests  # noqa: E402
from projectflow.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Callable clock the services accept in place of ``utcnow``."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        app_base_url="http://testserver",
        identity_jwt_secret="unit-test-identity-secret-0123456789",
        identity_jwt_issuer="https://identity.test",
        test_mode=True,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
