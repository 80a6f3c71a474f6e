import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be set before any import that reads settings
os.environ.setdefault("CACHE_STORE_BACKEND", "memory")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LATCHKEY_EXTENSIONS", "persistent_session,email_confirmation,reset_password")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from latchkey.config import ConfigContext  # noqa: E402
from latchkey.service.runtime import reset_runtime_for_tests  # noqa: E402
from latchkey.service.users import MemoryUserRepository  # noqa: E402
from latchkey.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def users():
    return MemoryUserRepository()


@pytest.fixture
def config(store, users):
    return ConfigContext(cache_store_backend=store, users=users)


@pytest.fixture
def alice(users):
    return users.create("alice@example.com", "Correct-Horse-9", user_id="42")


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
