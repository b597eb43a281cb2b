import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any gatekeeper import reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatekeeper.service.codec import JWTCodec  # noqa: E402
from gatekeeper.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatekeeper.service.sessions import SessionManager  # noqa: E402
from gatekeeper.storage.memory import MemoryStorage  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Manually advanced time source shared by storage and sessions."""

    def __init__(self, start: float = 1_700_000_000.0):
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
def codec():
    return JWTCodec(TEST_SECRET)


@pytest.fixture
def memory_storage(clock):
    return MemoryStorage(clock=clock)


@pytest.fixture
def sessions(codec, memory_storage, clock):
    """Storage-backed session manager with a one hour TTL."""
    return SessionManager(codec, 3600, memory_storage, clock=clock)


@pytest.fixture
def stateless_sessions(codec, clock):
    return SessionManager(codec, 3600, clock=clock)


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
