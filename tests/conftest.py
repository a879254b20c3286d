import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="wealthvault_test_")
os.environ.setdefault("STATE_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_CACHE_FALLBACK", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Runtime tests run store-only; cache behaviour is covered with FakeBlacklistCache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from wealthvault.config import Settings  # noqa: E402
from wealthvault.service.auth import AuthService  # noqa: E402
from wealthvault.service.blacklist import BlacklistCache  # noqa: E402
from wealthvault.service.credentials import PasswordCredentialVerifier  # noqa: E402
from wealthvault.service.mfa import MFAVerifier  # noqa: E402
from wealthvault.service.runtime import reset_runtime_for_tests  # noqa: E402
from wealthvault.service.security import SecurityMonitor  # noqa: E402
from wealthvault.service.sessions import SessionManager  # noqa: E402
from wealthvault.service.tokens import TokenCodec  # noqa: E402
from wealthvault.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeBlacklistCache:
    """In-memory stand-in for the Redis blacklist tier.

    ``available = False`` makes every call raise as a dropped connection would;
    ``latency`` delays every call, to exercise the cache timeout.
    """

    def __init__(self):
        self.entries = {}
        self.available = True
        self.latency = 0.0
        self.calls = []

    async def _io(self, operation):
        self.calls.append(operation)
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.available:
            raise ConnectionError("cache unreachable")

    async def ping(self):
        await self._io("ping")
        return True

    async def set_blacklisted(self, token_hash, reason, ttl_seconds):
        await self._io("set_blacklisted")
        if ttl_seconds > 0:
            self.entries[token_hash] = reason

    async def get_blacklisted(self, token_hash):
        await self._io("get_blacklisted")
        return self.entries.get(token_hash)

    async def clear_blacklist(self):
        removed = len(self.entries)
        self.entries.clear()
        return removed

    async def close(self):
        return None


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


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


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        store_timeout_seconds=1.0,
        cache_timeout_seconds=0.2,
        cache_health_interval_seconds=5.0,
    )


@pytest.fixture
def memory_store():
    return MemoryStore(mfa_encryption_key=TEST_SECRET)


@pytest.fixture
def fake_cache():
    return FakeBlacklistCache()


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def codec(settings):
    return TokenCodec(settings)


@pytest.fixture
def blacklist(memory_store, fake_cache, settings, manual_clock):
    return BlacklistCache(memory_store, fake_cache, settings, clock=manual_clock)


@pytest.fixture
def sessions(memory_store, blacklist, codec, settings):
    return SessionManager(memory_store, blacklist, codec, settings)


@pytest.fixture
def mfa(memory_store, settings):
    return MFAVerifier(memory_store, settings)


@pytest.fixture
def monitor(memory_store, settings):
    return SecurityMonitor(memory_store, settings)


@pytest.fixture
def credentials():
    return PasswordCredentialVerifier()


@pytest.fixture
def auth_service(credentials, sessions, mfa, monitor, blacklist, codec, settings):
    return AuthService(credentials, sessions, mfa, monitor, blacklist, codec, settings)
