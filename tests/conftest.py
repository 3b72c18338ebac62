import asyncio
import inspect
import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
# Tests run against the in-process cache; no Redis needed
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SECURITY_SCAN_ENABLED", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcore.config import Settings  # noqa: E402
from authcore.service.auth import AuthService  # noqa: E402
from authcore.service.crypto import SecretCipher  # noqa: E402
from authcore.service.email import EmailService  # noqa: E402
from authcore.service.identity_provider import LocalCredentialAuthority  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.storage.local_cache import LocalCache  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402
from authcore.storage.models import utcnow  # noqa: E402


def _clear_shared_state() -> None:
    state_file = Path(os.environ["SHARED_FS_ROOT"]) / "state" / "memory_store.json"
    if state_file.exists():
        state_file.unlink()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _clear_shared_state()
    reset_runtime_for_tests()
    yield
    _clear_shared_state()
    reset_runtime_for_tests()


class FakeClock:
    """Injectable clock; tests move time forward explicitly."""

    def __init__(self, start=None):
        self.now = start or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        secret_key="unit-test-secret-key-with-enough-entropy-0123456789",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        security_scan_enabled=False,
    )


@pytest.fixture
def cipher(settings):
    return SecretCipher(settings.secret_key)


@pytest.fixture
def memory_store(tmp_path, cipher):
    return MemoryStore(fs_root=str(tmp_path / "store"), cipher=cipher)


@pytest.fixture
def cache():
    return LocalCache()


@pytest.fixture
def email_service():
    return EmailService(base_url="https://auth.example.com")


@pytest.fixture
def auth_service(memory_store, cache, settings, cipher, email_service, clock):
    return AuthService(
        memory_store,
        cache,
        settings,
        authority=LocalCredentialAuthority(memory_store),
        email_service=email_service,
        cipher=cipher,
        clock=clock,
    )


@pytest.fixture
def verified_user(auth_service):
    """Factory registering a password account and confirming its address."""

    async def _create(email="alice@example.com", password="Correct-horse-1", **kwargs):
        user = await auth_service.register(email, password, **kwargs)
        token = await auth_service.request_email_verification(user.id)
        return await auth_service.verify_email(token)

    return _create


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
