import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="gatekeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from argon2 import PasswordHasher, Type  # noqa: E402

from gatekeep.config import Settings  # noqa: E402
from gatekeep.service.actions import AuthActions  # noqa: E402
from gatekeep.service.claims import SessionClaimsPipeline  # noqa: E402
from gatekeep.service.credentials import CredentialVerifier  # noqa: E402
from gatekeep.service.email import EmailService  # noqa: E402
from gatekeep.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatekeep.service.signin import SignInDecisionMachine  # noqa: E402
from gatekeep.service.tokens import TokenLifecycleManager  # noqa: E402
from gatekeep.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable clock injected wherever services read the current time."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def hasher():
    # Cheap parameters keep the argon2 calls fast in tests
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def tokens(memory_store, clock):
    return TokenLifecycleManager(memory_store, now=clock)


@pytest.fixture
def credentials(memory_store, hasher):
    return CredentialVerifier(memory_store, hasher=hasher)


@pytest.fixture
def machine(memory_store, tokens, credentials):
    return SignInDecisionMachine(memory_store, tokens, credentials)


@pytest.fixture
def claims(memory_store, settings, clock):
    return SessionClaimsPipeline(memory_store, settings, now=clock)


class RecordingEmailService(EmailService):
    """Keeps (to, subject, text) of every message handed to delivery."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.outbox = []

    def _send_email(self, to_email, subject, html_body, text_body):
        self.outbox.append((to_email, subject, text_body))
        return super()._send_email(to_email, subject, html_body, text_body)


@pytest.fixture
def make_email_service():
    return RecordingEmailService


@pytest.fixture
def email_service(make_email_service):
    return make_email_service()


@pytest.fixture
def actions(memory_store, tokens, credentials, machine, claims, email_service):
    return AuthActions(memory_store, tokens, credentials, machine, claims, email_service)


@pytest.fixture
def make_user(memory_store, credentials, clock):
    """Create a user; verified and with a password unless told otherwise."""

    def _make(
        email="user@example.com",
        password="Secret-pass-1",
        *,
        verified=True,
        two_factor=False,
        name="Test User",
    ):
        user = memory_store.create_user(
            email,
            name=name,
            password_hash=credentials.hash_password(password) if password else None,
        )
        fields = {}
        if verified:
            fields["email_verified"] = clock()
        if two_factor:
            fields["is_two_factor_enabled"] = True
        if fields:
            user = memory_store.update_user(user.id, **fields)
        return user

    return _make


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
