import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before any import that builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps revocations in-process so tests do not depend on a Redis server
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from schoolauth.config import Settings  # noqa: E402
from schoolauth.service.email import EmailService  # noqa: E402
from schoolauth.service.passwords import PasswordService  # noqa: E402
from schoolauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from schoolauth.storage.models import Identity, IdentityStatus, Role  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
START = datetime(2024, 9, 2, 8, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for time-dependent behavior."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmailService(EmailService):
    """EmailService that records messages instead of sending them."""

    def __init__(self):
        super().__init__()
        self.sent = []

    def _record(self, kind, identity, *args):
        self.sent.append((kind, identity, args))
        return True

    def send_email_verification(self, identity):
        return self._record("verification", identity)

    def send_password_reset_email(self, identity, token, expiry_minutes=60):
        return self._record("reset", identity, token, expiry_minutes)

    def send_password_change_confirmation(self, identity):
        return self._record("password_changed", identity)

    def send_account_locked_email(self, identity, lock_minutes):
        return self._record("locked", identity, lock_minutes)

    def of_kind(self, kind):
        return [entry for entry in self.sent if entry[0] == kind]


def fast_password_service() -> PasswordService:
    """argon2id with minimal cost parameters to keep the suite quick."""
    return PasswordService(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


def make_identity(
    store,
    passwords,
    *,
    tenant_id="school-a",
    username="alice",
    email="alice@school-a.edu",
    password="CorrectHorse1!",
    role=Role.STUDENT,
    verified=True,
):
    password_hash, algo = passwords.hash(password)
    identity = Identity.new(
        tenant_id=tenant_id,
        username=username,
        email=email,
        password_hash=password_hash,
        password_algo=algo,
        role=role,
        status=IdentityStatus.ACTIVE if verified else IdentityStatus.PENDING,
        email_verified=verified,
        email_verification_token=None if verified else f"verify-{username}",
    )
    return store.create_identity(identity)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def passwords():
    return fast_password_service()


@pytest.fixture
def recording_email():
    return RecordingEmailService()


@pytest.fixture
def create_identity(passwords):
    """Factory creating identities in a store; verified and ACTIVE by default."""

    def _create(store, **kwargs):
        return make_identity(store, passwords, **kwargs)

    return _create


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
