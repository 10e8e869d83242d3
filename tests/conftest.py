import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before any import that builds Settings
_test_tmp_dir = tempfile.mkdtemp(prefix="credvault_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SWEEPERS_ENABLED", "false")
# Per-process throttle buckets keep tests independent of any local Redis
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from credvault.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Settable UTC clock for engines that take a ``clock`` callable."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSms:
    """Stands in for SmsService; keeps every code it was asked to send."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.ok = True

    def send_otp(self, phone_number: str, code: str) -> bool:
        self.sent.append((phone_number, code))
        return self.ok

    def last_code(self, phone_number: str) -> str:
        return [code for phone, code in self.sent if phone == phone_number][-1]


class RecordingEmail:
    """Stands in for EmailService; keeps tokens instead of sending mail."""

    def __init__(self):
        self.verifications: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []
        self.welcomes: list[str] = []
        self.ok = True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        self.verifications.append((to_email, token))
        return self.ok

    def send_password_reset(self, to_email: str, token: str) -> bool:
        self.resets.append((to_email, token))
        return self.ok

    def send_welcome(self, to_email: str) -> bool:
        self.welcomes.append(to_email)
        return self.ok


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sms():
    return RecordingSms()


@pytest.fixture
def mailer():
    return RecordingEmail()


@pytest.fixture
def fast_hasher():
    from argon2 import PasswordHasher, Type

    from credvault.service.crypto import CredentialHasher

    return CredentialHasher(
        PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    )


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
