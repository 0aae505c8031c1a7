import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="hrauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-not-production")
# Rate limits and the denylist fall back to in-process state
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("MAIL_DRIVER", "console")
os.environ.setdefault("SMS_DRIVER", "console")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hrauth.config import Settings  # noqa: E402
from hrauth.service.auth import AuthService  # noqa: E402
from hrauth.service.delivery import DeliveryRouter  # noqa: E402
from hrauth.service.otp import OtpChallengeManager  # noqa: E402
from hrauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from hrauth.service.tokens import TokenIssuer, TokenValidator  # noqa: E402
from hrauth.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Controllable UTC clock for challenge expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingEmail:
    """Stands in for EmailSender and keeps every message it was asked to send."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def _record(self, kind, to, payload=None):
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.sent.append((kind, to, payload))
        return True

    def send_otp(self, to, code):
        return self._record("otp", to, code)

    def send_password_reset(self, to, link):
        return self._record("reset_link", to, link)

    def send_password_reset_success(self, to):
        return self._record("reset_success", to)

    def send_two_factor_enabled(self, to, method):
        return self._record("two_factor_enabled", to, method)

    def last(self, kind):
        return next(p for k, _, p in reversed(self.sent) if k == kind)


class RecordingSms:
    """Stands in for SmsSender and keeps every message it was asked to send."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def _record(self, kind, to, payload=None):
        if self.fail:
            raise ConnectionError("twilio unavailable")
        if not to:
            raise ValueError("SMS destination is required")
        self.sent.append((kind, to, payload))
        return True

    def send_otp(self, to, code):
        return self._record("otp", to, code)

    def send_password_reset_success(self, to):
        return self._record("reset_success", to)

    def last(self, kind):
        return next(p for k, _, p in reversed(self.sent) if k == kind)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        jwt_secret="unit-test-access-secret-0123456789abcdef",
        jwt_refresh_secret="unit-test-refresh-secret-0123456789abcdef",
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        redis_url=None,
        test_mode=True,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def email_sender():
    return RecordingEmail()


@pytest.fixture
def sms_sender():
    return RecordingSms()


@pytest.fixture
def stack(settings, clock, email_sender, sms_sender):
    """Auth services over a MemoryStore with recording senders.

    OTP challenges follow the fake clock; tokens use the wall clock because
    PyJWT checks expiry against it.
    """
    store = MemoryStore()
    router = DeliveryRouter(email_sender, sms_sender)
    otp = OtpChallengeManager(store, router, settings, clock=clock)
    issuer = TokenIssuer(settings)
    validator = TokenValidator(store, settings)
    auth = AuthService(
        store, settings, otp=otp, router=router, issuer=issuer, validator=validator
    )
    return SimpleNamespace(
        store=store,
        router=router,
        otp=otp,
        issuer=issuer,
        validator=validator,
        auth=auth,
        email=email_sender,
        sms=sms_sender,
        clock=clock,
        settings=settings,
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
