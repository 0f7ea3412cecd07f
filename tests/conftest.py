import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before anything imports orgauth.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
# Sessions live in the in-process cache; an async Redis client cannot be shared
# across the per-test event loops below
os.environ["REDIS_URL"] = ""
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from orgauth.config import Settings, get_settings  # noqa: E402
from orgauth.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402


class ResetTokenOutbox:
    """Collects reset tokens handed to the delivery sink."""

    def __init__(self) -> None:
        self.sent = []

    def __call__(self, user, token, expires_at) -> None:
        self.sent.append((user.email, token, expires_at))

    def latest_for(self, email: str) -> str:
        for sent_email, token, _ in reversed(self.sent):
            if sent_email == email:
                return token
        raise AssertionError(f"no reset token sent to {email}")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def outbox() -> ResetTokenOutbox:
    return ResetTokenOutbox()


@pytest.fixture
def runtime(settings, outbox) -> Runtime:
    return Runtime(settings, reset_token_sink=outbox)


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
