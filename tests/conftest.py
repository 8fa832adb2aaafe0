import asyncio
import inspect
import os
import sys
from pathlib import Path
from typing import Optional

os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authguard.config import Settings, reset_settings_cache  # noqa: E402
from authguard.service.clock import FrozenClock  # noqa: E402


class FakeDirectory:
    """In-memory user directory standing in for the external user service."""

    def __init__(self) -> None:
        self.users: dict[str, tuple[str, str]] = {}
        self.emails: dict[str, str] = {}
        self.password_hashes: dict[str, str] = {}

    def add(self, identity: str, password: str, user_id: str, email: Optional[str] = None) -> None:
        self.users[identity] = (password, user_id)
        if email:
            self.emails[user_id] = email

    def verify_credentials(self, identity: str, password: str) -> Optional[str]:
        record = self.users.get(identity)
        if record and record[0] == password:
            return record[1]
        return None

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        self.password_hashes[user_id] = password_hash

    def get_email(self, user_id: str) -> Optional[str]:
        return self.emails.get(user_id)


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        session_ttl_minutes=30,
        login_rate_per_minute=1.0,
        login_burst=5,
        failure_window_minutes=15,
        mfa_timeout_seconds=1.0,
    )


@pytest.fixture
def directory():
    directory = FakeDirectory()
    directory.add("alice@example.com", "Correct-Horse-9", "u1", email="alice@example.com")
    return directory


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
