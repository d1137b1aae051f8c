import os
import tempfile

os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="asset-console-logs-"))
os.environ.setdefault("BACKGROUND_REFRESH", "0")

import pytest

from accounts import AuthContext
from fakes import FakeAssetService, FakeTimerFactory
from view_state import ViewStateStore


@pytest.fixture
def admin():
    return AuthContext("admin-1", "admin", name="Admin", role="admin", token="admin-token")


@pytest.fixture
def user():
    return AuthContext("user-1", "jdoe", name="Jane Doe", role="user", token="user-token")


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def service():
    return FakeAssetService()


@pytest.fixture
def make_store(timers):
    def factory(service, auth):
        return ViewStateStore(service, auth, timer_factory=timers)

    return factory
