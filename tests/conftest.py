"""Pytest configuration and fixtures for the login defense tests."""
import os
from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient

# Set test environment before importing the app
os.environ["DEBUG"] = "true"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-testing-only-0123456789"
os.environ["ADMIN_PASSWORD"] = "admin-test-password"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["DURABLE_BACKEND"] = "memory"

from matchguard.core.client_ip import RequestContext
from matchguard.core.config import Settings
from matchguard.core.exceptions import StorageUnavailableError
from matchguard.main import create_app
from matchguard.services.container import SecurityServices, build_services
from matchguard.storage.memory import InMemoryCache, InMemoryDurableStore, InMemoryLockManager

ATTACKER_IP = "203.0.113.5"
USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) TestBrowser/1.0"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSender:
    """Notification sender that keeps every message."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to: str, subject: str, body: str) -> None:
        self.sent.append((to, subject, body))

    @property
    def subjects(self) -> list[str]:
        return [subject for _, subject, _ in self.sent]


class FailingSender:
    def send(self, to: str, subject: str, body: str) -> None:
        raise ConnectionError("SMTP server unreachable")


class FailingCache:
    """Cache whose every call fails like an unreachable Redis."""

    def _fail(self, operation: str, key: str):
        raise StorageUnavailableError(operation, key)

    def get(self, key):
        self._fail("get", key)

    def set(self, key, value, ttl):
        self._fail("set", key)

    def delete(self, key):
        self._fail("delete", key)

    def incr(self, key, ttl):
        self._fail("incr", key)

    def increment_below(self, key, limit, ttl):
        self._fail("increment_below", key)

    def ttl(self, key):
        self._fail("ttl", key)

    def ping(self):
        return False


class FlakyDurableStore(InMemoryDurableStore):
    """In-memory durable store that can be switched into failure mode."""

    def __init__(self):
        super().__init__()
        self.fail = False

    def get_option(self, name, default=None):
        if self.fail:
            raise StorageUnavailableError("get", name)
        return super().get_option(name, default)

    def get_user_field(self, user_id, name, default=None):
        if self.fail:
            raise StorageUnavailableError("get", f"{user_id}/{name}")
        return super().get_user_field(user_id, name, default)


def make_ctx(
    ip: Optional[str] = ATTACKER_IP,
    user_agent: str = USER_AGENT,
    path: str = "/api/auth/login",
    remote_addr: str = "10.0.0.2",
) -> RequestContext:
    """Request context as seen behind a proxy that sets X-Forwarded-For."""
    headers = {"User-Agent": user_agent}
    if ip:
        headers["X-Forwarded-For"] = ip
    return RequestContext(headers=headers, remote_addr=remote_addr, path=path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DEBUG=True,
        JWT_SECRET_KEY="test-secret-key-for-testing-only-0123456789",
        ADMIN_PASSWORD="admin-test-password",
        ADMIN_EMAIL="security@example.com",
        CACHE_BACKEND="memory",
        DURABLE_BACKEND="memory",
        RATE_LIMIT_OVERRIDES="",
    )


@pytest.fixture
def cache(clock) -> InMemoryCache:
    return InMemoryCache(clock=clock)


@pytest.fixture
def durable() -> FlakyDurableStore:
    return FlakyDurableStore()


@pytest.fixture
def locks() -> InMemoryLockManager:
    return InMemoryLockManager()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def services(settings, clock, cache, durable, locks, sender) -> SecurityServices:
    """Fully wired services on in-memory storage with inline notifications."""
    return build_services(
        settings,
        clock=clock,
        cache=cache,
        durable=durable,
        locks=locks,
        sender=sender,
        background_notifications=False,
    )


@pytest.fixture
def ctx_factory() -> Callable[..., RequestContext]:
    return make_ctx


@pytest.fixture
def client(settings, services) -> TestClient:
    """Test client for an app wired to the test services."""
    app = create_app(settings=settings, services=services)
    return TestClient(app)
