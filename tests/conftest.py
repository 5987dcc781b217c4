"""Shared test fixtures — reduces boilerplate across test modules.

Provides:
- ``set_test_config`` — autouse fixture that patches common settings
- ``MOCK_USER`` / ``USER_ID`` / ``REPOSITORY_ID`` / ``JOB_ID`` — reusable IDs
- ``auth_header`` — helper to generate JWT auth headers
- ``memory_cache`` — ContentCache over a fresh in-process backend
- ``FakePool`` / ``FakeConnection`` — asyncpg stand-ins with real
  transaction semantics (commit / rollback bookkeeping)
- ``test_client`` — pre-built TestClient against the app
"""

from datetime import datetime, timezone
from uuid import UUID

import pytest
from fastapi.testclient import TestClient

from app.auth import create_token
from app.clients.cache_client import MemoryCacheBackend
from app.main import app
from app.services.content_cache import ContentCache


def pytest_configure(config):
    """Register custom markers.

    Tests that need real external services (database, Redis) should be
    decorated with ``@pytest.mark.integration`` and skipped in CI with
    ``-m 'not integration'``.
    """
    config.addinivalue_line(
        "markers",
        "integration: tests requiring external services (database, cache, etc.)",
    )


# ---------------------------------------------------------------------------
# Canonical test identifiers (used by most test modules)
# ---------------------------------------------------------------------------

USER_ID = "22222222-2222-2222-2222-222222222222"
OTHER_USER_ID = "66666666-6666-6666-6666-666666666666"
REPOSITORY_ID = 7
JOB_ID = UUID("55555555-5555-5555-5555-555555555555")
MIGRATION_ID = UUID("44444444-4444-4444-4444-444444444444")
NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

MOCK_USER: dict = {
    "id": UUID(USER_ID),
    "github_login": "qeqqe",
    "access_token": "gho_testtoken123",
}

MOCK_REPOSITORY: dict = {
    "id": REPOSITORY_ID,
    "user_id": UUID(USER_ID),
    "owner": "qeqqe",
    "name": "Code-Migration-Tool",
    "full_name": "qeqqe/Code-Migration-Tool",
    "default_branch": "main",
    "migration_status": "PENDING",
    "created_at": NOW,
    "updated_at": NOW,
}

# ---------------------------------------------------------------------------
# Environment patching
# ---------------------------------------------------------------------------

_SETTINGS_PATCHES: dict[str, object] = {
    "app.config.settings.JWT_SECRET": "test-secret-key-for-unit-tests",
    "app.config.settings.FRONTEND_URL": "http://localhost:4200",
    "app.config.settings.REDIS_URL": "",
    "app.config.settings.REDIS_CACHE_TTL": 7200,
    "app.config.settings.CACHE_KEY_PREFIX": "repo",
    "app.config.settings.CACHE_STRIPPED_REPO_PREFIX": "qeqqe/Code-Migration-Tool",
    "app.config.settings.CHAT_CACHE_OWNER": "current",
    "app.config.settings.CHAT_CACHE_REPO": "repo",
    "app.config.settings.LLM_API_URL": "http://llm.test/v1",
    "app.config.settings.LLM_API_KEY": "",
    "app.config.settings.LLM_DEFAULT_MODEL": "deepseek",
    "app.config.settings.CHAT_STREAM_IDLE_TIMEOUT": 5.0,
    "app.config.settings.GITHUB_API_BASE": "https://api.github.test",
}


@pytest.fixture(autouse=True)
def set_test_config(monkeypatch):
    """Patch common application settings for a safe test environment.

    Also resets the process-wide cache singletons so no test sees another
    test's cached entries.
    """
    for target, value in _SETTINGS_PATCHES.items():
        monkeypatch.setattr(target, value)
    monkeypatch.setattr("app.clients.cache_client._backend", None)
    monkeypatch.setattr("app.services.content_cache._content_cache", None)
    monkeypatch.setattr("app.clients.github_client._repo_meta_cache", {})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def auth_header(user_id: str = USER_ID, login: str = "qeqqe") -> dict:
    """Return an ``Authorization`` header dict with a valid JWT."""
    token = create_token(user_id, login)
    return {"Authorization": f"Bearer {token}"}


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_backend(clock) -> MemoryCacheBackend:
    return MemoryCacheBackend(maxsize=128, timer=clock)


@pytest.fixture
def memory_cache(memory_backend) -> ContentCache:
    """ContentCache over a private in-process backend."""
    return ContentCache(memory_backend, default_ttl=60, key_prefix="repo", stripped_prefix="qeqqe/Code-Migration-Tool")


class FakeTransaction:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn

    async def __aenter__(self):
        self._conn.transactions_started += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            self._conn.commits += 1
        else:
            self._conn.rollbacks += 1
        return False


class FakeConnection:
    """Records transaction outcomes; queries are served by patched repo functions."""

    def __init__(self) -> None:
        self.transactions_started = 0
        self.commits = 0
        self.rollbacks = 0

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self)


class _Acquire:
    def __init__(self, conn: FakeConnection) -> None:
        self._conn = conn

    async def __aenter__(self) -> FakeConnection:
        return self._conn

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakePool:
    def __init__(self, conn: FakeConnection | None = None) -> None:
        self.conn = conn or FakeConnection()

    def acquire(self) -> _Acquire:
        return _Acquire(self.conn)


@pytest.fixture
def fake_pool() -> FakePool:
    return FakePool()


@pytest.fixture
def test_client() -> TestClient:
    """A fresh ``TestClient`` instance wrapping the FastAPI app."""
    return TestClient(app)
