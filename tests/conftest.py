"""
tests/conftest.py -- Shared test fixtures for Inkwell integration tests.

This module provides:
  - FakeRedis / DownRedis: in-process stand-ins for the redis.asyncio client,
    one working and one that fails every call like an unreachable server
  - RecordingNotifier: captures password reset codes instead of sending them
  - make_user_store() / make_post_store(): fresh in-memory stores, initialized
  - _patch_lifespan(): wires test stores and FakeRedis into app.state,
    bypassing real startup
  - api_client: TestClient with an admin JWT for API integration tests
  - login(): password login helper that returns (access, refresh, user_id)

Design: stores use "sqlite+aiosqlite://" (in-memory). core/database.py gives
in-memory URLs a StaticPool, so every checkout sees the same schema. Each
store, and every coroutine that touches it, must live on one event loop: the
TestClient portal loop for API tests, the asyncio.run() loop of the test for
unit tests. That is why stores are built inside the lifespan / the test body
and never in a plain sync fixture.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates both signing keys in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import re
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY and REFRESH_SECRET_KEY instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from api.limiter import limiter
from api.main import app, wire_services
from auth.models import User
from auth.store import UserStore
from auth.tokens import TokenAuthority, hash_password
from blog.store import PostStore
from core.config import get_settings

MEMORY_DB = "sqlite+aiosqlite://"

ADMIN_EMAIL = "admin@inkwell.test"
ADMIN_PASSWORD = "adminpass123"

# Login and register are limited to a handful of calls per minute; the suite
# makes far more than that from the same "client".
limiter.enabled = False


# ---------------------------------------------------------------------------
# Async test support
# ---------------------------------------------------------------------------


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


# ---------------------------------------------------------------------------
# Redis doubles
# ---------------------------------------------------------------------------


class FakeRedis:
    """The subset of redis.asyncio.Redis that cache/store.py calls.

    values holds decoded strings (the real client runs with
    decode_responses=True); ttls records the ex= passed to each set().
    """

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.values[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def unlink(self, *keys: str) -> int:
        return await self.delete(*keys)

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        # Only "<escaped literal>*" patterns are ever issued.
        prefix = re.sub(r"\\(.)", r"\1", (match or "*")[:-1])
        for key in list(self.values):
            if key.startswith(prefix):
                yield key

    async def aclose(self) -> None:
        self.closed = True


class DownRedis:
    """Every call fails the way redis-py does when the server is unreachable."""

    def _fail(self, *args, **kwargs):
        raise RedisConnectionError("Error 111 connecting to 127.0.0.1:6379. Connection refused.")

    ping = get = set = delete = unlink = scan_iter = _fail

    async def aclose(self) -> None:
        return None


class RecordingNotifier:
    """Reset-code notifier that keeps every code it was asked to deliver."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, int]] = []

    async def send_reset_code(self, email: str, code: str, expires_in: int) -> None:
        self.sent.append((email, code, expires_in))

    def last_code(self, email: str) -> str:
        return [code for to, code, _ in self.sent if to == email][-1]


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


async def make_user_store() -> UserStore:
    store = UserStore(MEMORY_DB)
    await store.init()
    return store


async def make_post_store() -> PostStore:
    store = PostStore(MEMORY_DB)
    await store.init()
    return store


def past_clock(seconds: int = 3600):
    """A clock running `seconds` behind real time. Tokens it issues are already expired."""
    return lambda: datetime.now(timezone.utc) - timedelta(seconds=seconds)


def expired_access_token(user_id: int, role: str) -> str:
    """Sign an access token with the app's key that expired an hour ago."""
    return TokenAuthority.from_settings(get_settings(), clock=past_clock()).issue_access_token(user_id, role)


def _patch_lifespan(redis_client, notifier=None):
    """Return an async context manager that replaces the real lifespan.

    Builds in-memory stores on the TestClient loop, wires them together with
    the given Redis double through the same wire_services() the real lifespan
    uses, and seeds one admin account. Reset codes go to notifier.
    """
    from cache.store import RedisCache

    @asynccontextmanager
    async def test_lifespan(app):
        user_store = await make_user_store()
        post_store = await make_post_store()
        wire_services(app, get_settings(), user_store, post_store, RedisCache(redis_client), notifier)
        app.state.test_admin_id = await user_store.create_user(
            User(
                username="testadmin",
                email=ADMIN_EMAIL,
                role="admin",
                hashed_password=hash_password(ADMIN_PASSWORD),
            )
        )
        yield
        await post_store.close()
        await user_store.close()

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def redis_double() -> FakeRedis:
    """The FakeRedis behind api_client, so tests can inspect cached keys."""
    return FakeRedis()


@pytest.fixture(scope="module")
def reset_outbox() -> RecordingNotifier:
    """Collects the password reset codes api_client sends."""
    return RecordingNotifier()


@pytest.fixture(scope="module")
def api_client(
    redis_double: FakeRedis, reset_outbox: RecordingNotifier
) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores.
    token is a live admin access token for Authorization headers.
    """
    app.router.lifespan_context = _patch_lifespan(redis_double, reset_outbox)

    with TestClient(app, raise_server_exceptions=True) as client:
        uid = app.state.test_admin_id
        token = app.state.token_authority.issue_access_token(uid, "admin")
        yield client, token, uid


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def register(client: TestClient, username: str, email: str, password: str = "secret123") -> int:
    resp = client.post("/api/v1/auth/register", json={"username": username, "email": email, "password": password})
    assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
    return resp.json()["data"]["id"]


def login(client: TestClient, email: str, password: str = "secret123") -> tuple[str, str, int]:
    """Log in and return (access_token, refresh_token, user_id).

    The refresh cookie set by the response is dropped from the client jar so
    one test's session never leaks into another's requests.
    """
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
    client.cookies.clear()
    data = resp.json()
    return data["access_token"], data["refreshToken"], data["user"]["id"]
