"""
tests/conftest.py -- Shared test fixtures for pcompass-auth.

This module provides:
  - FrozenClock: a Clock whose time only moves when a test moves it
  - user_store / usage_store: fresh in-memory stores per test
  - _make_test_stores(): isolated shared-memory DBs for the API client
  - _patch_lifespan(): wires test stores and the frozen clock into app.state
  - api_client: TestClient over the real app with a patched lifespan

Design: The API client needs named shared-memory SQLite URIs, not plain
:memory:. A plain :memory: engine holds one private database, so the user
store and the usage store would each get their own. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across every connection and engine in the same process.

DEBUG and both signing secrets must be set before any auth/core import so
get_settings() caches known values that tests can sign with.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any auth/core import; get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("AUTH_TOKEN_SECRET", "test-auth-secret-0123456789abcdef0123456789")
os.environ.setdefault("PRO_TOKEN_SECRET", "test-pro-secret-fedcba9876543210fedcba98765")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from auth.store import UserStore
from ratelimit.store import UsageStore

AUTH_SECRET = os.environ["AUTH_TOKEN_SECRET"]
PRO_SECRET = os.environ["PRO_TOKEN_SECRET"]

START = 1_700_000_000


class FrozenClock:
    """Clock pinned to a fixed instant. Tests move it explicitly."""

    def __init__(self, now: int = START) -> None:
        self.current = now

    def now(self) -> int:
        return self.current

    def advance(self, seconds: int) -> None:
        self.current += seconds


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore("sqlite:///:memory:", timeout=1.0)
    yield store
    store.close()


@pytest.fixture
def usage_store() -> Generator[UsageStore, None, None]:
    store = UsageStore("sqlite:///:memory:", timeout=1.0)
    yield store
    store.close()


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, UsageStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Both stores point at the same database, as they do in production.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'health').
    """
    url = f"sqlite:///file:test_pcompass_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=url, timeout=1.0), UsageStore(db_url=url, timeout=1.0)


def _patch_lifespan(user_store: UserStore, usage_store: UsageStore, clock: FrozenClock):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores and the frozen clock into app.state so
    TestClient routes see isolated test DBs and a controllable time source.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, user_store, usage_store, clock=clock)
        yield
        app.state.rate_limiter.close()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, UserStore, FrozenClock], None, None]:
    """Yield (client, user_store, clock) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers, middleware and exception handlers.
    """
    user_store, usage_store = _make_test_stores("api")
    clock = FrozenClock()

    app.router.lifespan_context = _patch_lifespan(user_store, usage_store, clock)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, user_store, clock

    usage_store.close()
    user_store.close()


@pytest.fixture(autouse=True)
def _reset_between_tests(request):
    """Reset process-wide state that would otherwise leak between tests.

    The slowapi limiter is a module-level singleton. The API client is module
    scoped, so its cookie jar and frozen clock are too.
    """
    limiter.reset()
    if "api_client" in request.fixturenames:
        client, _store, clock = request.getfixturevalue("api_client")
        client.cookies.clear()
        clock.current = START
    yield
