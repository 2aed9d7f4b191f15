"""
tests/conftest.py -- Shared test fixtures for tokengate.

This module provides:
  - memory_url: a fresh named shared-memory SQLite URL per test
  - auth_config / codec / issuer: an auth core built from a fixed test secret
  - _patch_lifespan(): wires an auth core built from test Settings into app.state
  - api_client: TestClient (store strategy) with a seeded admin and staff user
  - signed_client: TestClient wired with the stateless signed refresh strategy

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and the rate limits must be set before any api/ or core/ import:
get_settings() runs at import time, auto-generates SECRET_KEY in dev mode,
and the limit strings are baked into the route decorators.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import NamedTuple

# CRITICAL: set before any core/ or api/ import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("REFRESH_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_auth_state
from auth.models import AuthConfig, Role, User
from auth.tokens import TokenCodec, TokenIssuer, hash_password
from core.config import Settings, get_settings

TEST_SECRET = "Xk3v9QpL2mN8rT5wY7zA1bC4dE6fG0hJ2kL4mN6pQ8rS"

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "adminpass123"
STAFF_EMAIL = "staff@example.com"
STAFF_PASSWORD = "staffpass123"


def _memory_url(name: str) -> str:
    return f"sqlite:///file:{name}_{uuid.uuid4().hex[:8]}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def memory_url() -> str:
    return _memory_url("tokengate_unit")


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(
        secret=TEST_SECRET,
        issuer="OEM-EV-Warranty-System",
        audience="warranty-api",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
    )


@pytest.fixture
def codec(auth_config: AuthConfig) -> TokenCodec:
    return TokenCodec(auth_config)


@pytest.fixture
def issuer(codec: TokenCodec) -> TokenIssuer:
    return TokenIssuer(codec)


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


class AppFixture(NamedTuple):
    client: TestClient
    admin_token: str
    staff_token: str
    admin_id: int
    staff_id: int


def _patch_lifespan(settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Builds the real auth core from `settings` (so routes, stores and
    dependencies are the production ones) but skips the purge task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_auth_state(app, settings)
        app.state.purge_task = None
        yield
        app.state.engine.dispose()

    return test_lifespan


def _seed_users(app) -> tuple[str, str, int, int]:
    users = app.state.user_store
    issuer = app.state.issuer
    admin = User(
        username="testadmin",
        email=ADMIN_EMAIL,
        role=Role.admin.value,
        hashed_password=hash_password(ADMIN_PASSWORD),
    )
    staff = User(
        username="teststaff",
        email=STAFF_EMAIL,
        role=Role.service_staff.value,
        hashed_password=hash_password(STAFF_PASSWORD),
    )
    admin.id = users.create_user(admin)
    staff.id = users.create_user(staff)
    admin_token = issuer.issue_access_token(issuer.access_claims_for(admin))
    staff_token = issuer.issue_access_token(issuer.access_claims_for(staff))
    return admin_token, staff_token, admin.id, staff.id


def _app_fixture(settings: Settings) -> Generator[AppFixture, None, None]:
    app.router.lifespan_context = _patch_lifespan(settings)
    with TestClient(app, raise_server_exceptions=True) as client:
        admin_token, staff_token, admin_id, staff_id = _seed_users(app)
        yield AppFixture(client, admin_token, staff_token, admin_id, staff_id)


@pytest.fixture(scope="module")
def api_client() -> Generator[AppFixture, None, None]:
    """Yield an AppFixture wired with the default (store) refresh strategy."""
    settings = get_settings().model_copy(
        update={"database_url": _memory_url("tokengate_api"), "refresh_strategy": "store"}
    )
    yield from _app_fixture(settings)


@pytest.fixture(scope="module")
def signed_client() -> Generator[AppFixture, None, None]:
    """Yield an AppFixture wired with stateless signed refresh tokens."""
    settings = get_settings().model_copy(
        update={"database_url": _memory_url("tokengate_signed"), "refresh_strategy": "signed"}
    )
    yield from _app_fixture(settings)
