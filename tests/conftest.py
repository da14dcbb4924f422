"""
tests/conftest.py -- Shared test fixtures for AuthGate.

This module provides:
  - store / ledger / revocations: isolated in-memory components for unit tests
  - make_account(): creates an account with a known password
  - settings / make_settings(): debug Settings with fixed, distinct signing keys
  - password: the plaintext password of every fixture account
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - api_client: TestClient against the real app with an isolated database
  - api_account(): creates an account in the api_client database

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI shares one in-memory instance across all
connections in the same process.

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates signing keys in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any core/api import so get_settings() can
# auto-generate signing keys in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app, configure_state
from auth.ledger import LoginAttemptLedger
from auth.models import Account
from auth.revocation import RevocationRegistry
from auth.store import AccountStore
from auth.tokens import hash_password
from core.config import Settings

PASSWORD = "Correct-Horse-42!"

# One bcrypt hash for every fixture account keeps the suite fast.
_PASSWORD_HASH = hash_password(PASSWORD)
_db_counter = itertools.count()


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = AccountStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def ledger(store: AccountStore) -> LoginAttemptLedger:
    return LoginAttemptLedger(store.engine)


@pytest.fixture
def revocations() -> RevocationRegistry:
    return RevocationRegistry()


@pytest.fixture
def make_account(store: AccountStore) -> Callable[..., Account]:
    """Create and return a persisted account. Extra kwargs override Account fields."""

    def _make(username: str = "alice", **fields) -> Account:
        account = Account(
            username=username,
            email=fields.pop("email", f"{username}@example.com"),
            password_hash=fields.pop("password_hash", _PASSWORD_HASH),
            **fields,
        )
        account_id = store.create_account(account)
        return store.get_by_id(account_id)

    return _make


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": "a" * 32 + "-access-signing-key",
        "refresh_secret_key": "b" * 32 + "-refresh-signing-key",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def password() -> str:
    """Plaintext password of every account created by make_account / api_account."""
    return PASSWORD


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, accounts: AccountStore):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        configure_state(app, settings, accounts)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AccountStore], None, None]:
    """Yield (client, store) for API integration tests.

    Each test module gets its own database, revocation registry and rate
    limit buckets. Tests that need accounts create them through `store` with
    unique usernames, since state is shared within the module.
    """
    accounts = AccountStore(f"sqlite:///file:test_auth_{next(_db_counter)}?mode=memory&cache=shared&uri=true")
    app.router.lifespan_context = _patch_lifespan(make_settings(), accounts)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, accounts

    accounts.close()


@pytest.fixture
def api_account(api_client: tuple[TestClient, AccountStore]) -> Callable[[str], int]:
    """Create an account in the API test database and return its id."""
    _client, accounts = api_client

    def _make(username: str) -> int:
        return accounts.create_account(
            Account(username=username, email=f"{username}@example.com", password_hash=_PASSWORD_HASH)
        )

    return _make

