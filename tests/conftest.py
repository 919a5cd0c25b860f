"""
tests/conftest.py -- Shared fixtures for Keyward unit and integration tests.

This module provides:
  - settings: a Settings instance with a fixed key and test-friendly limits
  - store: an isolated file-backed AccountStore per test (tmp_path)
  - issuer / two_factor / sessions / admin_service: real services over `store`
  - make_account: factory that inserts an account with a password and roles
  - api_client: TestClient over the real app with a patched lifespan

Design: unit tests use a file DB under tmp_path so threaded tests get real
SQLite locking. The API client uses a named shared-memory URI (the format
file:name?mode=memory&cache=shared&uri=true) because TestClient runs route
handlers in a thread pool and plain :memory: would give each thread a blank
schema.

The DEBUG env var must be set before any core/auth import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from admin.service import AdminService
from api.limiter import limiter
from api.main import app, build_services
from auth.audit import MemoryAuditSink
from auth.models import Account
from auth.roles import SUPERADMIN, USER
from auth.session import SessionService
from auth.store import AccountStore
from auth.tokens import TokenIssuer, hash_password
from auth.twofactor import TwoFactorService
from core.config import Settings

TEST_SECRET = "k" * 48
PASSWORD = "correct-horse-battery"


class RecordingEmailSender:
    """EmailSender that keeps every message; set fail=True to simulate SMTP errors."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    def send(self, to: str, subject: str, body: str) -> None:
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.sent.append((to, subject, body))

    def last_token(self) -> str:
        """Extract the token query parameter from the most recent reset link."""
        body = self.sent[-1][2]
        return body.split("token=", 1)[1].split()[0]


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "lockout_max_attempts": 3,
        "allowed_redirect_uris": ["https://app.example.com/callback", "myapp://oauth"],
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store(tmp_path) -> Generator[AccountStore, None, None]:
    s = AccountStore(db_url=f"sqlite:///{tmp_path / 'keyward.db'}", timeout=10.0)
    s.ensure_system_roles()
    yield s
    s.close()


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def issuer(store, settings) -> TokenIssuer:
    return TokenIssuer(store, settings)


@pytest.fixture
def two_factor(store, settings, audit_sink) -> TwoFactorService:
    return TwoFactorService(store, settings, audit_sink)


@pytest.fixture
def sessions(store, issuer, two_factor, settings, audit_sink, email_sender) -> SessionService:
    return SessionService(store, issuer, two_factor, settings, audit_sink, email_sender)


@pytest.fixture
def admin_service(store, issuer, sessions, audit_sink) -> AdminService:
    return AdminService(store, issuer, sessions, audit_sink)


@pytest.fixture
def make_account(store):
    """Return a factory: make_account(email, roles=[...], password=..., confirmed=True) -> Account."""

    def factory(
        email: str,
        roles: list[str] | None = None,
        password: str | None = PASSWORD,
        confirmed: bool = True,
    ) -> Account:
        account_id = store.create_account(
            Account(
                email=email,
                hashed_password=hash_password(password) if password else None,
                email_confirmed=confirmed,
            ),
            roles=roles if roles is not None else [USER],
        )
        return store.get_by_id(account_id)

    return factory


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore, settings: Settings, audit_sink, email_sender, providers):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store through the same build_services() the real lifespan
    uses, with recording audit/email sinks and no real providers. The purge
    task is a long-sleeping coroutine so shutdown can cancel a real Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.audit_sink = audit_sink
        app.state.email_sender = email_sender
        app.state.providers = providers
        build_services(app, store, settings)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


class ApiContext:
    """Everything an API test needs: the client plus handles on the wiring."""

    def __init__(self, client: TestClient, store: AccountStore, audit_sink, email_sender, superadmin: Account):
        self.client = client
        self.store = store
        self.audit = audit_sink
        self.email = email_sender
        self.superadmin = superadmin

    def login(self, email: str, password: str = PASSWORD) -> dict[str, str]:
        """Log in and return an Authorization header for the new access token."""
        resp = self.client.post("/api/v1/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['tokens']['access_token']}"}

    def create_account(self, email: str, roles: list[str] | None = None, confirmed: bool = True) -> Account:
        account_id = self.store.create_account(
            Account(email=email, hashed_password=hash_password(PASSWORD), email_confirmed=confirmed),
            roles=roles if roles is not None else [USER],
        )
        return self.store.get_by_id(account_id)


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext over the real app with an isolated in-memory store.

    One shared-memory DB per test module keeps modules isolated. The rate
    limiter is disabled; the rate-limit test re-enables it explicitly. A
    SuperAdmin (superadmin@example.com / PASSWORD) exists before the client starts.
    """
    name = request.module.__name__.rsplit(".", 1)[-1]
    store = AccountStore(db_url=f"sqlite:///file:keyward_{name}?mode=memory&cache=shared&uri=true")
    store.ensure_system_roles()
    superadmin_id = store.create_account(
        Account(email="superadmin@example.com", hashed_password=hash_password(PASSWORD), email_confirmed=True),
        roles=[SUPERADMIN],
    )
    audit_sink = MemoryAuditSink()
    email_sender = RecordingEmailSender()
    settings = make_settings()

    app.router.lifespan_context = _patch_lifespan(store, settings, audit_sink, email_sender, providers={})
    limiter.enabled = False

    with TestClient(app, base_url="https://testserver", raise_server_exceptions=True) as client:
        yield ApiContext(client, store, audit_sink, email_sender, store.get_by_id(superadmin_id))

    limiter.enabled = True
    store.close()
