"""
tests/conftest.py -- Shared test fixtures for AuditGate unit and integration tests.

This module provides:
  - store / audit_store / audit_sink: isolated in-memory SQLite stores for
    single-threaded unit tests
  - file_store / file_audit_store: file-backed stores under tmp_path for
    multi-threaded tests (in-memory SQLite is per-connection and cannot
    be shared safely between worker threads that write concurrently)
  - make_request: IssueRequest factory with sensible defaults
  - api_client: TestClient over the real app with a patched lifespan and
    staff JWTs for every role

The DEBUG env var must be set before any access/auth/core import so
get_settings() auto-generates SECRET_KEY in dev mode rather than raising
ValueError. Rate limiting and the background sweep are switched off for the
same reason: both are read once at import or startup.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: configure the environment before any project import.
os.environ.setdefault("DEBUG", "true")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"

import pytest
from fastapi.testclient import TestClient

from access.models import IssueRequest
from access.store import TokenStore
from api.main import app
from audit.store import AuditLogStore, AuditSink
from auth.tokens import create_staff_token

# Fixed clock for deterministic lifecycle tests.
T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)

MEMORY_URL = "sqlite:///:memory:"

# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[TokenStore, None, None]:
    token_store = TokenStore(db_url=MEMORY_URL)
    yield token_store
    token_store.close()


@pytest.fixture
def file_store(tmp_path) -> Generator[TokenStore, None, None]:
    """TokenStore on a real SQLite file, safe to hit from a thread pool."""
    token_store = TokenStore(db_url=f"sqlite:///{tmp_path / 'tokens.db'}")
    yield token_store
    token_store.close()


@pytest.fixture
def audit_store() -> Generator[AuditLogStore, None, None]:
    log = AuditLogStore(db_url=MEMORY_URL)
    yield log
    log.close()


@pytest.fixture
def file_audit_store(tmp_path) -> Generator[AuditLogStore, None, None]:
    log = AuditLogStore(db_url=f"sqlite:///{tmp_path / 'audit.db'}")
    yield log
    log.close()


@pytest.fixture
def audit_sink(audit_store: AuditLogStore) -> AuditSink:
    return AuditSink(audit_store)


@pytest.fixture
def now() -> datetime:
    """The fixed clock T0. Pass it (or an offset of it) as now= to lifecycle calls."""
    return T0


@pytest.fixture
def make_request() -> Callable[..., IssueRequest]:
    """Return a factory for IssueRequest. Defaults: full_read_only, expires T0 + 1 day."""

    def _make(**overrides) -> IssueRequest:
        fields = {
            "auditor_name": "Dana Reyes",
            "auditor_email": "dana@certbody.example",
            "purpose": "ISO 9001 surveillance audit",
            "scope_type": "full_read_only",
            "expires_at": T0 + timedelta(days=1),
        }
        fields.update(overrides)
        return IssueRequest(**fields)

    return _make


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(token_store: TokenStore, audit_store: AuditLogStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the package-local database files. No sweep
    task is started.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.token_store = token_store
        app.state.audit_store = audit_store
        app.state.audit_sink = AuditSink(audit_store)
        app.state.sweep_task = None
        app.state.sweep_pass = None
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, dict[str, dict[str, str]]], None, None]:
    """Yield (client, headers) for API integration tests.

    headers maps a role ("admin", "manager", "auditor", "viewer") to an
    Authorization header carrying a staff JWT for that role. User ids are
    1 through 4 in that order.

    File-backed stores are used because TestClient runs sync route handlers
    in a thread pool.
    """
    db_dir = tmp_path_factory.mktemp("api")
    token_store = TokenStore(db_url=f"sqlite:///{db_dir / 'tokens.db'}")
    audit_store = AuditLogStore(db_url=f"sqlite:///{db_dir / 'audit.db'}")

    headers = {}
    for user_id, role in enumerate(("admin", "manager", "auditor", "viewer"), start=1):
        jwt = create_staff_token(user_id=user_id, username=f"test{role}", role=role, expire_seconds=3600)
        headers[role] = {"Authorization": f"Bearer {jwt}"}

    app.router.lifespan_context = _patch_lifespan(token_store, audit_store)

    # TrustedHostMiddleware rejects the default "testserver" host.
    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, headers

    token_store.close()
    audit_store.close()
