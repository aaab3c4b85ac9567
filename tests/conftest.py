"""
tests/conftest.py -- Shared test fixtures for credgate.

This module provides:
  - OutboxMailer / RecordingUploader: in-memory stand-ins for SMTP and S3
  - FrozenClock: a settable clock for expiry-boundary tests
  - store / service: an isolated AccountStore and CredentialService for unit tests
  - client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the TestClient fixture because sync route handlers run in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to each
worker thread. Each fixture instance gets a unique name so tests never share
state.

DEBUG and friends must be set before any app import so get_settings()
auto-generates the signing secrets and accepts the TestClient host.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core/api import -- Settings is cached on first use.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", "testserver")
os.environ.setdefault("AUTH_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.mailer import OutgoingMail
from auth.service import CredentialService
from auth.store import AccountStore
from auth.tokens import TokenSigner
from core.config import get_settings

# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class OutboxMailer:
    """Collects mail instead of sending it."""

    is_configured = True

    def __init__(self) -> None:
        self.outbox: list[OutgoingMail] = []

    async def send(self, mail: OutgoingMail) -> bool:
        self.outbox.append(mail)
        return True

    def last_to(self, address: str) -> OutgoingMail:
        matches = [m for m in self.outbox if m.to == address]
        assert matches, f"no mail sent to {address}"
        return matches[-1]


class RecordingUploader:
    """Pretends to store images and returns a predictable URL."""

    is_configured = True

    def __init__(self) -> None:
        self.uploads: list[tuple[bytes, str | None, str | None]] = []

    def upload(self, data: bytes, filename: str | None, content_type: str | None) -> str | None:
        self.uploads.append((data, filename, content_type))
        return f"https://images.test/{len(self.uploads)}-{filename}"


class FrozenClock:
    """Callable clock whose time only moves when a test moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


def _shared_memory_url() -> str:
    return f"sqlite:///file:test_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = AccountStore(_shared_memory_url())
    yield s
    s.close()


@pytest.fixture
def mailer() -> OutboxMailer:
    return OutboxMailer()


@pytest.fixture
def uploader() -> RecordingUploader:
    return RecordingUploader()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def service(store, mailer, uploader, clock) -> CredentialService:
    settings = get_settings()
    return CredentialService(
        store=store,
        signer=TokenSigner(settings),
        mailer=mailer,
        uploader=uploader,
        settings=settings,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Integration fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def client(service) -> Generator[TestClient, None, None]:
    """TestClient over the real app with the test CredentialService wired in.

    The service uses a real clock here; expiry boundaries are covered by the
    unit tests with FrozenClock. TestClient runs background tasks before the
    request call returns, so mail is in the outbox by the time a test looks.
    """
    service.clock = lambda: datetime.now(timezone.utc)

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.credentials = service
        yield

    app.router.lifespan_context = test_lifespan
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c

