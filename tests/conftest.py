"""
tests/conftest.py -- Shared test fixtures for ScholarGate.

This module provides:
  - settings:   Settings with injected test signing secrets, cheap bcrypt, and
                a uniquely named shared-memory SQLite database per test
  - settings_factory: make_settings(**overrides) for non-default configs
  - gateway:    RecordingGateway -- captures every delivered link
  - objects:    MemoryObjectStore -- keeps uploaded documents in a dict
  - services:   stores + workflows wired exactly as the API wires them
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. The named URI
format (file:name?mode=memory&cache=shared&uri=true) shares one in-memory
instance across all connections in the same process; a fresh uuid per test
keeps tests isolated.

The DEBUG env var must be set before any api/ import: api/main.py reads
get_settings() at import time for its middleware configuration.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from types import SimpleNamespace

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate signing secrets in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from core.config import Settings
from notify.gateway import DeliveryResult

TEST_ACCESS_SECRET = "test-access-secret-0123456789abcdef0123456789"
TEST_REFRESH_SECRET = "test-refresh-secret-fedcba9876543210fedcba98"
FRONTEND_URL = "http://frontend.test"

# Rate limits are exercised by slowapi itself; here they would only make
# test outcomes depend on test ordering.
limiter.enabled = False


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


@dataclass
class SentMessage:
    to: str
    subject: str
    link: str

    @property
    def secret(self) -> str:
        """The token secret embedded in the link (last path segment, query stripped)."""
        return self.link.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]


class RecordingGateway:
    """NotificationGateway double. Set fail=True to simulate a mail outage."""

    def __init__(self) -> None:
        self.sent: list[SentMessage] = []
        self.fail = False

    def deliver(self, to_address: str, subject: str, link: str) -> DeliveryResult:
        self.sent.append(SentMessage(to_address, subject, link))
        if self.fail:
            return DeliveryResult(ok=False, error="SMTPServerDisconnected")
        return DeliveryResult(ok=True)

    @property
    def last(self) -> SentMessage:
        return self.sent[-1]


class MemoryObjectStore:
    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}

    def store(self, filename: str, content: bytes) -> str:
        key = f"{uuid.uuid4().hex}_{filename}"
        self.blobs[key] = content
        return f"memory://documents/{key}"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    """Settings for one isolated test run. Keyword overrides win."""
    values = {
        "debug": True,
        "access_secret_key": TEST_ACCESS_SECRET,
        "refresh_secret_key": TEST_REFRESH_SECRET,
        "bcrypt_rounds": 4,
        "database_url": f"sqlite:///file:test_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true",
        "frontend_url": FRONTEND_URL,
        "mail_backend": "log",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """make_settings itself, for tests that need non-default configuration."""
    return make_settings


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def objects() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def services(settings, gateway, objects) -> Generator[SimpleNamespace, None, None]:
    """Stores and workflows wired the same way the API lifespan wires them."""
    ns = SimpleNamespace()
    wire_services(ns, settings, gateway=gateway, objects=objects)
    yield ns
    ns.engine.dispose()


@pytest.fixture
def api_client(settings, gateway, objects) -> Generator[TestClient, None, None]:
    """TestClient over the real app; lifespan replaced to wire test services.

    base_url uses "localhost" so requests pass TrustedHostMiddleware.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app.state, settings, gateway=gateway, objects=objects)
        yield
        app.state.engine.dispose()

    app.router.lifespan_context = test_lifespan
    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client
