"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It pins APP_ENV before settings are imported and provides deterministic
time, an in-memory audit database and a fully wired test application.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("AUDIT_DATABASE_URL", "sqlite+aiosqlite://")

from typing import AsyncIterator, Iterator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from donation_guard.audit.store import AbstractAuditStore, SqlAlchemyAuditStore
from donation_guard.audit.trail import AuditTrail
from donation_guard.core.app_factory import create_app
from donation_guard.core.config import Settings
from donation_guard.core.container import SecurityCore, build_security_core
from donation_guard.core.scheduling import ManualClock, ManualScheduler


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def scheduler(clock: ManualClock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest_asyncio.fixture
async def audit_store() -> AsyncIterator[SqlAlchemyAuditStore]:
    """Fresh in-memory audit database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    store = SqlAlchemyAuditStore(engine)
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def audit_trail(audit_store: SqlAlchemyAuditStore, clock: ManualClock) -> AuditTrail:
    return AuditTrail(audit_store, clock=clock)


@pytest.fixture
def mock_audit_store() -> AsyncMock:
    store = AsyncMock(spec=AbstractAuditStore)
    store.insert.return_value = 1
    return store


@pytest.fixture
def make_core(clock: ManualClock, scheduler: ManualScheduler, mock_audit_store: AsyncMock):
    """Factory building a SecurityCore on virtual time with a mocked audit store."""

    def _make(**overrides) -> SecurityCore:
        settings = Settings(**overrides)
        return build_security_core(
            settings,
            clock=clock,
            scheduler=scheduler,
            audit_store=mock_audit_store,
        )

    return _make


@pytest.fixture
def app(make_core) -> FastAPI:
    return create_app(core=make_core())


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client
