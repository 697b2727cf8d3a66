"""Shared fixtures: in-memory database, quota ledger and a wired FastAPI app."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from datamocker.counter_store import MemoryCounterStore
from datamocker.database import get_db
from datamocker.errors import MockerError
from datamocker.main import mocker_error_handler, request_validation_handler
from datamocker.models import Base
from datamocker.quota import QuotaLedger
from datamocker.routers import generate, keys, usage

# Fixed "now" used by quota tests: 2024-01-15 12:00:00 UTC
FIXED_NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def counter_store():
    return MemoryCounterStore()


@pytest.fixture
def ledger(counter_store):
    """Ledger with the default limits (5 anonymous / 20 authenticated) and a fixed clock."""
    return QuotaLedger(
        counter_store,
        limit_for=lambda authenticated: 20 if authenticated else 5,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def fake_generator():
    """Stands in for the provider call; returns a fenced JSON reply."""
    return AsyncMock(return_value='Here is your data:\n```json\n[{"id": 1}]\n```')


@pytest.fixture
def provider_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-server")
    monkeypatch.setenv("OPENAI_API_DEFAULT_MODEL", "gpt-4o-mini")
    monkeypatch.delenv("OPENAI_API_BASE_URL", raising=False)


@pytest.fixture
def app(db_session, ledger, fake_generator, provider_env):
    """Create FastAPI app with the generation, account and usage routers."""
    app = FastAPI()
    app.include_router(generate.router)
    app.include_router(keys.router)
    app.include_router(usage.router)

    app.add_exception_handler(MockerError, mocker_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    def get_test_db():
        yield db_session

    app.dependency_overrides[get_db] = get_test_db
    app.dependency_overrides[generate.get_generator] = lambda: fake_generator
    app.state.quota_ledger = ledger

    return app
