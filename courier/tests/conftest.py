from __future__ import annotations

import os

# Point the process-wide engine at SQLite before any courier module builds it.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./courier-test.db")
os.environ.setdefault("SENDER_BACKEND", "fake")

import pytest

from courier.core.config import get_settings
from courier.domain.models import Base
from courier.persistence.db import create_engine, create_session_factory
from courier.services.senders import jobs as jobs_module
from courier.services.telemetry import reset_metrics


@pytest.fixture(autouse=True)
def reset_settings_and_metrics():
    # Each test sees fresh settings and counters; env changes via monkeypatch stay local.
    get_settings.cache_clear()
    reset_metrics()
    yield
    get_settings.cache_clear()
    reset_metrics()


@pytest.fixture(autouse=True)
def isolate_job_handlers(monkeypatch):
    monkeypatch.setattr(jobs_module, "_job_handlers", {})


@pytest.fixture
async def queue_engine(tmp_path):
    # A file database per test so separate connections really contend like separate workers.
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(queue_engine):
    return create_session_factory(queue_engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as db:
        yield db
