from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any escapehatch module builds it.
_DB_DIR = tempfile.mkdtemp(prefix="escapehatch-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'escapehatch.db')}"
os.environ.setdefault("ROOM_CONTROL_PROVIDER", "fake")

import pytest

from escapehatch.core.config import get_settings
from escapehatch.domain.models import Base
from escapehatch.persistence.db import SessionLocal, engine
from escapehatch.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
async def reset_schema_between_tests() -> None:
    # Every test starts from empty tables.
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)
        await connection.run_sync(Base.metadata.create_all)
    reset_telemetry()
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Tests that monkeypatch env vars need a fresh Settings instance.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session():
    async with SessionLocal() as db_session:
        yield db_session
