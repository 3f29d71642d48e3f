from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from pnp.core.config import get_settings
from pnp.persistence.db import create_schema
from pnp.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_state_between_tests() -> None:
    # Counters and cached settings are process-wide; isolate them per test.
    reset_telemetry()
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pnp.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)
