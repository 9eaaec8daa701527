from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from notiflow.core.config import Settings
from notiflow.domain.models import Base
from notiflow.services.telemetry import reset_telemetry


@pytest.fixture
async def session_factory(tmp_path):
    # File-backed SQLite so every session in a test sees the same committed data.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'notiflow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    # Small, explicit limits keep retry and timeout paths fast and deterministic.
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        notification_retry_base_delay_ms=1000,
        notification_retry_max_delay_ms=60000,
        notification_max_attempts=3,
        notification_send_timeout_ms=200,
        notification_queue_batch_size=25,
        notification_recipient_cap=5000,
    )


@pytest.fixture(autouse=True)
def reset_telemetry_between_tests():
    # Counters are process-wide; isolate them per test.
    reset_telemetry()
    yield
    reset_telemetry()
