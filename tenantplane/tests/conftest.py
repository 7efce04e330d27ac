from __future__ import annotations

from typing import AsyncIterator

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tenantplane.core.config import Settings
from tenantplane.domain.models import Base
from tenantplane.persistence.db import build_session_factory
from tenantplane.providers.compute.fake import FakeComputeProvider
from tenantplane.providers.database.fake import FakeDatabaseAdmin
from tenantplane.services.control_plane import ControlPlane, build_control_plane
from tenantplane.services.telemetry import reset_telemetry
from tenantplane.tests.utils.tenants import PADDLE_SECRET


@pytest.fixture
def settings(tmp_path) -> Settings:
    # One SQLite file per test keeps state isolated without a Postgres server.
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tenantplane.db'}",
        compute_provider="fake",
        tenant_database_mode="fake",
        provisioning_execution_mode="inline",
        secrets_master_key="test-master-key",
        registry_push_token="push-token",
        paddle_webhook_secret=PADDLE_SECRET,
        deploy_health_timeout_s=1,
        deploy_poll_initial_s=0.01,
        deploy_poll_max_s=0.05,
        event_stream_heartbeat_s=1,
        ext_retry_backoff_ms=1,
    )


@pytest.fixture
async def session_factory(settings: Settings) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(settings.database_url)

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn) -> None:
        # Concurrent writers queue on the database lock instead of failing with SQLITE_BUSY.
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def compute() -> FakeComputeProvider:
    return FakeComputeProvider()


@pytest.fixture
def database_admin() -> FakeDatabaseAdmin:
    return FakeDatabaseAdmin()


@pytest.fixture
async def plane(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    compute: FakeComputeProvider,
    database_admin: FakeDatabaseAdmin,
) -> AsyncIterator[ControlPlane]:
    control_plane = build_control_plane(
        settings, session_factory, compute=compute, database_admin=database_admin
    )
    yield control_plane
    await control_plane.aclose()


@pytest.fixture(autouse=True)
def reset_process_telemetry() -> None:
    # Counters are process-wide; start every test from zero.
    reset_telemetry()
