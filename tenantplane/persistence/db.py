from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tenantplane.core.config import Settings, get_settings


def build_engine(settings: Settings) -> AsyncEngine:
    _engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools for predictable latency under load.
    if not settings.database_url.startswith("sqlite"):
        _engine_kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
        _engine_kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
        _engine_kwargs["pool_timeout"] = 30
        _engine_kwargs["pool_recycle"] = 1800
        if settings.api_db_statement_timeout_ms > 0:
            _engine_kwargs["connect_args"] = {
                "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
            }
    return create_async_engine(settings.database_url, **_engine_kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


engine = build_engine(get_settings())
SessionLocal = build_session_factory(engine)
