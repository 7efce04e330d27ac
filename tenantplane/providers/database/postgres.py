from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from tenantplane.core.errors import ProvisioningError
from tenantplane.providers.database.base import DatabaseEndpoint, check_identifier


logger = logging.getLogger(__name__)


def _literal(value: str) -> str:
    # DDL cannot take bind parameters; quote the password as a SQL string literal.
    return "'" + value.replace("'", "''") + "'"


class PostgresDatabaseAdmin:
    def __init__(self, admin_url: str, endpoint: DatabaseEndpoint) -> None:
        self._admin_url = admin_url
        self._endpoint = endpoint
        self._engine: AsyncEngine | None = None

    def _get_engine(self) -> AsyncEngine:
        if self._engine is None:
            # CREATE DATABASE cannot run inside a transaction block.
            self._engine = create_async_engine(self._admin_url, isolation_level="AUTOCOMMIT", pool_size=2)
        return self._engine

    async def ensure_database(self, role: str, password: str) -> str:
        role = check_identifier(role)
        try:
            async with self._get_engine().connect() as conn:
                exists = await conn.scalar(text("SELECT 1 FROM pg_roles WHERE rolname = :role"), {"role": role})
                if exists:
                    await conn.execute(text(f"ALTER ROLE {role} WITH LOGIN PASSWORD {_literal(password)}"))
                else:
                    await conn.execute(text(f"CREATE ROLE {role} WITH LOGIN PASSWORD {_literal(password)}"))
                has_db = await conn.scalar(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": role}
                )
                if not has_db:
                    await conn.execute(text(f"CREATE DATABASE {role} OWNER {role}"))
        except SQLAlchemyError as exc:
            logger.warning("tenant_database_create_failed role=%s error=%s", role, type(exc).__name__)
            raise ProvisioningError(f"tenant database setup failed for {role}") from exc
        return self._endpoint.url_for(role, password, role)

    async def set_password(self, role: str, password: str) -> str:
        role = check_identifier(role)
        try:
            async with self._get_engine().connect() as conn:
                await conn.execute(text(f"ALTER ROLE {role} WITH PASSWORD {_literal(password)}"))
        except SQLAlchemyError as exc:
            logger.warning("tenant_database_password_failed role=%s error=%s", role, type(exc).__name__)
            raise ProvisioningError(f"password change failed for {role}") from exc
        return self._endpoint.url_for(role, password, role)

    async def drop(self, role: str) -> None:
        role = check_identifier(role)
        try:
            async with self._get_engine().connect() as conn:
                await conn.execute(text(f"DROP DATABASE IF EXISTS {role} WITH (FORCE)"))
                await conn.execute(text(f"DROP ROLE IF EXISTS {role}"))
        except SQLAlchemyError as exc:
            raise ProvisioningError(f"tenant database drop failed for {role}") from exc

    async def aclose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
