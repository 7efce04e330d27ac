from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.persistence.repos import leases as leases_repo


logger = logging.getLogger(__name__)

PROVISIONING = "provisioning"
DEPLOY = "deploy"
ROTATION = "rotation"


class LeaseManager:
    """Per-tenant exclusive leases backed by rows in ``tenant_leases``.

    Each acquire and release commits in its own session so the lease is
    visible to other processes immediately and survives the caller's
    transaction rolling back.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], ttls: dict[str, int]) -> None:
        self._session_factory = session_factory
        self._ttls = dict(ttls)

    async def try_acquire(self, tenant_id: str, scope: str) -> str | None:
        holder = uuid4().hex
        async with self._session_factory() as session:
            acquired = await leases_repo.try_acquire(
                session,
                tenant_id=tenant_id,
                scope=scope,
                holder=holder,
                ttl_s=self._ttls.get(scope, 300),
            )
            await session.commit()
        if not acquired:
            logger.info("lease_busy tenant_id=%s scope=%s", tenant_id, scope)
            return None
        return holder

    async def release(self, tenant_id: str, scope: str, holder: str) -> None:
        async with self._session_factory() as session:
            await leases_repo.release(session, tenant_id=tenant_id, scope=scope, holder=holder)
            await session.commit()

    @asynccontextmanager
    async def hold(self, tenant_id: str, scope: str) -> AsyncIterator[str | None]:
        # Yields None when another holder owns the lease; released on every exit path.
        holder = await self.try_acquire(tenant_id, scope)
        try:
            yield holder
        finally:
            if holder is not None:
                await self.release(tenant_id, scope, holder)
