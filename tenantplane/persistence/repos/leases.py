from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.domain.models import TenantLease
from tenantplane.persistence.dialect import insert_for


async def try_acquire(
    session: AsyncSession,
    *,
    tenant_id: str,
    scope: str,
    holder: str,
    ttl_s: int,
) -> bool:
    now = datetime.now(timezone.utc)
    # Reclaim leases abandoned by crashed holders before contending.
    await session.execute(
        delete(TenantLease).where(
            TenantLease.tenant_id == tenant_id,
            TenantLease.scope == scope,
            TenantLease.expires_at < now,
        )
    )
    stmt = insert_for(session, TenantLease).values(
        tenant_id=tenant_id,
        scope=scope,
        holder=holder,
        acquired_at=now,
        expires_at=now + timedelta(seconds=max(1, ttl_s)),
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=[TenantLease.tenant_id, TenantLease.scope])
    result = await session.execute(stmt)
    return int(result.rowcount or 0) == 1


async def release(session: AsyncSession, *, tenant_id: str, scope: str, holder: str) -> None:
    # Only the holder may release, so a reclaimed lease is never dropped by its old owner.
    await session.execute(
        delete(TenantLease).where(
            TenantLease.tenant_id == tenant_id,
            TenantLease.scope == scope,
            TenantLease.holder == holder,
        )
    )
