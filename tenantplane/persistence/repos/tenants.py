from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.domain.models import Tenant


async def get_tenant(session: AsyncSession, tenant_id: str, *, refresh: bool = False) -> Tenant | None:
    stmt = select(Tenant).where(Tenant.id == tenant_id)
    if refresh:
        # Bypass the identity map after Core updates changed the row underneath.
        stmt = stmt.execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_tenants(
    session: AsyncSession,
    *,
    owner_id: str | None = None,
    include_deleted: bool = False,
    limit: int = 100,
) -> list[Tenant]:
    stmt = select(Tenant)
    if owner_id is not None:
        stmt = stmt.where(Tenant.owner_id == owner_id)
    if not include_deleted:
        stmt = stmt.where(Tenant.status != "deleted")
    stmt = stmt.order_by(Tenant.created_at.desc(), Tenant.id).limit(max(1, min(limit, 500)))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def compare_and_set_status(
    session: AsyncSession,
    tenant_id: str,
    *,
    expected: str,
    target: str,
    changes: dict[str, Any] | None = None,
) -> int | None:
    # Status write and sequence allocation happen in one conditional statement.
    values: dict[str, Any] = dict(changes or {})
    values["status"] = target
    values["last_event_seq"] = Tenant.last_event_seq + 1
    result = await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id, Tenant.status == expected)
        .values(**values)
        .returning(Tenant.last_event_seq)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def update_fields(session: AsyncSession, tenant_id: str, **values: Any) -> None:
    # Never used for status; transitions own that column.
    if "status" in values:
        raise ValueError("status must be changed through the state machine")
    await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def find_by_subscription(session: AsyncSession, subscription_id: str) -> Tenant | None:
    result = await session.execute(
        select(Tenant)
        .where(Tenant.subscription_id == subscription_id, Tenant.status != "deleted")
        .order_by(Tenant.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_rotation_pending(session: AsyncSession, *, limit: int = 100) -> list[Tenant]:
    stmt = (
        select(Tenant)
        .where(Tenant.rotation_pending.is_(True), Tenant.status != "deleted")
        .order_by(Tenant.updated_at)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
