from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.domain.models import WebhookReceipt
from tenantplane.persistence.dialect import insert_for


async def record_receipt(
    session: AsyncSession,
    *,
    provider: str,
    event_id: str,
    event_type: str,
) -> bool:
    # Atomic insert-if-absent; False means the delivery was already seen.
    stmt = insert_for(session, WebhookReceipt).values(
        provider=provider,
        event_id=event_id,
        event_type=event_type,
        received_at=datetime.now(timezone.utc),
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=[WebhookReceipt.provider, WebhookReceipt.event_id])
    result = await session.execute(stmt)
    return int(result.rowcount or 0) == 1


async def attach_tenant(session: AsyncSession, *, provider: str, event_id: str, tenant_id: str) -> None:
    await session.execute(
        update(WebhookReceipt)
        .where(WebhookReceipt.provider == provider, WebhookReceipt.event_id == event_id)
        .values(tenant_id=tenant_id)
    )


async def prune_receipts(session: AsyncSession, *, older_than_days: int) -> int:
    cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
    result = await session.execute(delete(WebhookReceipt).where(WebhookReceipt.received_at < cutoff))
    return int(result.rowcount or 0)


async def forget_receipt(session: AsyncSession, *, provider: str, event_id: str) -> None:
    # Lets a redelivery retry an event whose side effects failed after the receipt was stored.
    await session.execute(
        delete(WebhookReceipt).where(WebhookReceipt.provider == provider, WebhookReceipt.event_id == event_id)
    )
