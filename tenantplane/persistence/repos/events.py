from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.core.errors import NotFoundError
from tenantplane.domain.events import ProvisioningEventView
from tenantplane.domain.models import ProvisioningEvent, Tenant


def to_view(row: ProvisioningEvent) -> ProvisioningEventView:
    return ProvisioningEventView(
        tenant_id=row.tenant_id,
        sequence_number=int(row.sequence_number),
        event_type=row.event_type,
        payload=dict(row.payload_json or {}),
        occurred_at=row.occurred_at,
    )


async def allocate_sequence(session: AsyncSession, tenant_id: str) -> int:
    # Increment-and-return holds the tenant row lock until commit, serializing appends.
    result = await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(last_event_seq=Tenant.last_event_seq + 1)
        .returning(Tenant.last_event_seq)
        .execution_options(synchronize_session=False)
    )
    sequence = result.scalar_one_or_none()
    if sequence is None:
        raise NotFoundError(f"Tenant {tenant_id} not found")
    return int(sequence)


async def append_event(
    session: AsyncSession,
    tenant_id: str,
    *,
    event_type: str,
    payload: dict[str, Any] | None = None,
    sequence_number: int | None = None,
) -> ProvisioningEventView:
    # Caller commits; the event is only visible together with its surrounding writes.
    if sequence_number is None:
        sequence_number = await allocate_sequence(session, tenant_id)
    row = ProvisioningEvent(
        tenant_id=tenant_id,
        sequence_number=sequence_number,
        event_type=event_type,
        payload_json=dict(payload or {}),
        occurred_at=datetime.now(timezone.utc),
    )
    session.add(row)
    await session.flush()
    return to_view(row)


async def list_events(
    session: AsyncSession,
    tenant_id: str,
    *,
    from_sequence: int = 0,
    to_sequence: int | None = None,
    limit: int = 1000,
) -> list[ProvisioningEventView]:
    stmt = select(ProvisioningEvent).where(
        ProvisioningEvent.tenant_id == tenant_id,
        ProvisioningEvent.sequence_number >= from_sequence,
    )
    if to_sequence is not None:
        stmt = stmt.where(ProvisioningEvent.sequence_number <= to_sequence)
    stmt = stmt.order_by(ProvisioningEvent.sequence_number.asc()).limit(max(1, limit))
    result = await session.execute(stmt)
    return [to_view(row) for row in result.scalars().all()]
