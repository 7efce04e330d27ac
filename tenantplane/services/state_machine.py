from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.errors import NotFoundError, StateError
from tenantplane.domain.events import EventType, ProvisioningEventView
from tenantplane.domain.models import Tenant
from tenantplane.domain.state import MACHINE_STATUSES, TenantStatus, is_allowed
from tenantplane.persistence.repos import events as events_repo
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.services.event_stream import EventStreamPublisher


logger = logging.getLogger(__name__)

_PRE_MACHINE_STATUSES = frozenset(
    {TenantStatus.PENDING, TenantStatus.PROVISIONING, TenantStatus.AWAITING_DEPLOY}
)


class TenantStateMachine:
    """The only writer of ``tenants.status``.

    ``*_in`` methods run inside a caller-owned session so a transition can
    share a transaction with other writes; the caller commits and then hands
    the returned events to :meth:`announce`. The plain methods own their
    transaction and announce on success.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], publisher: EventStreamPublisher) -> None:
        self._session_factory = session_factory
        self._publisher = publisher

    def announce(self, *events: ProvisioningEventView) -> None:
        self._publisher.notify(*events)

    async def create_in(self, session: AsyncSession, **fields: Any) -> tuple[Tenant, ProvisioningEventView]:
        fields.pop("status", None)
        tenant = Tenant(status=TenantStatus.PENDING.value, last_event_seq=1, **fields)
        session.add(tenant)
        await session.flush()
        event = await events_repo.append_event(
            session,
            tenant.id,
            event_type=EventType.TENANT_CREATED,
            payload={"status": TenantStatus.PENDING.value, "plan_id": tenant.plan_id, "region": tenant.region},
            sequence_number=1,
        )
        logger.info("tenant_created tenant_id=%s owner_id=%s plan_id=%s", tenant.id, tenant.owner_id, tenant.plan_id)
        return tenant, event

    async def transition_in(
        self,
        session: AsyncSession,
        tenant_id: str,
        target: TenantStatus,
        *,
        expected: TenantStatus | None = None,
        payload: dict[str, Any] | None = None,
        changes: dict[str, Any] | None = None,
    ) -> ProvisioningEventView:
        tenant = await tenants_repo.get_tenant(session, tenant_id, refresh=True)
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        source = TenantStatus(tenant.status)
        if expected is not None and source != expected:
            raise StateError(
                f"tenant {tenant_id} is {source.value}, expected {expected.value}",
                details={"status": source.value, "expected": expected.value},
            )
        if not is_allowed(source, target):
            logger.error(
                "illegal_transition tenant_id=%s from=%s to=%s", tenant_id, source.value, target.value
            )
            raise StateError(
                f"illegal transition {source.value} -> {target.value}",
                details={"from": source.value, "to": target.value},
            )

        values = dict(changes or {})
        machine_id = values.get("compute_machine_id", tenant.compute_machine_id)
        if target in MACHINE_STATUSES and not machine_id:
            raise StateError(f"{target.value} requires a compute machine", details={"to": target.value})
        if target in _PRE_MACHINE_STATUSES and machine_id:
            raise StateError(f"{target.value} cannot hold a compute machine", details={"to": target.value})
        if target == TenantStatus.DELETED:
            values.setdefault("deleted_at", datetime.now(timezone.utc))

        sequence = await tenants_repo.compare_and_set_status(
            session, tenant_id, expected=source.value, target=target.value, changes=values
        )
        if sequence is None:
            # Lost a race: another writer moved the tenant after we read it.
            raise StateError(
                f"tenant {tenant_id} changed state concurrently",
                details={"from": source.value, "to": target.value},
            )
        event_payload: dict[str, Any] = dict(payload or {})
        event_payload.update({"from_status": source.value, "to_status": target.value})
        event = await events_repo.append_event(
            session,
            tenant_id,
            event_type=EventType.STATUS_CHANGED,
            payload=event_payload,
            sequence_number=sequence,
        )
        logger.info(
            "tenant_transition tenant_id=%s from=%s to=%s seq=%s", tenant_id, source.value, target.value, sequence
        )
        return event

    async def transition(
        self,
        tenant_id: str,
        target: TenantStatus,
        *,
        expected: TenantStatus | None = None,
        payload: dict[str, Any] | None = None,
        changes: dict[str, Any] | None = None,
    ) -> ProvisioningEventView:
        async with self._session_factory() as session:
            event = await self.transition_in(
                session, tenant_id, target, expected=expected, payload=payload, changes=changes
            )
            await session.commit()
        self.announce(event)
        return event

    async def current_status(self, tenant_id: str) -> TenantStatus:
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        return TenantStatus(tenant.status)
