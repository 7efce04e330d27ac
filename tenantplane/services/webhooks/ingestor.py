from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.errors import ConflictError, ValidationError
from tenantplane.domain.naming import compute_app_name, tenant_hostname
from tenantplane.domain.state import TenantStatus
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.persistence.repos import webhooks as webhooks_repo
from tenantplane.services.provisioning_queue import ProvisioningQueue
from tenantplane.services.state_machine import TenantStateMachine
from tenantplane.services.telemetry import increment_counter
from tenantplane.services.tenant_ops import TenantOperations
from tenantplane.services.webhooks import base as kinds
from tenantplane.services.webhooks.base import PaymentEvent, WebhookProviderRegistry


logger = logging.getLogger(__name__)

_CREATE_EVENTS = frozenset({kinds.SUBSCRIPTION_CREATED, kinds.SUBSCRIPTION_ACTIVATED})
_SUSPEND_EVENTS = frozenset({kinds.SUBSCRIPTION_PAUSED, kinds.SUBSCRIPTION_PAST_DUE})


@dataclass(frozen=True)
class TenantDefaults:
    app_prefix: str
    base_domain: str
    default_region: str
    plans: dict[str, dict[str, Any]]


@dataclass(frozen=True)
class IngestResult:
    status: str
    event_id: str
    tenant_id: str | None = None


class WebhookIngestor:
    """Idempotent entry point for payment provider webhooks.

    Deduplication is an insert-if-absent on ``(provider, event_id)`` in the
    same transaction that creates the tenant, so a redelivered or concurrent
    duplicate can never create a second tenant or start a second provisioning.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        registry: WebhookProviderRegistry,
        state_machine: TenantStateMachine,
        tenant_ops: TenantOperations,
        queue: ProvisioningQueue,
        defaults: TenantDefaults,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._state_machine = state_machine
        self._tenant_ops = tenant_ops
        self._queue = queue
        self._defaults = defaults

    async def ingest(
        self,
        provider: str,
        headers: Mapping[str, str],
        raw_body: bytes,
        *,
        request_id: str | None = None,
    ) -> IngestResult:
        adapter = self._registry.get(provider)
        adapter.verify(headers, raw_body)
        event = adapter.parse(raw_body)
        logger.info(
            "webhook_received provider=%s event_id=%s event_type=%s", provider, event.event_id, event.event_type
        )
        if event.event_type in _CREATE_EVENTS:
            return await self._create_tenant(event, request_id=request_id)
        if event.event_type in _SUSPEND_EVENTS or event.event_type in (
            kinds.SUBSCRIPTION_RESUMED,
            kinds.SUBSCRIPTION_CANCELED,
        ):
            return await self._apply_lifecycle(event)
        # Acknowledge events we do not act on so the provider stops redelivering them.
        increment_counter("webhook_ignored_total")
        return IngestResult(status="ignored", event_id=event.event_id)

    def _plan_for(self, event: PaymentEvent) -> dict[str, Any]:
        plan = self._defaults.plans.get(event.price_id or "")
        if plan is None:
            raise ValidationError(f"unknown price id: {event.price_id}", details={"price_id": event.price_id})
        return plan

    async def _create_tenant(self, event: PaymentEvent, *, request_id: str | None) -> IngestResult:
        if not event.owner_id:
            raise ValidationError("webhook event carries no owner id")
        plan = self._plan_for(event)
        tenant_id = uuid4().hex
        app_name = compute_app_name(self._defaults.app_prefix, tenant_id)
        try:
            async with self._session_factory() as session:
                fresh = await webhooks_repo.record_receipt(
                    session, provider=event.provider, event_id=event.event_id, event_type=event.event_type
                )
                if not fresh:
                    await session.rollback()
                    return await self._duplicate(event, request_id=request_id)
                if event.subscription_id:
                    existing = await tenants_repo.find_by_subscription(session, event.subscription_id)
                    if existing is not None:
                        # created and activated both arrive for one subscription; the first one wins.
                        await webhooks_repo.attach_tenant(
                            session, provider=event.provider, event_id=event.event_id, tenant_id=existing.id
                        )
                        await session.commit()
                        return IngestResult(status="duplicate", event_id=event.event_id, tenant_id=existing.id)
                _, created = await self._state_machine.create_in(
                    session,
                    id=tenant_id,
                    name=event.tenant_name or f"tenant-{tenant_id[:8]}",
                    region=event.region or self._defaults.default_region,
                    memory_mb=int(plan["memory_mb"]),
                    volume_gb=int(plan.get("volume_gb", 1)),
                    compute_app_name=app_name,
                    hostname=tenant_hostname(app_name, self._defaults.base_domain),
                    owner_id=event.owner_id,
                    plan_id=str(plan["plan_id"]),
                    subscription_id=event.subscription_id,
                    source_event_id=event.event_id,
                )
                started = await self._state_machine.transition_in(
                    session,
                    tenant_id,
                    TenantStatus.PROVISIONING,
                    expected=TenantStatus.PENDING,
                    payload={"source_event_id": event.event_id},
                )
                await webhooks_repo.attach_tenant(
                    session, provider=event.provider, event_id=event.event_id, tenant_id=tenant_id
                )
                await session.commit()
        except IntegrityError:
            # Another event for this subscription committed its tenant between our read and insert.
            if not event.subscription_id:
                raise
            return await self._lost_subscription_race(event)
        self._state_machine.announce(created, started)
        increment_counter("tenants_created_total")
        # Enqueue only after commit so the worker always finds the tenant.
        await self._queue.enqueue(tenant_id, request_id=request_id)
        return IngestResult(status="accepted", event_id=event.event_id, tenant_id=tenant_id)

    async def _lost_subscription_race(self, event: PaymentEvent) -> IngestResult:
        async with self._session_factory() as session:
            existing = await tenants_repo.find_by_subscription(session, str(event.subscription_id))
            if existing is None:
                raise ConflictError(
                    f"tenant for subscription {event.subscription_id} could not be created; redeliver the event"
                )
            fresh = await webhooks_repo.record_receipt(
                session, provider=event.provider, event_id=event.event_id, event_type=event.event_type
            )
            if fresh:
                await webhooks_repo.attach_tenant(
                    session, provider=event.provider, event_id=event.event_id, tenant_id=existing.id
                )
            await session.commit()
        increment_counter("webhook_duplicates_total")
        logger.info(
            "webhook_subscription_race provider=%s event_id=%s tenant_id=%s",
            event.provider,
            event.event_id,
            existing.id,
        )
        return IngestResult(status="duplicate", event_id=event.event_id, tenant_id=existing.id)

    async def _duplicate(self, event: PaymentEvent, *, request_id: str | None) -> IngestResult:
        increment_counter("webhook_duplicates_total")
        tenant = None
        if event.subscription_id:
            async with self._session_factory() as session:
                tenant = await tenants_repo.find_by_subscription(session, event.subscription_id)
        logger.info("webhook_duplicate provider=%s event_id=%s", event.provider, event.event_id)
        if tenant is not None and tenant.status == TenantStatus.PROVISIONING.value:
            # A lost enqueue would otherwise strand the tenant; provisioning is lease-guarded.
            await self._queue.enqueue(tenant.id, request_id=request_id)
        return IngestResult(
            status="duplicate", event_id=event.event_id, tenant_id=tenant.id if tenant is not None else None
        )

    async def _apply_lifecycle(self, event: PaymentEvent) -> IngestResult:
        if not event.subscription_id:
            return IngestResult(status="ignored", event_id=event.event_id)
        async with self._session_factory() as session:
            tenant = await tenants_repo.find_by_subscription(session, event.subscription_id)
            if tenant is None:
                await session.rollback()
                return IngestResult(status="ignored", event_id=event.event_id)
            fresh = await webhooks_repo.record_receipt(
                session, provider=event.provider, event_id=event.event_id, event_type=event.event_type
            )
            if fresh:
                await webhooks_repo.attach_tenant(
                    session, provider=event.provider, event_id=event.event_id, tenant_id=tenant.id
                )
            await session.commit()
        if not fresh:
            increment_counter("webhook_duplicates_total")
            return IngestResult(status="duplicate", event_id=event.event_id, tenant_id=tenant.id)
        reason = f"{event.provider}:{event.event_type}"
        try:
            if event.event_type in _SUSPEND_EVENTS:
                await self._tenant_ops.suspend(tenant.id, reason=reason)
            elif event.event_type == kinds.SUBSCRIPTION_RESUMED:
                await self._tenant_ops.resume(tenant.id, reason=reason)
            else:
                await self._tenant_ops.delete(None, tenant.id, reason=reason)
        except Exception:
            # Forget the receipt so the provider's redelivery retries the action.
            async with self._session_factory() as session:
                await webhooks_repo.forget_receipt(session, provider=event.provider, event_id=event.event_id)
                await session.commit()
            raise
        return IngestResult(status="accepted", event_id=event.event_id, tenant_id=tenant.id)
