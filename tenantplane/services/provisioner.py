from __future__ import annotations

import logging
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.errors import IntegrationUnavailableError, NotFoundError, ProvisioningError, StateError
from tenantplane.domain.events import EventType
from tenantplane.domain.models import Tenant
from tenantplane.domain.naming import VOLUME_NAME
from tenantplane.domain.state import TenantStatus
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.providers.compute.base import CallOutcome, ComputeProviderClient, IpKind, ProviderResult
from tenantplane.services import leases as lease_scopes
from tenantplane.services.event_stream import EventStreamPublisher
from tenantplane.services.leases import LeaseManager
from tenantplane.services.secrets_vault import SecretsVault
from tenantplane.services.state_machine import TenantStateMachine
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

STEP_CREATE_APP = "create_app"
STEP_CREATE_VOLUME = "create_volume"
STEP_ALLOCATE_IPV4 = "allocate_shared_ipv4"
STEP_ALLOCATE_IPV6 = "allocate_ipv6"
STEP_GENERATE_SECRETS = "generate_secrets"
STEP_ADD_CERTIFICATE = "add_certificate"

PROVISIONING_STEPS = (
    STEP_CREATE_APP,
    STEP_CREATE_VOLUME,
    STEP_ALLOCATE_IPV4,
    STEP_ALLOCATE_IPV6,
    STEP_GENERATE_SECRETS,
    STEP_ADD_CERTIFICATE,
)


class _StepError(Exception):
    def __init__(self, step: str, message: str) -> None:
        super().__init__(message)
        self.step = step


class InfrastructureProvisioner:
    """Drives a tenant from ``provisioning`` to ``awaiting_deploy``.

    Steps run in a fixed order and each one is idempotent by resource name,
    so a crashed or retried run simply repeats them. A fatal step moves the
    tenant to ``failed``; resources created by earlier steps are left in place.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        compute: ComputeProviderClient,
        vault: SecretsVault,
        state_machine: TenantStateMachine,
        publisher: EventStreamPublisher,
        leases: LeaseManager,
        provider_timeout_s: float,
    ) -> None:
        self._session_factory = session_factory
        self._compute = compute
        self._vault = vault
        self._state_machine = state_machine
        self._publisher = publisher
        self._leases = leases
        self._timeout_s = provider_timeout_s

    async def provision(self, tenant_id: str) -> TenantStatus:
        async with self._leases.hold(tenant_id, lease_scopes.PROVISIONING) as holder:
            if holder is None:
                # Another worker is already provisioning this tenant.
                return await self._state_machine.current_status(tenant_id)
            return await self._provision_locked(tenant_id)

    async def _provision_locked(self, tenant_id: str) -> TenantStatus:
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id, refresh=True)
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        status = TenantStatus(tenant.status)
        if status != TenantStatus.PROVISIONING:
            if status in (TenantStatus.PENDING, TenantStatus.FAILED):
                raise StateError(f"tenant {tenant_id} is {status.value}, not provisioning")
            # Already past provisioning (duplicate job); nothing to do.
            logger.info("provisioning_skipped tenant_id=%s status=%s", tenant_id, status.value)
            return status

        volume_id: str | None = tenant.compute_volume_id
        steps: list[tuple[str, Callable[[], Awaitable[ProviderResult]]]] = [
            (STEP_CREATE_APP, lambda: self._compute.create_app(tenant.compute_app_name, timeout_s=self._timeout_s)),
            (
                STEP_CREATE_VOLUME,
                lambda: self._compute.create_volume(
                    tenant.compute_app_name,
                    name=VOLUME_NAME,
                    region=tenant.region,
                    size_gb=tenant.volume_gb,
                    timeout_s=self._timeout_s,
                ),
            ),
            (
                STEP_ALLOCATE_IPV4,
                lambda: self._compute.allocate_ip(
                    tenant.compute_app_name, kind=IpKind.SHARED_V4, timeout_s=self._timeout_s
                ),
            ),
            (
                STEP_ALLOCATE_IPV6,
                lambda: self._compute.allocate_ip(tenant.compute_app_name, kind=IpKind.V6, timeout_s=self._timeout_s),
            ),
            (STEP_GENERATE_SECRETS, lambda: self._generate_secrets(tenant_id)),
            (
                STEP_ADD_CERTIFICATE,
                lambda: self._compute.add_certificate(
                    tenant.compute_app_name, tenant.hostname, timeout_s=self._timeout_s
                ),
            ),
        ]

        for step, call in steps:
            try:
                result = await self._run_step(step, call)
            except _StepError as exc:
                return await self._fail(tenant, exc.step, str(exc))
            if step == STEP_CREATE_VOLUME and result.resource_id:
                volume_id = result.resource_id
                async with self._session_factory() as session:
                    await tenants_repo.update_fields(session, tenant_id, compute_volume_id=volume_id)
                    await session.commit()
            payload = {"step": step, "outcome": result.outcome.value}
            if result.resource_id:
                payload["resource_id"] = result.resource_id
            await self._publisher.publish(tenant_id, EventType.STEP_COMPLETED, payload)
            logger.info(
                "provisioning_step_completed tenant_id=%s step=%s outcome=%s", tenant_id, step, result.outcome.value
            )

        await self._state_machine.transition(
            tenant_id,
            TenantStatus.AWAITING_DEPLOY,
            expected=TenantStatus.PROVISIONING,
            payload={"steps": list(PROVISIONING_STEPS)},
            changes={"compute_volume_id": volume_id, "last_error": None},
        )
        increment_counter("provisioning_completed_total")
        return TenantStatus.AWAITING_DEPLOY

    async def _run_step(self, step: str, call: Callable[[], Awaitable[ProviderResult]]) -> ProviderResult:
        # Each step is idempotent by name, so an unknown outcome is resolved by issuing it once more.
        for attempt in (1, 2):
            try:
                result = await call()
            except (ProvisioningError, IntegrationUnavailableError) as exc:
                raise _StepError(step, exc.message) from exc
            if result.outcome != CallOutcome.UNKNOWN:
                return result
            logger.warning("provisioning_step_unknown step=%s attempt=%s", step, attempt)
        raise _StepError(step, f"{step} outcome unknown after timeout")

    async def _generate_secrets(self, tenant_id: str) -> ProviderResult:
        if await self._vault.has_secrets(tenant_id):
            return ProviderResult(CallOutcome.ALREADY_EXISTS)
        await self._vault.generate_and_store(tenant_id)
        return ProviderResult(CallOutcome.OK)

    async def _fail(self, tenant: Tenant, step: str, error: str) -> TenantStatus:
        logger.error("provisioning_failed tenant_id=%s step=%s error=%s", tenant.id, step, error)
        increment_counter("provisioning_failed_total")
        await self._state_machine.transition(
            tenant.id,
            TenantStatus.FAILED,
            expected=TenantStatus.PROVISIONING,
            payload={"step": step, "error": error},
            changes={"last_error": f"{step}: {error}"},
        )
        return TenantStatus.FAILED
