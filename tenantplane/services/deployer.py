from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.errors import (
    ConflictError,
    DeployTimeoutError,
    IntegrationUnavailableError,
    NotFoundError,
    ProviderRequestError,
    ProviderUnavailableError,
    ProvisioningError,
    StateError,
    ValidationError,
)
from tenantplane.domain.events import EventType
from tenantplane.domain.models import Tenant
from tenantplane.domain.naming import app_url, machine_name
from tenantplane.domain.state import DeployOutcome, DeployRequest, TenantStatus
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.providers.compute.base import CallOutcome, ComputeProviderClient, MachineSpec
from tenantplane.services import leases as lease_scopes
from tenantplane.services.access import AccessPolicy, Principal, ensure_access
from tenantplane.services.audit import AuditLog
from tenantplane.services.deploy_validator import DeployValidator
from tenantplane.services.event_stream import EventStreamPublisher
from tenantplane.services.leases import LeaseManager
from tenantplane.services.secrets_vault import SecretsVault
from tenantplane.services.state_machine import TenantStateMachine
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Statuses from which an existing machine may receive a new image.
_REDEPLOYABLE = frozenset({TenantStatus.RUNNING, TenantStatus.FAILED, TenantStatus.DEPLOYING})


@dataclass(frozen=True)
class PollPolicy:
    timeout_s: float
    initial_s: float
    max_s: float


@dataclass(frozen=True)
class MachineDefaults:
    mount_path: str
    internal_port: int


class DeploymentOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        compute: ComputeProviderClient,
        validator: DeployValidator,
        vault: SecretsVault,
        state_machine: TenantStateMachine,
        publisher: EventStreamPublisher,
        leases: LeaseManager,
        access_policy: AccessPolicy,
        audit: AuditLog,
        poll: PollPolicy,
        machine: MachineDefaults,
        provider_timeout_s: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._compute = compute
        self._validator = validator
        self._vault = vault
        self._state_machine = state_machine
        self._publisher = publisher
        self._leases = leases
        self._access_policy = access_policy
        self._audit = audit
        self._poll = poll
        self._machine = machine
        self._timeout_s = provider_timeout_s
        self._clock = clock
        self._sleep = sleep

    async def _load(self, tenant_id: str) -> Tenant:
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id, refresh=True)
        if tenant is None or tenant.status == TenantStatus.DELETED.value:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        return tenant

    async def deploy(
        self,
        principal: Principal,
        tenant_id: str,
        submitted_image_reference: str,
        *,
        request_id: str | None = None,
    ) -> DeployOutcome:
        request = DeployRequest(
            tenant_id=tenant_id,
            submitted_image_reference=submitted_image_reference,
            requested_at=datetime.now(timezone.utc),
        )
        tenant = await self._load(tenant_id)
        ensure_access(self._access_policy, principal, tenant)
        try:
            image = self._validator.validate(request.tenant_id, request.submitted_image_reference)
        except ValidationError as exc:
            # Rejected before any provider call.
            increment_counter("deploy_rejected_total")
            await self._audit.record(
                tenant_id=tenant_id,
                actor_type="owner",
                actor_id=principal.owner_id,
                event_type="deploy.rejected",
                outcome="failure",
                request_id=request_id,
                metadata={"submitted_image": request.submitted_image_reference[:300]},
                error_code=exc.code,
            )
            raise

        async with self._leases.hold(tenant_id, lease_scopes.DEPLOY) as holder:
            if holder is None:
                raise ConflictError(f"a deploy is already in progress for tenant {tenant_id}")
            outcome = await self._deploy_locked(request, image)
        await self._audit.record(
            tenant_id=tenant_id,
            actor_type="owner",
            actor_id=principal.owner_id,
            event_type="deploy.completed",
            outcome="success",
            request_id=request_id,
            metadata={"image": image, "first_deploy": outcome.first_deploy},
        )
        return outcome

    async def _deploy_locked(self, request: DeployRequest, image: str) -> DeployOutcome:
        tenant = await self._load(request.tenant_id)
        status = TenantStatus(tenant.status)
        first_deploy = tenant.compute_machine_id is None
        previous_instance: str | None = None
        if tenant.rotation_pending:
            # The stored credentials may already be rejected by the database.
            raise StateError(
                f"credential rotation pending for tenant {tenant.id}; retry the rotation before deploying",
                code="ROTATION_PENDING",
                details={"rotation_failed_step": tenant.rotation_failed_step},
            )
        if first_deploy:
            if status != TenantStatus.AWAITING_DEPLOY:
                raise StateError(
                    f"tenant {tenant.id} is {status.value}; first deploy requires awaiting_deploy",
                    details={"status": status.value},
                )
            await self._publisher.publish(tenant.id, EventType.DEPLOY_STARTED, {"image": image, "first_deploy": True})
            machine_id = await self._create_machine(tenant, image)
            await self._state_machine.transition(
                tenant.id,
                TenantStatus.DEPLOYING,
                expected=TenantStatus.AWAITING_DEPLOY,
                payload={"image": image, "machine_id": machine_id},
                changes={"compute_machine_id": machine_id},
            )
            status = TenantStatus.DEPLOYING
        else:
            if status not in _REDEPLOYABLE:
                raise StateError(
                    f"tenant {tenant.id} is {status.value}; cannot deploy",
                    details={"status": status.value},
                )
            machine_id = str(tenant.compute_machine_id)
            if status == TenantStatus.FAILED:
                await self._state_machine.transition(
                    tenant.id,
                    TenantStatus.DEPLOYING,
                    expected=TenantStatus.FAILED,
                    payload={"image": image, "machine_id": machine_id},
                )
                status = TenantStatus.DEPLOYING
            await self._publisher.publish(
                tenant.id, EventType.DEPLOY_STARTED, {"image": image, "first_deploy": False}
            )
            try:
                previous_instance = await self._replace_image(tenant.compute_app_name, machine_id, image)
            except (ProvisioningError, IntegrationUnavailableError) as exc:
                # The old image keeps serving on a running tenant; only an in-flight redeploy fails.
                await self._record_failure(
                    tenant.id, status, "update_machine_image", str(exc), transition=status == TenantStatus.DEPLOYING
                )
                raise

        healthy, reason = await self._wait_healthy(
            tenant.compute_app_name, machine_id, image, previous_instance=previous_instance
        )
        if not healthy:
            await self._record_failure(tenant.id, status, "health_check", reason)
            raise DeployTimeoutError(reason, details={"machine_id": machine_id})

        if status == TenantStatus.DEPLOYING:
            await self._state_machine.transition(
                tenant.id,
                TenantStatus.RUNNING,
                expected=TenantStatus.DEPLOYING,
                payload={"image": image, "machine_id": machine_id},
                changes={"last_error": None},
            )
        await self._publisher.publish(
            tenant.id, EventType.DEPLOY_SUCCEEDED, {"image": image, "machine_id": machine_id}
        )
        increment_counter("deploy_succeeded_total")
        logger.info(
            "deploy_succeeded tenant_id=%s machine_id=%s first_deploy=%s", tenant.id, machine_id, first_deploy
        )
        return DeployOutcome(
            tenant_id=tenant.id,
            machine_id=machine_id,
            image=image,
            status=TenantStatus.RUNNING.value,
            first_deploy=first_deploy,
            app_url=app_url(tenant.hostname),
        )

    async def _create_machine(self, tenant: Tenant, image: str) -> str:
        name = machine_name(tenant.compute_app_name)
        spec = MachineSpec(
            name=name,
            image=image,
            region=tenant.region,
            memory_mb=tenant.memory_mb,
            env=await self._vault.machine_env(tenant.id, port=self._machine.internal_port),
            volume_id=tenant.compute_volume_id,
            mount_path=self._machine.mount_path,
            internal_port=self._machine.internal_port,
        )
        try:
            result = await self._compute.create_machine(tenant.compute_app_name, spec, timeout_s=self._timeout_s)
            machine_id = result.resource_id
            if result.outcome != CallOutcome.OK or not machine_id:
                # Unknown or pre-existing: resolve by the deterministic machine name.
                machine_id = await self._compute.find_machine(
                    tenant.compute_app_name, name, timeout_s=self._timeout_s
                )
        except (ProvisioningError, IntegrationUnavailableError) as exc:
            await self._publisher.publish(
                tenant.id, EventType.DEPLOY_FAILED, {"step": "create_machine", "error": str(exc)}
            )
            raise
        if not machine_id:
            message = "machine creation outcome could not be confirmed; retry the deploy"
            await self._publisher.publish(
                tenant.id, EventType.DEPLOY_FAILED, {"step": "create_machine", "error": message}
            )
            raise ProvisioningError(message)
        return machine_id

    async def _replace_image(self, app_name: str, machine_id: str, image: str) -> str | None:
        """Point the machine at ``image`` and return the instance it replaced.

        A timed-out update is only accepted once the provider shows a new
        instance; otherwise the old machine would pass the health check.
        """
        before = await self._compute.get_machine_status(app_name, machine_id, timeout_s=self._timeout_s)
        result = await self._compute.update_machine_image(app_name, machine_id, image, timeout_s=self._timeout_s)
        if result.outcome == CallOutcome.UNKNOWN:
            after = await self._compute.get_machine_status(app_name, machine_id, timeout_s=self._timeout_s)
            if before.instance_id is None or after.instance_id in (None, before.instance_id):
                logger.warning(
                    "deploy_update_unconfirmed machine_id=%s instance_id=%s", machine_id, before.instance_id
                )
                raise ProvisioningError(
                    "image update outcome could not be confirmed; retry the deploy",
                    details={"machine_id": machine_id},
                )
        return before.instance_id

    async def _wait_healthy(
        self, app_name: str, machine_id: str, image: str, *, previous_instance: str | None = None
    ) -> tuple[bool, str]:
        timeout_s = self._poll.timeout_s
        deadline = self._clock() + timeout_s
        delay = self._poll.initial_s
        while True:
            remaining = deadline - self._clock()
            try:
                status = await self._compute.get_machine_status(
                    app_name, machine_id, timeout_s=max(0.1, min(self._timeout_s, remaining))
                )
            except ProviderRequestError as exc:
                return False, f"machine status unavailable: {exc.message}"
            except (ProviderUnavailableError, IntegrationUnavailableError) as exc:
                # Keep polling until the deadline; the provider may recover.
                logger.warning("deploy_status_poll_failed machine_id=%s error=%s", machine_id, exc)
            else:
                # A healthy machine still on its pre-update instance is not a successful deploy.
                replaced = previous_instance is None or status.instance_id != previous_instance
                if status.healthy and replaced and (status.image is None or status.image == image):
                    return True, "healthy"
                if status.terminal:
                    return False, f"machine entered terminal state {status.state}"
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False, f"machine did not report healthy within {timeout_s:g} seconds"
            await self._sleep(min(delay, remaining))
            delay = min(delay * 2, self._poll.max_s)

    async def _record_failure(
        self, tenant_id: str, status: TenantStatus, step: str, error: str, *, transition: bool = True
    ) -> None:
        logger.error("deploy_failed tenant_id=%s step=%s error=%s", tenant_id, step, error)
        increment_counter("deploy_failed_total")
        await self._publisher.publish(tenant_id, EventType.DEPLOY_FAILED, {"step": step, "error": error})
        if transition and status in (TenantStatus.DEPLOYING, TenantStatus.RUNNING):
            await self._state_machine.transition(
                tenant_id,
                TenantStatus.FAILED,
                expected=status,
                payload={"step": step, "error": error},
                changes={"last_error": f"{step}: {error}"},
            )
