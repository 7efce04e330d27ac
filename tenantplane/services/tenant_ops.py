from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.errors import (
    IntegrationUnavailableError,
    NotFoundError,
    ProvisioningError,
    StateError,
    ValidationError,
)
from tenantplane.domain.events import EventType
from tenantplane.domain.models import Tenant, TenantEnvKey
from tenantplane.domain.naming import app_url
from tenantplane.domain.state import TenantStatus
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.providers.compute.base import CallOutcome, ComputeProviderClient
from tenantplane.services.access import AccessPolicy, Principal, ensure_access
from tenantplane.services.event_stream import EventStreamPublisher
from tenantplane.services.secrets_vault import SYSTEM_ENV_KEYS, SecretsVault
from tenantplane.services.state_machine import TenantStateMachine


logger = logging.getLogger(__name__)

_ENV_KEY = re.compile(r"^[A-Z_][A-Z0-9_]{0,127}$")

_STATUS_MESSAGES = {
    TenantStatus.PENDING: "Waiting for provisioning to start",
    TenantStatus.PROVISIONING: "Provisioning infrastructure",
    TenantStatus.AWAITING_DEPLOY: "Infrastructure ready; waiting for the first deploy",
    TenantStatus.DEPLOYING: "Deploying",
    TenantStatus.RUNNING: "Running",
    TenantStatus.SUSPENDED: "Suspended",
    TenantStatus.FAILED: "Failed",
    TenantStatus.DELETED: "Deleted",
}


@dataclass(frozen=True)
class TenantStatusView:
    status: str
    message: str
    app_url: str | None
    secrets_url: str | None


def normalize_env_key(key: str) -> str:
    normalized = key.strip().upper()
    if not _ENV_KEY.match(normalized):
        raise ValidationError(f"invalid environment key: {key!r}", details={"key": key})
    if normalized in SYSTEM_ENV_KEYS:
        raise ValidationError(
            f"{normalized} is managed by the control plane and cannot be changed",
            code="SYSTEM_MANAGED_KEY",
            details={"key": normalized},
        )
    return normalized


class TenantOperations:
    """Owner-facing lifecycle operations outside provisioning and deploy."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        compute: ComputeProviderClient,
        vault: SecretsVault,
        state_machine: TenantStateMachine,
        publisher: EventStreamPublisher,
        access_policy: AccessPolicy,
        provider_timeout_s: float,
    ) -> None:
        self._session_factory = session_factory
        self._compute = compute
        self._vault = vault
        self._state_machine = state_machine
        self._publisher = publisher
        self._access_policy = access_policy
        self._timeout_s = provider_timeout_s

    async def get(self, principal: Principal | None, tenant_id: str, *, include_deleted: bool = False) -> Tenant:
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id, refresh=True)
        if tenant is None or (tenant.status == TenantStatus.DELETED.value and not include_deleted):
            raise NotFoundError(f"Tenant {tenant_id} not found")
        if principal is not None:
            ensure_access(self._access_policy, principal, tenant)
        return tenant

    async def list_tenants(self, principal: Principal, *, limit: int = 100) -> list[Tenant]:
        owner_id = None if principal.role == "operator" else principal.owner_id
        async with self._session_factory() as session:
            return await tenants_repo.list_tenants(session, owner_id=owner_id, limit=limit)

    async def status(self, principal: Principal, tenant_id: str, *, secrets_url_base: str) -> TenantStatusView:
        tenant = await self.get(principal, tenant_id)
        status = TenantStatus(tenant.status)
        message = _STATUS_MESSAGES[status]
        if status == TenantStatus.FAILED and tenant.last_error:
            message = f"Failed: {tenant.last_error}"
        elif tenant.rotation_pending:
            message = f"{message} (credential rotation pending)"
        token = await self._vault.pending_retrieval_token(tenant_id)
        secrets_url = f"{secrets_url_base.rstrip('/')}/tenants/{tenant_id}/credentials/{token}" if token else None
        running = status in (TenantStatus.RUNNING, TenantStatus.SUSPENDED)
        return TenantStatusView(
            status=status.value,
            message=message,
            app_url=app_url(tenant.hostname) if running else None,
            secrets_url=secrets_url,
        )

    async def retry_provisioning(self, principal: Principal, tenant_id: str) -> None:
        tenant = await self.get(principal, tenant_id)
        if tenant.compute_machine_id:
            raise StateError("tenant already has a machine; redeploy instead of re-provisioning")
        await self._state_machine.transition(
            tenant_id,
            TenantStatus.PROVISIONING,
            expected=TenantStatus.FAILED,
            payload={"retry": True},
            changes={"last_error": None},
        )

    async def restart(self, principal: Principal, tenant_id: str) -> None:
        tenant = await self.get(principal, tenant_id)
        if tenant.status != TenantStatus.RUNNING.value or not tenant.compute_machine_id:
            raise StateError(f"tenant {tenant_id} is {tenant.status}; only running tenants can be restarted")
        result = await self._compute.restart_machine(
            tenant.compute_app_name, tenant.compute_machine_id, timeout_s=self._timeout_s
        )
        if result.outcome == CallOutcome.UNKNOWN:
            raise ProvisioningError("machine restart outcome unknown; check status and retry")
        await self._publisher.publish(tenant_id, EventType.MACHINE_RESTARTED, {"machine_id": tenant.compute_machine_id})

    async def suspend(self, tenant_id: str, *, reason: str) -> None:
        tenant = await self.get(None, tenant_id)
        if tenant.status != TenantStatus.RUNNING.value:
            logger.info("suspend_skipped tenant_id=%s status=%s", tenant_id, tenant.status)
            return
        if tenant.compute_machine_id:
            await self._compute.stop_machine(
                tenant.compute_app_name, tenant.compute_machine_id, timeout_s=self._timeout_s
            )
        await self._state_machine.transition(
            tenant_id, TenantStatus.SUSPENDED, expected=TenantStatus.RUNNING, payload={"reason": reason}
        )

    async def resume(self, tenant_id: str, *, reason: str) -> None:
        tenant = await self.get(None, tenant_id)
        if tenant.status != TenantStatus.SUSPENDED.value:
            logger.info("resume_skipped tenant_id=%s status=%s", tenant_id, tenant.status)
            return
        if tenant.compute_machine_id:
            await self._compute.start_machine(
                tenant.compute_app_name, tenant.compute_machine_id, timeout_s=self._timeout_s
            )
        await self._state_machine.transition(
            tenant_id, TenantStatus.RUNNING, expected=TenantStatus.SUSPENDED, payload={"reason": reason}
        )

    async def delete(self, principal: Principal | None, tenant_id: str, *, reason: str) -> None:
        tenant = await self.get(principal, tenant_id)
        async with self._session_factory() as session:
            event = await self._state_machine.transition_in(
                session, tenant_id, TenantStatus.DELETED, payload={"reason": reason}
            )
            role = await self._vault.destroy_in(session, tenant_id)
            await session.execute(delete(TenantEnvKey).where(TenantEnvKey.tenant_id == tenant_id))
            await session.commit()
        self._state_machine.announce(event)
        # Cloud cleanup after the soft delete is committed; failures leave resources for manual cleanup.
        try:
            await self._compute.delete_app(tenant.compute_app_name, timeout_s=self._timeout_s)
            if role:
                await self._vault.drop_database(role)
        except (ProvisioningError, IntegrationUnavailableError) as exc:
            logger.warning("tenant_cleanup_incomplete tenant_id=%s error=%s", tenant_id, exc)

    async def list_env(self, principal: Principal, tenant_id: str) -> list[str]:
        await self.get(principal, tenant_id)
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantEnvKey.key).where(TenantEnvKey.tenant_id == tenant_id).order_by(TenantEnvKey.key)
            )
            return [row[0] for row in result.all()]

    async def set_env(self, principal: Principal, tenant_id: str, values: dict[str, str]) -> list[str]:
        tenant = await self.get(principal, tenant_id)
        normalized = {normalize_env_key(key): str(value) for key, value in values.items()}
        if not normalized:
            raise ValidationError("no environment values supplied")
        result = await self._compute.set_machine_secrets(
            tenant.compute_app_name, normalized, timeout_s=self._timeout_s
        )
        if result.outcome == CallOutcome.UNKNOWN:
            raise ProvisioningError("secret update outcome unknown; retry the request")
        async with self._session_factory() as session:
            existing = set(
                (
                    await session.execute(
                        select(TenantEnvKey.key).where(
                            TenantEnvKey.tenant_id == tenant_id, TenantEnvKey.key.in_(list(normalized))
                        )
                    )
                ).scalars()
            )
            now = datetime.now(timezone.utc)
            for key in normalized:
                if key not in existing:
                    session.add(TenantEnvKey(tenant_id=tenant_id, key=key, updated_at=now))
            await session.commit()
        logger.info("tenant_env_set tenant_id=%s keys=%s", tenant_id, ",".join(sorted(normalized)))
        return sorted(normalized)

    async def unset_env(self, principal: Principal, tenant_id: str, keys: list[str]) -> list[str]:
        tenant = await self.get(principal, tenant_id)
        normalized = sorted({normalize_env_key(key) for key in keys})
        if not normalized:
            raise ValidationError("no environment keys supplied")
        result = await self._compute.unset_machine_secrets(
            tenant.compute_app_name, normalized, timeout_s=self._timeout_s
        )
        if result.outcome == CallOutcome.UNKNOWN:
            raise ProvisioningError("secret removal outcome unknown; retry the request")
        async with self._session_factory() as session:
            await session.execute(
                delete(TenantEnvKey).where(TenantEnvKey.tenant_id == tenant_id, TenantEnvKey.key.in_(normalized))
            )
            await session.commit()
        logger.info("tenant_env_unset tenant_id=%s keys=%s", tenant_id, ",".join(normalized))
        return normalized
