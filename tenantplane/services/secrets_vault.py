from __future__ import annotations

from dataclasses import dataclass
import logging
import secrets

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.errors import (
    ConflictError,
    IntegrationUnavailableError,
    NotFoundError,
    ProvisioningError,
    RotationError,
    StateError,
)
from tenantplane.domain.events import EventType
from tenantplane.domain.models import Tenant
from tenantplane.domain.naming import app_url
from tenantplane.domain.state import TenantStatus
from tenantplane.persistence.repos import events as events_repo
from tenantplane.persistence.repos import secrets as secrets_repo
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.providers.compute.base import CallOutcome, ComputeProviderClient, ProviderResult
from tenantplane.providers.database.base import TenantDatabaseAdmin, tenant_role_name
from tenantplane.services import leases as lease_scopes
from tenantplane.services.audit import AuditLog
from tenantplane.services.crypto import SecretSealer, hash_token, new_token
from tenantplane.services.event_stream import EventStreamPublisher
from tenantplane.services.leases import LeaseManager


logger = logging.getLogger(__name__)

# 48 random bytes = 384 bits of entropy.
SIGNING_SECRET_BYTES = 48
DATABASE_PASSWORD_BYTES = 32

# Environment keys owned by the control plane; owners may not set or unset them.
SYSTEM_ENV_KEYS = frozenset({"DATABASE_URL", "SIGNING_SECRET", "TENANT_ID", "APP_URL", "PORT", "HOST"})

ROTATION_STEP_DATABASE = "database_credential"
ROTATION_STEP_PROVIDER = "provider_secret_store"
ROTATION_STEP_RESTART = "machine_restart"


@dataclass(frozen=True)
class IssuedSecrets:
    tenant_id: str
    retrieval_token: str
    database_url: str
    signing_secret: str


@dataclass(frozen=True)
class TenantCredentials:
    tenant_id: str
    database_url: str
    signing_secret: str
    app_url: str | None


class _StepFailed(Exception):
    def __init__(self, step: str, cause: Exception) -> None:
        super().__init__(f"{step}: {cause}")
        self.step = step
        self.cause = cause


def _require(result: ProviderResult, step: str) -> None:
    # An unknown outcome is never taken as success.
    if result.outcome == CallOutcome.UNKNOWN:
        raise _StepFailed(step, ProvisioningError(f"{step} outcome unknown after timeout"))


class SecretsVault:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        sealer: SecretSealer,
        database_admin: TenantDatabaseAdmin,
        compute: ComputeProviderClient,
        leases: LeaseManager,
        publisher: EventStreamPublisher,
        audit: AuditLog,
        provider_timeout_s: float,
    ) -> None:
        self._session_factory = session_factory
        self._sealer = sealer
        self._database_admin = database_admin
        self._compute = compute
        self._leases = leases
        self._publisher = publisher
        self._audit = audit
        self._timeout_s = provider_timeout_s

    async def has_secrets(self, tenant_id: str) -> bool:
        async with self._session_factory() as session:
            return await secrets_repo.get_secrets(session, tenant_id) is not None

    async def generate_and_store(self, tenant_id: str) -> IssuedSecrets:
        if await self.has_secrets(tenant_id):
            raise ConflictError(f"secrets already exist for tenant {tenant_id}")
        role = tenant_role_name(tenant_id)
        signing_secret = secrets.token_urlsafe(SIGNING_SECRET_BYTES)
        password = secrets.token_urlsafe(DATABASE_PASSWORD_BYTES)
        token = new_token()
        database_url = await self._database_admin.ensure_database(role, password)
        async with self._session_factory() as session:
            inserted = await secrets_repo.insert_secrets(
                session,
                tenant_id=tenant_id,
                retrieval_token_hash=hash_token(token),
                retrieval_token_sealed=self._sealer.seal(token),
                database_url_sealed=self._sealer.seal(database_url),
                signing_secret_sealed=self._sealer.seal(signing_secret),
                database_role=role,
            )
            if not inserted:
                # A concurrent writer won; the row on disk stays authoritative.
                await session.rollback()
                raise ConflictError(f"secrets already exist for tenant {tenant_id}")
            await session.commit()
        logger.info("tenant_secrets_generated tenant_id=%s role=%s", tenant_id, role)
        return IssuedSecrets(
            tenant_id=tenant_id,
            retrieval_token=token,
            database_url=database_url,
            signing_secret=signing_secret,
        )

    async def retrieve_once(
        self,
        tenant_id: str,
        token: str,
        *,
        actor_id: str | None = None,
        request_id: str | None = None,
    ) -> TenantCredentials:
        async with self._session_factory() as session:
            sealed = await secrets_repo.consume_retrieval_token(session, tenant_id, hash_token(token))
            tenant = await tenants_repo.get_tenant(session, tenant_id) if sealed else None
            await session.commit()
        if sealed is None:
            await self._audit.record(
                tenant_id=tenant_id,
                actor_type="owner",
                actor_id=actor_id,
                event_type="credentials.retrieve",
                outcome="failure",
                request_id=request_id,
                error_code="NOT_FOUND",
            )
            raise NotFoundError("secrets not found or already retrieved")
        database_url_sealed, signing_secret_sealed = sealed
        await self._publisher.publish(tenant_id, EventType.SECRETS_RETRIEVED, {})
        await self._audit.record(
            tenant_id=tenant_id,
            actor_type="owner",
            actor_id=actor_id,
            event_type="credentials.retrieve",
            outcome="success",
            request_id=request_id,
        )
        return TenantCredentials(
            tenant_id=tenant_id,
            database_url=self._sealer.unseal(database_url_sealed),
            signing_secret=self._sealer.unseal(signing_secret_sealed),
            app_url=app_url(tenant.hostname) if tenant is not None else None,
        )

    async def pending_retrieval_token(self, tenant_id: str) -> str | None:
        async with self._session_factory() as session:
            row = await secrets_repo.get_secrets(session, tenant_id)
        if row is None or not row.retrieval_token_sealed:
            return None
        return self._sealer.unseal(row.retrieval_token_sealed)

    def _env_for(self, tenant: Tenant, database_url: str, signing_secret: str, port: int) -> dict[str, str]:
        return {
            "TENANT_ID": tenant.id,
            "APP_URL": app_url(tenant.hostname),
            "HOST": "0.0.0.0",
            "PORT": str(port),
            "DATABASE_URL": database_url,
            "SIGNING_SECRET": signing_secret,
        }

    async def machine_env(self, tenant_id: str, *, port: int) -> dict[str, str]:
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id)
            row = await secrets_repo.get_secrets(session, tenant_id)
        if tenant is None or row is None:
            raise NotFoundError(f"secrets for tenant {tenant_id} not found")
        return self._env_for(
            tenant,
            self._sealer.unseal(row.database_url_sealed),
            self._sealer.unseal(row.signing_secret_sealed),
            port,
        )

    async def _flag_rotation(self, tenant_id: str, *, step: str | None, event_type: str, payload: dict) -> None:
        async with self._session_factory() as session:
            await tenants_repo.update_fields(
                session, tenant_id, rotation_pending=True, rotation_failed_step=step
            )
            event = await events_repo.append_event(session, tenant_id, event_type=event_type, payload=payload)
            await session.commit()
        self._publisher.notify(event)

    async def _current_machine_id(self, tenant_id: str) -> str | None:
        # Re-read: the machine may have been created after the rotation began.
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id, refresh=True)
        return tenant.compute_machine_id if tenant is not None else None

    async def rotate(
        self,
        tenant_id: str,
        *,
        port: int,
        actor_id: str | None = None,
        request_id: str | None = None,
    ) -> str:
        async with self._leases.hold(tenant_id, lease_scopes.ROTATION) as holder:
            if holder is None:
                raise ConflictError(f"credential rotation already in progress for tenant {tenant_id}")
            # Deploys build machine env from the stored credentials, so none may run mid-rotation.
            async with self._leases.hold(tenant_id, lease_scopes.DEPLOY) as deploy_holder:
                if deploy_holder is None:
                    raise ConflictError(f"a deploy is in progress for tenant {tenant_id}; retry the rotation")
                return await self._rotate_locked(tenant_id, port=port, actor_id=actor_id, request_id=request_id)

    async def _rotate_locked(
        self, tenant_id: str, *, port: int, actor_id: str | None, request_id: str | None
    ) -> str:
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id, refresh=True)
            row = await secrets_repo.get_secrets(session, tenant_id)
        if tenant is None or row is None:
            raise NotFoundError(f"secrets for tenant {tenant_id} not found")
        if tenant.status == TenantStatus.DELETED.value:
            raise StateError(f"tenant {tenant_id} is deleted")

        # Mark first so a crash at any later point leaves the tenant flagged for retry.
        await self._flag_rotation(
            tenant_id,
            step=None,
            event_type=EventType.ROTATION_STARTED,
            payload={"retry": bool(tenant.rotation_pending)},
        )

        # Fresh material on every attempt; a retry never resumes a half-finished rotation.
        signing_secret = secrets.token_urlsafe(SIGNING_SECRET_BYTES)
        password = secrets.token_urlsafe(DATABASE_PASSWORD_BYTES)
        step = ROTATION_STEP_DATABASE
        try:
            try:
                database_url = await self._database_admin.set_password(row.database_role, password)
            except (ProvisioningError, IntegrationUnavailableError) as exc:
                raise _StepFailed(step, exc) from exc

            step = ROTATION_STEP_PROVIDER
            try:
                result = await self._compute.set_machine_secrets(
                    tenant.compute_app_name,
                    {"DATABASE_URL": database_url, "SIGNING_SECRET": signing_secret},
                    timeout_s=self._timeout_s,
                )
            except (ProvisioningError, IntegrationUnavailableError) as exc:
                raise _StepFailed(step, exc) from exc
            _require(result, step)

            step = ROTATION_STEP_RESTART
            machine_id = await self._current_machine_id(tenant_id)
            if machine_id:
                env = self._env_for(tenant, database_url, signing_secret, port)
                try:
                    result = await self._compute.restart_machine(
                        tenant.compute_app_name,
                        machine_id,
                        env=env,
                        timeout_s=self._timeout_s,
                    )
                except (ProvisioningError, IntegrationUnavailableError) as exc:
                    raise _StepFailed(step, exc) from exc
                _require(result, step)
        except _StepFailed as failure:
            logger.error(
                "credential_rotation_failed tenant_id=%s step=%s error=%s",
                tenant_id,
                failure.step,
                failure.cause,
            )
            await self._flag_rotation(
                tenant_id,
                step=failure.step,
                event_type=EventType.ROTATION_FAILED,
                payload={"step": failure.step, "error": str(failure.cause)},
            )
            await self._audit.record(
                tenant_id=tenant_id,
                actor_type="owner" if actor_id else "system",
                actor_id=actor_id,
                event_type="credentials.rotate",
                outcome="failure",
                request_id=request_id,
                metadata={"step": failure.step},
                error_code=getattr(failure.cause, "code", None),
            )
            raise RotationError(
                f"credential rotation failed at {failure.step}; retry the rotation",
                step=failure.step,
                details={"step": failure.step},
            ) from failure.cause

        token = new_token()
        async with self._session_factory() as session:
            await secrets_repo.replace_material(
                session,
                tenant_id,
                database_url_sealed=self._sealer.seal(database_url),
                signing_secret_sealed=self._sealer.seal(signing_secret),
                retrieval_token_hash=hash_token(token),
                retrieval_token_sealed=self._sealer.seal(token),
            )
            await tenants_repo.update_fields(session, tenant_id, rotation_pending=False, rotation_failed_step=None)
            event = await events_repo.append_event(
                session,
                tenant_id,
                event_type=EventType.ROTATED,
                payload={"machine_restarted": bool(machine_id)},
            )
            await session.commit()
        self._publisher.notify(event)
        await self._audit.record(
            tenant_id=tenant_id,
            actor_type="owner" if actor_id else "system",
            actor_id=actor_id,
            event_type="credentials.rotate",
            outcome="success",
            request_id=request_id,
        )
        logger.info("credential_rotation_completed tenant_id=%s", tenant_id)
        return token

    async def destroy_in(self, session: AsyncSession, tenant_id: str) -> str | None:
        # Returns the database role so the caller can drop it after commit.
        row = await secrets_repo.get_secrets(session, tenant_id)
        if row is None:
            return None
        await secrets_repo.delete_secrets(session, tenant_id)
        return row.database_role

    async def drop_database(self, role: str) -> None:
        await self._database_admin.drop(role)
