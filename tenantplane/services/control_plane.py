from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.config import Settings
from tenantplane.core.errors import StateError
from tenantplane.domain.state import TenantStatus
from tenantplane.providers.compute.base import ComputeProviderClient
from tenantplane.providers.compute.factory import build_compute_provider
from tenantplane.providers.database.base import TenantDatabaseAdmin
from tenantplane.providers.database.factory import build_database_admin
from tenantplane.services import leases as lease_scopes
from tenantplane.services.access import AccessPolicy, OwnershipPolicy, Principal
from tenantplane.services.audit import AuditLog
from tenantplane.services.crypto import SecretSealer
from tenantplane.services.deploy_validator import DeployValidator, RegistryConfig
from tenantplane.services.deployer import DeploymentOrchestrator, MachineDefaults, PollPolicy
from tenantplane.services.event_stream import EventStreamPublisher
from tenantplane.services.leases import LeaseManager
from tenantplane.services.provisioner import InfrastructureProvisioner
from tenantplane.services.provisioning_queue import ProvisioningQueue
from tenantplane.services.secrets_vault import SecretsVault
from tenantplane.services.state_machine import TenantStateMachine
from tenantplane.services.tenant_ops import TenantOperations
from tenantplane.services.webhooks.base import WebhookProviderRegistry
from tenantplane.services.webhooks.ingestor import TenantDefaults, WebhookIngestor
from tenantplane.services.webhooks.paddle import PaddleAdapter


logger = logging.getLogger(__name__)


@dataclass
class ControlPlane:
    """Every component, wired once per process and passed explicitly to callers."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    compute: ComputeProviderClient
    database_admin: TenantDatabaseAdmin
    publisher: EventStreamPublisher
    state_machine: TenantStateMachine
    leases: LeaseManager
    audit: AuditLog
    vault: SecretsVault
    validator: DeployValidator
    provisioner: InfrastructureProvisioner
    deployer: DeploymentOrchestrator
    tenant_ops: TenantOperations
    queue: ProvisioningQueue
    webhook_registry: WebhookProviderRegistry
    ingestor: WebhookIngestor

    async def mark_provisioning_failed(self, tenant_id: str, reason: str) -> None:
        # Called when a provisioning job dies outside the provisioner's own step handling.
        try:
            await self.state_machine.transition(
                tenant_id,
                TenantStatus.FAILED,
                expected=TenantStatus.PROVISIONING,
                payload={"step": "worker", "error": reason},
                changes={"last_error": f"worker: {reason}"},
            )
        except StateError as exc:
            logger.warning("provisioning_failure_not_recorded tenant_id=%s reason=%s", tenant_id, exc.message)

    async def retry_provisioning(self, principal: Principal, tenant_id: str, *, request_id: str | None = None) -> None:
        await self.tenant_ops.retry_provisioning(principal, tenant_id)
        await self.queue.enqueue(tenant_id, request_id=request_id)

    async def rotate_credentials(
        self, principal: Principal | None, tenant_id: str, *, request_id: str | None = None
    ) -> str:
        # Access is checked here; the vault itself trusts its callers.
        await self.tenant_ops.get(principal, tenant_id)
        return await self.vault.rotate(
            tenant_id,
            port=self.settings.compute_internal_port,
            actor_id=principal.owner_id if principal is not None else None,
            request_id=request_id,
        )

    async def aclose(self) -> None:
        await self.queue.aclose()
        await self.compute.aclose()
        await self.database_admin.aclose()


def build_webhook_registry(settings: Settings) -> WebhookProviderRegistry:
    registry = WebhookProviderRegistry()
    registry.register(
        PaddleAdapter(settings.paddle_webhook_secret, max_skew_seconds=settings.webhook_max_timestamp_skew_seconds)
    )
    return registry


def build_control_plane(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    compute: ComputeProviderClient | None = None,
    database_admin: TenantDatabaseAdmin | None = None,
    access_policy: AccessPolicy | None = None,
    webhook_registry: WebhookProviderRegistry | None = None,
) -> ControlPlane:
    compute = compute or build_compute_provider(settings)
    database_admin = database_admin or build_database_admin(settings)
    access_policy = access_policy or OwnershipPolicy()
    provider_timeout_s = settings.ext_call_timeout_ms / 1000.0

    publisher = EventStreamPublisher(
        session_factory,
        buffer_size=settings.event_subscriber_buffer,
        idle_poll_s=float(settings.event_stream_heartbeat_s),
    )
    state_machine = TenantStateMachine(session_factory, publisher)
    leases = LeaseManager(
        session_factory,
        {
            lease_scopes.PROVISIONING: settings.lease_ttl_provisioning_s,
            lease_scopes.DEPLOY: settings.lease_ttl_deploy_s,
            lease_scopes.ROTATION: settings.lease_ttl_rotation_s,
        },
    )
    audit = AuditLog(session_factory)
    vault = SecretsVault(
        session_factory,
        sealer=SecretSealer(settings.secrets_master_key),
        database_admin=database_admin,
        compute=compute,
        leases=leases,
        publisher=publisher,
        audit=audit,
        provider_timeout_s=provider_timeout_s,
    )
    validator = DeployValidator(
        RegistryConfig(
            host=settings.registry_host,
            repository=settings.registry_repository,
            username=settings.registry_username,
            push_token=settings.registry_push_token,
        )
    )
    provisioner = InfrastructureProvisioner(
        session_factory,
        compute=compute,
        vault=vault,
        state_machine=state_machine,
        publisher=publisher,
        leases=leases,
        provider_timeout_s=provider_timeout_s,
    )
    deployer = DeploymentOrchestrator(
        session_factory,
        compute=compute,
        validator=validator,
        vault=vault,
        state_machine=state_machine,
        publisher=publisher,
        leases=leases,
        access_policy=access_policy,
        audit=audit,
        poll=PollPolicy(
            timeout_s=float(settings.deploy_health_timeout_s),
            initial_s=settings.deploy_poll_initial_s,
            max_s=settings.deploy_poll_max_s,
        ),
        machine=MachineDefaults(
            mount_path=settings.compute_volume_mount_path,
            internal_port=settings.compute_internal_port,
        ),
        provider_timeout_s=provider_timeout_s,
    )
    tenant_ops = TenantOperations(
        session_factory,
        compute=compute,
        vault=vault,
        state_machine=state_machine,
        publisher=publisher,
        access_policy=access_policy,
        provider_timeout_s=provider_timeout_s,
    )
    queue = ProvisioningQueue(
        mode=settings.provisioning_execution_mode,
        redis_url=settings.redis_url,
        queue_name=settings.provisioning_queue_name,
        max_retries=settings.provisioning_max_retries,
    )
    registry = webhook_registry or build_webhook_registry(settings)
    ingestor = WebhookIngestor(
        session_factory,
        registry=registry,
        state_machine=state_machine,
        tenant_ops=tenant_ops,
        queue=queue,
        defaults=TenantDefaults(
            app_prefix=settings.compute_app_prefix,
            base_domain=settings.tenant_base_domain,
            default_region=settings.compute_default_region,
            plans=settings.plans(),
        ),
    )
    plane = ControlPlane(
        settings=settings,
        session_factory=session_factory,
        compute=compute,
        database_admin=database_admin,
        publisher=publisher,
        state_machine=state_machine,
        leases=leases,
        audit=audit,
        vault=vault,
        validator=validator,
        provisioner=provisioner,
        deployer=deployer,
        tenant_ops=tenant_ops,
        queue=queue,
        webhook_registry=registry,
        ingestor=ingestor,
    )
    queue.bind(provisioner.provision, plane.mark_provisioning_failed)
    return plane
