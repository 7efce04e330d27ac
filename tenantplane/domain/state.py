from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TenantStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    AWAITING_DEPLOY = "awaiting_deploy"
    DEPLOYING = "deploying"
    RUNNING = "running"
    SUSPENDED = "suspended"
    FAILED = "failed"
    DELETED = "deleted"


TERMINAL_STATUSES = frozenset({TenantStatus.DELETED})

# The only permitted status edges; everything else is a StateError.
ALLOWED_TRANSITIONS: dict[TenantStatus, frozenset[TenantStatus]] = {
    TenantStatus.PENDING: frozenset({TenantStatus.PROVISIONING, TenantStatus.DELETED}),
    TenantStatus.PROVISIONING: frozenset(
        {TenantStatus.AWAITING_DEPLOY, TenantStatus.FAILED, TenantStatus.DELETED}
    ),
    TenantStatus.AWAITING_DEPLOY: frozenset({TenantStatus.DEPLOYING, TenantStatus.DELETED}),
    TenantStatus.DEPLOYING: frozenset({TenantStatus.RUNNING, TenantStatus.FAILED, TenantStatus.DELETED}),
    TenantStatus.RUNNING: frozenset({TenantStatus.SUSPENDED, TenantStatus.FAILED, TenantStatus.DELETED}),
    TenantStatus.SUSPENDED: frozenset({TenantStatus.RUNNING, TenantStatus.DELETED}),
    TenantStatus.FAILED: frozenset(
        {TenantStatus.PROVISIONING, TenantStatus.DEPLOYING, TenantStatus.DELETED}
    ),
    TenantStatus.DELETED: frozenset(),
}

# Statuses in which a compute machine must be recorded on the tenant.
MACHINE_STATUSES = frozenset({TenantStatus.DEPLOYING, TenantStatus.RUNNING, TenantStatus.SUSPENDED})


def is_allowed(source: TenantStatus, target: TenantStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, frozenset())


@dataclass(frozen=True)
class DeployRequest:
    # Transient value passed from the API into validation and execution.
    tenant_id: str
    submitted_image_reference: str
    requested_at: datetime


@dataclass(frozen=True)
class DeployOutcome:
    tenant_id: str
    machine_id: str
    image: str
    status: str
    first_deploy: bool
    app_url: str | None
