from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from tenantplane.core.errors import AccessDeniedError
from tenantplane.domain.models import Tenant


ROLE_OWNER = "owner"
ROLE_OPERATOR = "operator"


@dataclass(frozen=True)
class Principal:
    owner_id: str
    role: str
    api_key_id: str | None = None


class AccessPolicy(Protocol):
    def can_manage(self, principal: Principal, tenant: Tenant) -> bool:
        ...


class OwnershipPolicy:
    # Owners manage their own tenants; operators manage all of them.
    def can_manage(self, principal: Principal, tenant: Tenant) -> bool:
        if principal.role == ROLE_OPERATOR:
            return True
        return principal.owner_id == tenant.owner_id


def ensure_access(policy: AccessPolicy, principal: Principal, tenant: Tenant) -> None:
    if not policy.can_manage(principal, tenant):
        raise AccessDeniedError("caller has no access to this tenant")
