from __future__ import annotations

import json
import time
from typing import Any
from uuid import uuid4

from tenantplane.domain.events import ProvisioningEventView
from tenantplane.domain.models import Tenant
from tenantplane.domain.naming import compute_app_name, tenant_hostname
from tenantplane.persistence.repos import events as events_repo
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.services.access import ROLE_OWNER, Principal
from tenantplane.services.control_plane import ControlPlane
from tenantplane.services.webhooks.paddle import build_paddle_signature


PADDLE_SECRET = "pdl_ntfset_test_secret"
OWNER_ID = "owner-1"


def owner(owner_id: str = OWNER_ID) -> Principal:
    return Principal(owner_id=owner_id, role=ROLE_OWNER, api_key_id="test-key")


def paddle_event(
    event_type: str,
    *,
    event_id: str | None = None,
    subscription_id: str | None = None,
    owner_id: str = OWNER_ID,
    price_id: str = "pri_starter",
    tenant_name: str = "acme",
) -> dict[str, Any]:
    # Shape mirrors a Paddle Billing subscription notification.
    return {
        "event_id": event_id or f"evt_{uuid4().hex}",
        "event_type": event_type,
        "occurred_at": "2026-01-01T00:00:00Z",
        "data": {
            "id": subscription_id or f"sub_{uuid4().hex[:12]}",
            "customer_id": "ctm_01",
            "custom_data": {"owner_id": owner_id, "tenant_name": tenant_name},
            "items": [{"price": {"id": price_id}}],
        },
    }


def signed_paddle_delivery(
    body: dict[str, Any],
    *,
    secret: str = PADDLE_SECRET,
    timestamp: int | None = None,
) -> tuple[dict[str, str], bytes]:
    raw = json.dumps(body).encode("utf-8")
    ts = str(int(timestamp if timestamp is not None else time.time()))
    signature = build_paddle_signature(secret, ts, raw)
    headers = {"Paddle-Signature": f"ts={ts};h1={signature}", "Content-Type": "application/json"}
    return headers, raw


async def create_provisioned_tenant(
    plane: ControlPlane,
    *,
    owner_id: str = OWNER_ID,
    subscription_id: str | None = None,
) -> str:
    # Inline queue mode provisions inside the ingest call.
    body = paddle_event("subscription.created", owner_id=owner_id, subscription_id=subscription_id)
    headers, raw = signed_paddle_delivery(body)
    result = await plane.ingestor.ingest("paddle", headers, raw)
    assert result.tenant_id is not None
    return result.tenant_id


async def create_running_tenant(plane: ControlPlane, *, owner_id: str = OWNER_ID) -> str:
    tenant_id = await create_provisioned_tenant(plane, owner_id=owner_id)
    await plane.deployer.deploy(
        owner(owner_id), tenant_id, plane.validator.expected_image_reference(tenant_id)
    )
    return tenant_id


async def seed_pending_tenant(plane: ControlPlane, *, owner_id: str = OWNER_ID) -> str:
    tenant_id = uuid4().hex
    app_name = compute_app_name(plane.settings.compute_app_prefix, tenant_id)
    async with plane.session_factory() as session:
        _, created = await plane.state_machine.create_in(
            session,
            id=tenant_id,
            name="seeded",
            region="iad",
            memory_mb=512,
            volume_gb=1,
            compute_app_name=app_name,
            hostname=tenant_hostname(app_name, plane.settings.tenant_base_domain),
            owner_id=owner_id,
            plan_id="starter",
        )
        await session.commit()
    plane.state_machine.announce(created)
    return tenant_id


async def load_tenant(plane: ControlPlane, tenant_id: str) -> Tenant:
    async with plane.session_factory() as session:
        tenant = await tenants_repo.get_tenant(session, tenant_id, refresh=True)
    assert tenant is not None
    return tenant


async def stored_events(plane: ControlPlane, tenant_id: str) -> list[ProvisioningEventView]:
    async with plane.session_factory() as session:
        return await events_repo.list_events(session, tenant_id)
