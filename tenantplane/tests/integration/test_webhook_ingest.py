from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from tenantplane.core.errors import NotFoundError, ValidationError, WebhookSignatureError
from tenantplane.domain.models import Tenant, WebhookReceipt
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.tests.utils.tenants import (
    create_provisioned_tenant,
    create_running_tenant,
    load_tenant,
    paddle_event,
    signed_paddle_delivery,
)


async def _count(plane, model) -> int:
    async with plane.session_factory() as session:
        return int((await session.execute(select(func.count()).select_from(model))).scalar_one())


@pytest.mark.asyncio
async def test_subscription_created_provisions_tenant(plane, compute, database_admin) -> None:
    body = paddle_event("subscription.created", subscription_id="sub_a", owner_id="owner-1", price_id="pri_pro")
    headers, raw = signed_paddle_delivery(body)

    result = await plane.ingestor.ingest("paddle", headers, raw)

    assert result.status == "accepted"
    tenant = await load_tenant(plane, result.tenant_id)
    assert tenant.status == "awaiting_deploy"
    assert tenant.owner_id == "owner-1"
    assert tenant.plan_id == "pro"
    assert tenant.memory_mb == 2048
    assert tenant.volume_gb == 10
    assert tenant.subscription_id == "sub_a"
    assert tenant.source_event_id == body["event_id"]
    assert tenant.compute_volume_id is not None
    assert tenant.compute_machine_id is None

    app = compute.apps[tenant.compute_app_name]
    assert app.volumes == {"tenant_data": tenant.compute_volume_id}
    assert set(app.ips) == {"shared_v4", "v6"}
    assert app.certificates == {tenant.hostname}
    assert [op for op, _ in database_admin.calls] == ["ensure_database"]


@pytest.mark.asyncio
async def test_redelivered_event_is_deduplicated(plane, compute) -> None:
    body = paddle_event("subscription.created", subscription_id="sub_dup")
    headers, raw = signed_paddle_delivery(body)

    first = await plane.ingestor.ingest("paddle", headers, raw)
    second = await plane.ingestor.ingest("paddle", headers, raw)

    assert first.status == "accepted"
    assert second.status == "duplicate"
    assert second.tenant_id == first.tenant_id
    assert await _count(plane, Tenant) == 1
    assert len(compute.calls_for("create_app")) == 1
    assert len(compute.calls_for("create_volume")) == 1
    assert len(compute.calls_for("add_certificate")) == 1


@pytest.mark.asyncio
async def test_concurrent_deliveries_create_one_tenant(plane, compute) -> None:
    body = paddle_event("subscription.created", subscription_id="sub_race")
    headers, raw = signed_paddle_delivery(body)

    results = await asyncio.gather(
        plane.ingestor.ingest("paddle", headers, raw),
        plane.ingestor.ingest("paddle", headers, raw),
    )

    assert sorted(result.status for result in results) == ["accepted", "duplicate"]
    assert await _count(plane, Tenant) == 1
    assert await _count(plane, WebhookReceipt) == 1
    assert len(compute.calls_for("create_app")) == 1
    assert len(compute.apps) == 1
    tenant_id = next(result.tenant_id for result in results if result.status == "accepted")
    assert (await load_tenant(plane, tenant_id)).status == "awaiting_deploy"


@pytest.mark.asyncio
async def test_created_then_activated_share_one_tenant(plane) -> None:
    created = paddle_event("subscription.created", subscription_id="sub_pair")
    activated = paddle_event("subscription.activated", subscription_id="sub_pair")

    first = await plane.ingestor.ingest("paddle", *signed_paddle_delivery(created))
    second = await plane.ingestor.ingest("paddle", *signed_paddle_delivery(activated))

    assert first.status == "accepted"
    assert second.status == "duplicate"
    assert second.tenant_id == first.tenant_id
    assert await _count(plane, Tenant) == 1


@pytest.mark.asyncio
async def test_bad_signature_creates_nothing(plane, compute) -> None:
    body = paddle_event("subscription.created")
    headers, raw = signed_paddle_delivery(body, secret="not-the-secret")

    with pytest.raises(WebhookSignatureError):
        await plane.ingestor.ingest("paddle", headers, raw)

    assert await _count(plane, Tenant) == 0
    assert await _count(plane, WebhookReceipt) == 0
    assert compute.calls == []


@pytest.mark.asyncio
async def test_unknown_price_is_rejected_before_recording(plane) -> None:
    body = paddle_event("subscription.created", price_id="pri_unknown")

    with pytest.raises(ValidationError):
        await plane.ingestor.ingest("paddle", *signed_paddle_delivery(body))

    assert await _count(plane, WebhookReceipt) == 0


@pytest.mark.asyncio
async def test_unknown_provider_is_not_found(plane) -> None:
    with pytest.raises(NotFoundError):
        await plane.ingestor.ingest("stripe", {}, b"{}")


@pytest.mark.asyncio
async def test_unhandled_event_types_are_acknowledged(plane) -> None:
    body = paddle_event("transaction.completed")
    result = await plane.ingestor.ingest("paddle", *signed_paddle_delivery(body))
    assert result.status == "ignored"
    assert await _count(plane, Tenant) == 0


@pytest.mark.asyncio
async def test_pause_and_resume_follow_subscription(plane, compute) -> None:
    tenant_id = await create_running_tenant(plane)
    tenant = await load_tenant(plane, tenant_id)

    paused = paddle_event("subscription.paused", subscription_id=tenant.subscription_id)
    result = await plane.ingestor.ingest("paddle", *signed_paddle_delivery(paused))
    assert result.status == "accepted"
    assert (await load_tenant(plane, tenant_id)).status == "suspended"
    assert compute.calls_for("stop_machine") == [
        {"app_name": tenant.compute_app_name, "machine_id": tenant.compute_machine_id}
    ]

    # A redelivered pause is a no-op.
    repeat = await plane.ingestor.ingest("paddle", *signed_paddle_delivery(paused))
    assert repeat.status == "duplicate"
    assert len(compute.calls_for("stop_machine")) == 1

    resumed = paddle_event("subscription.resumed", subscription_id=tenant.subscription_id)
    await plane.ingestor.ingest("paddle", *signed_paddle_delivery(resumed))
    assert (await load_tenant(plane, tenant_id)).status == "running"
    assert len(compute.calls_for("start_machine")) == 1


@pytest.mark.asyncio
async def test_cancellation_deletes_tenant_and_cleans_up(plane, compute, database_admin) -> None:
    tenant_id = await create_running_tenant(plane)
    tenant = await load_tenant(plane, tenant_id)

    canceled = paddle_event("subscription.canceled", subscription_id=tenant.subscription_id)
    await plane.ingestor.ingest("paddle", *signed_paddle_delivery(canceled))

    deleted = await load_tenant(plane, tenant_id)
    assert deleted.status == "deleted"
    assert tenant.compute_app_name not in compute.apps
    assert ("drop", database_admin.calls[0][1]) in database_admin.calls
    assert not await plane.vault.has_secrets(tenant_id)


@pytest.mark.asyncio
async def test_lifecycle_event_for_unknown_subscription_is_ignored(plane) -> None:
    body = paddle_event("subscription.paused", subscription_id="sub_nobody")
    result = await plane.ingestor.ingest("paddle", *signed_paddle_delivery(body))
    assert result.status == "ignored"


@pytest.mark.asyncio
async def test_subscription_race_resolves_to_the_first_tenant(plane, compute, monkeypatch) -> None:
    first_id = await create_provisioned_tenant(plane, subscription_id="sub_overlap")
    apps_before = len(compute.apps)
    find_by_subscription = tenants_repo.find_by_subscription
    hidden: list[str] = []

    async def not_yet_committed(session, subscription_id):
        # The first lookup runs as if the other transaction had not committed yet.
        if not hidden:
            hidden.append(subscription_id)
            return None
        return await find_by_subscription(session, subscription_id)

    monkeypatch.setattr(tenants_repo, "find_by_subscription", not_yet_committed)
    activated = paddle_event("subscription.activated", subscription_id="sub_overlap")

    result = await plane.ingestor.ingest("paddle", *signed_paddle_delivery(activated))

    assert hidden == ["sub_overlap"]
    assert result.status == "duplicate"
    assert result.tenant_id == first_id
    assert await _count(plane, Tenant) == 1
    assert len(compute.apps) == apps_before
    # The losing delivery is still recorded so a redelivery short-circuits.
    again = await plane.ingestor.ingest("paddle", *signed_paddle_delivery(activated))
    assert again.status == "duplicate"


@pytest.mark.asyncio
async def test_live_subscription_is_unique_in_storage(plane) -> None:
    first_id = await create_provisioned_tenant(plane, subscription_id="sub_unique")
    first = await load_tenant(plane, first_id)

    with pytest.raises(IntegrityError):
        async with plane.session_factory() as session:
            await plane.state_machine.create_in(
                session,
                id="b" * 32,
                name="copy",
                region=first.region,
                memory_mb=first.memory_mb,
                volume_gb=first.volume_gb,
                compute_app_name=f"{first.compute_app_name}-copy",
                hostname=f"copy.{first.hostname}",
                owner_id=first.owner_id,
                plan_id=first.plan_id,
                subscription_id="sub_unique",
            )
            await session.commit()

    # A deleted tenant releases its subscription for a fresh signup.
    await plane.tenant_ops.delete(None, first_id, reason="canceled")
    second_id = await create_provisioned_tenant(plane, subscription_id="sub_unique")
    assert second_id != first_id
