from __future__ import annotations

import pytest

from tenantplane.core.errors import ProviderRequestError, StateError
from tenantplane.domain.events import EventType
from tenantplane.domain.state import TenantStatus
from tenantplane.services import leases as lease_scopes
from tenantplane.services.provisioner import PROVISIONING_STEPS
from tenantplane.tests.utils.tenants import (
    create_provisioned_tenant,
    load_tenant,
    owner,
    seed_pending_tenant,
    stored_events,
)


async def _provisioning_tenant(plane) -> str:
    tenant_id = await seed_pending_tenant(plane)
    await plane.state_machine.transition(tenant_id, TenantStatus.PROVISIONING, expected=TenantStatus.PENDING)
    return tenant_id


@pytest.mark.asyncio
async def test_provisioning_runs_steps_in_order(plane, compute) -> None:
    tenant_id = await _provisioning_tenant(plane)

    status = await plane.provisioner.provision(tenant_id)

    assert status == TenantStatus.AWAITING_DEPLOY
    operations = [op for op, _ in compute.calls]
    assert operations == [
        "create_app",
        "create_volume",
        "allocate_ip_shared_v4",
        "allocate_ip_v6",
        "add_certificate",
    ]
    events = await stored_events(plane, tenant_id)
    steps = [event.payload["step"] for event in events if event.event_type == EventType.STEP_COMPLETED]
    assert steps == list(PROVISIONING_STEPS)
    assert events[-1].event_type == EventType.STATUS_CHANGED
    assert events[-1].payload["to_status"] == "awaiting_deploy"
    assert await plane.vault.has_secrets(tenant_id)


@pytest.mark.asyncio
async def test_unknown_step_outcome_is_resolved_by_reissuing(plane, compute) -> None:
    tenant_id = await _provisioning_tenant(plane)
    compute.time_out_next("create_volume")

    status = await plane.provisioner.provision(tenant_id)

    assert status == TenantStatus.AWAITING_DEPLOY
    assert len(compute.calls_for("create_volume")) == 2
    tenant = await load_tenant(plane, tenant_id)
    app = compute.apps[tenant.compute_app_name]
    assert len(app.volumes) == 1
    assert tenant.compute_volume_id == app.volumes["tenant_data"]


@pytest.mark.asyncio
async def test_persistently_unknown_step_fails_tenant(plane, compute) -> None:
    tenant_id = await _provisioning_tenant(plane)
    compute.time_out_next("allocate_ip_v6", times=2)

    status = await plane.provisioner.provision(tenant_id)

    assert status == TenantStatus.FAILED
    tenant = await load_tenant(plane, tenant_id)
    assert tenant.status == "failed"
    assert tenant.last_error.startswith("allocate_ipv6:")
    assert compute.calls_for("add_certificate") == []
    failed = (await stored_events(plane, tenant_id))[-1]
    assert failed.payload["to_status"] == "failed"
    assert failed.payload["step"] == "allocate_ipv6"


@pytest.mark.asyncio
async def test_rejected_step_fails_and_keeps_earlier_resources(plane, compute) -> None:
    tenant_id = await _provisioning_tenant(plane)
    compute.fail_next("add_certificate", ProviderRequestError("hostname rejected", status_code=422))

    status = await plane.provisioner.provision(tenant_id)

    assert status == TenantStatus.FAILED
    tenant = await load_tenant(plane, tenant_id)
    assert "hostname rejected" in tenant.last_error
    assert tenant.compute_app_name in compute.apps
    assert await plane.vault.has_secrets(tenant_id)


@pytest.mark.asyncio
async def test_retry_after_failure_reuses_existing_resources(plane, compute, database_admin) -> None:
    tenant_id = await _provisioning_tenant(plane)
    compute.fail_next("add_certificate", ProviderRequestError("temporarily rejected", status_code=400))
    assert await plane.provisioner.provision(tenant_id) == TenantStatus.FAILED

    await plane.retry_provisioning(owner(), tenant_id)

    tenant = await load_tenant(plane, tenant_id)
    assert tenant.status == "awaiting_deploy"
    assert tenant.last_error is None
    assert len(compute.apps[tenant.compute_app_name].volumes) == 1
    # Secrets from the first attempt are kept, not regenerated.
    assert [op for op, _ in database_admin.calls] == ["ensure_database"]


@pytest.mark.asyncio
async def test_retry_is_rejected_unless_failed(plane) -> None:
    tenant_id = await create_provisioned_tenant(plane)
    with pytest.raises(StateError):
        await plane.retry_provisioning(owner(), tenant_id)


@pytest.mark.asyncio
async def test_held_lease_skips_concurrent_provisioning(plane, compute) -> None:
    tenant_id = await _provisioning_tenant(plane)
    holder = await plane.leases.try_acquire(tenant_id, lease_scopes.PROVISIONING)
    assert holder is not None

    status = await plane.provisioner.provision(tenant_id)

    assert status == TenantStatus.PROVISIONING
    assert compute.calls == []
    await plane.leases.release(tenant_id, lease_scopes.PROVISIONING, holder)
    assert await plane.provisioner.provision(tenant_id) == TenantStatus.AWAITING_DEPLOY


@pytest.mark.asyncio
async def test_lease_is_released_after_failure(plane, compute) -> None:
    tenant_id = await _provisioning_tenant(plane)
    compute.fail_next("create_app", ProviderRequestError("org suspended", status_code=403))

    assert await plane.provisioner.provision(tenant_id) == TenantStatus.FAILED
    assert await plane.leases.try_acquire(tenant_id, lease_scopes.PROVISIONING) is not None


@pytest.mark.asyncio
async def test_duplicate_job_after_success_is_a_no_op(plane, compute) -> None:
    tenant_id = await create_provisioned_tenant(plane)
    before = len(compute.calls)

    assert await plane.provisioner.provision(tenant_id) == TenantStatus.AWAITING_DEPLOY
    assert len(compute.calls) == before


@pytest.mark.asyncio
async def test_worker_failure_marks_tenant_failed(plane) -> None:
    tenant_id = await _provisioning_tenant(plane)

    await plane.mark_provisioning_failed(tenant_id, "ConnectionError: redis went away")

    tenant = await load_tenant(plane, tenant_id)
    assert tenant.status == "failed"
    assert tenant.last_error == "worker: ConnectionError: redis went away"
    # Already failed: recording again is logged, not raised.
    await plane.mark_provisioning_failed(tenant_id, "again")
    assert (await load_tenant(plane, tenant_id)).last_error == "worker: ConnectionError: redis went away"
