from __future__ import annotations

import logging

from arq.connections import RedisSettings

from tenantplane.core.config import get_settings
from tenantplane.core.logging import configure_logging
from tenantplane.persistence.db import SessionLocal
from tenantplane.services.control_plane import build_control_plane
from tenantplane.services.provisioning_queue import ProvisioningJobPayload


logger = logging.getLogger(__name__)


async def provision_tenant(ctx, payload: dict) -> None:
    # Parse and validate payloads in the worker to enforce the job schema.
    job_payload = ProvisioningJobPayload.model_validate(payload)
    plane = ctx["control_plane"]
    job_id = ctx.get("job_id") or job_payload.tenant_id
    attempt = ctx.get("job_try", 1)
    await plane.queue.process(job_payload, job_id=job_id, attempt=attempt)


async def _startup(ctx) -> None:
    configure_logging()
    # One control plane per worker process; jobs share its provider clients.
    ctx["control_plane"] = build_control_plane(get_settings(), SessionLocal)
    logger.info("provisioning_worker_started")


async def _shutdown(ctx) -> None:
    plane = ctx.get("control_plane")
    if plane is not None:
        await plane.aclose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.provisioning_queue_name
    max_tries = settings.provisioning_max_retries
    functions = [provision_tenant]
    on_startup = _startup
    on_shutdown = _shutdown
