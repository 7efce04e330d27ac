from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel

from tenantplane.core.errors import IntegrationUnavailableError, ProviderUnavailableError, StateError


logger = logging.getLogger(__name__)

JOB_NAME = "provision_tenant"

ProvisionRunner = Callable[[str], Awaitable[Any]]
FailureHandler = Callable[[str, str], Awaitable[None]]


class ProvisioningJobPayload(BaseModel):
    # Published job schema for the webhook-to-worker handoff.
    tenant_id: str
    request_id: str | None = None


def _is_retryable(exc: Exception) -> bool:
    # Lifecycle conflicts are deterministic; only infrastructure hiccups are retried.
    if isinstance(exc, StateError):
        return False
    return isinstance(exc, (ProviderUnavailableError, IntegrationUnavailableError, ConnectionError, OSError))


def _failure_reason(exc: Exception) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return f"{type(exc).__name__}: {message}"[:500]


class ProvisioningQueue:
    def __init__(
        self,
        *,
        mode: str,
        redis_url: str,
        queue_name: str,
        max_retries: int,
    ) -> None:
        self._mode = (mode or "queue").lower()
        self._redis_url = redis_url
        self._queue_name = queue_name
        self._max_retries = max(1, max_retries)
        self._runner: ProvisionRunner | None = None
        self._on_failure: FailureHandler | None = None
        self._pool: ArqRedis | None = None
        self._pool_loop: asyncio.AbstractEventLoop | None = None

    @property
    def inline(self) -> bool:
        return self._mode == "inline"

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def bind(self, runner: ProvisionRunner, on_failure: FailureHandler) -> None:
        # The provisioner is built after the queue, so it is attached once wiring completes.
        self._runner = runner
        self._on_failure = on_failure

    async def _get_pool(self) -> ArqRedis:
        current_loop = asyncio.get_running_loop()
        if self._pool is not None and self._pool_loop == current_loop:
            return self._pool
        self._pool = await create_pool(
            RedisSettings.from_dsn(self._redis_url),
            default_queue_name=self._queue_name,
        )
        self._pool_loop = current_loop
        return self._pool

    async def enqueue(self, tenant_id: str, *, request_id: str | None = None) -> str:
        payload = ProvisioningJobPayload(tenant_id=tenant_id, request_id=request_id)
        # Unique per enqueue; duplicate jobs are harmless because provisioning holds a lease.
        job_id = f"provision:{tenant_id}:{uuid4().hex[:12]}"
        if self.inline:
            await self._run_inline(payload, job_id=job_id)
            return job_id
        pool = await self._get_pool()
        job = await pool.enqueue_job(JOB_NAME, payload.model_dump(), _job_id=job_id, _queue_name=self._queue_name)
        logger.info("provisioning_enqueued tenant_id=%s job_id=%s", tenant_id, job_id)
        return job.job_id if job else job_id

    async def process(self, payload: ProvisioningJobPayload, *, job_id: str, attempt: int) -> None:
        # Shared by the arq worker and inline mode so both retry the same way.
        if self._runner is None or self._on_failure is None:
            raise RuntimeError("provisioning queue is not bound to a provisioner")
        try:
            await self._runner(payload.tenant_id)
        except Exception as exc:  # noqa: BLE001 - classified below, final failures are recorded
            if _is_retryable(exc) and attempt < self._max_retries:
                logger.warning(
                    "provisioning_retry tenant_id=%s job_id=%s attempt=%s error=%s",
                    payload.tenant_id,
                    job_id,
                    attempt,
                    exc,
                )
                raise Retry(defer=attempt * 5) from exc
            logger.exception("provisioning_job_failed tenant_id=%s job_id=%s", payload.tenant_id, job_id)
            await self._on_failure(payload.tenant_id, _failure_reason(exc))

    async def _run_inline(self, payload: ProvisioningJobPayload, *, job_id: str) -> None:
        # Inline mode mimics worker retries without requiring Redis.
        attempt = 1
        while True:
            try:
                await self.process(payload, job_id=job_id, attempt=attempt)
                return
            except Retry:
                attempt += 1
                continue

    async def aclose(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None
