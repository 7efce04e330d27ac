from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis

from tenantplane.core.config import Settings
from tenantplane.core.errors import IntegrationUnavailableError
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (ConnectionError, OSError)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None


async def get_resilience_redis(redis_url: str | None) -> Redis | None:
    # Reuse a shared Redis connection for breaker coordination across processes.
    if not redis_url:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    try:
        _redis_pool = Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        _redis_loop = current_loop
    except ValueError as exc:
        logger.warning("resilience_redis_unavailable url_invalid=%s", exc)
        return None
    return _redis_pool


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network failures and 5xx/429 responses by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status >= 500 or status == 429):
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize external retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    max_backoff_ms: int = 5000


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
        max_backoff_ms=settings.ext_retry_max_backoff_ms,
    )


def backoff_delay_s(policy: RetryPolicy, attempt: int) -> float:
    # Full exponential step capped at max_backoff_ms, then jittered.
    base_ms = min(policy.backoff_ms * (2 ** max(attempt - 1, 0)), policy.max_backoff_ms)
    return (base_ms / 1000.0) * random.uniform(0.5, 1.0)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    # Retry helper with capped jittered backoff for transient failures only.
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("external_retries_total")
            await sleep(backoff_delay_s(policy, attempt))
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    # Store thresholds in settings so operators can tune without code changes.
    failure_threshold: int
    open_seconds: int
    half_open_trials: int
    redis_prefix: str = "tenantplane:cb"


def breaker_config_from_settings(settings: Settings) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        failure_threshold=settings.cb_failure_threshold,
        open_seconds=settings.cb_open_seconds,
        half_open_trials=settings.cb_half_open_trials,
        redis_prefix=settings.cb_redis_prefix,
    )


@dataclass
class CircuitBreakerState:
    # Track failures and transitions across instances via Redis.
    state: str
    failures: int
    opened_at: float | None
    half_open_trials: int


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig,
        redis: Redis | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._name = name
        self._redis = redis
        self._config = config
        # Wall-clock time so opened_at compares across processes sharing Redis.
        self._time = time_source or time.time
        self._local_state = CircuitBreakerState("closed", 0, None, 0)

    @property
    def name(self) -> str:
        return self._name

    def _key(self) -> str:
        return f"{self._config.redis_prefix}:{self._name}"

    async def _load(self) -> CircuitBreakerState:
        # Read breaker state from Redis when available; otherwise fall back to local.
        if self._redis is None:
            return self._local_state
        raw = await self._redis.hgetall(self._key())
        if not raw:
            return self._local_state
        state = raw.get("state", "closed")
        failures = int(raw.get("failures", 0))
        opened_at = float(raw["opened_at"]) if raw.get("opened_at") else None
        half_open_trials = int(raw.get("half_open_trials", 0))
        return CircuitBreakerState(state, failures, opened_at, half_open_trials)

    async def _save(self, state: CircuitBreakerState) -> None:
        if self._redis is None:
            self._local_state = state
            return
        payload = {
            "state": state.state,
            "failures": str(state.failures),
            "opened_at": str(state.opened_at or ""),
            "half_open_trials": str(state.half_open_trials),
        }
        await self._redis.hset(self._key(), mapping=payload)
        await self._redis.expire(self._key(), max(self._config.open_seconds * 4, 60))

    def _transition(self, state: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
        return CircuitBreakerState(target, 0, self._time() if target == "open" else None, 0)

    async def before_call(self) -> None:
        # Decide whether calls are allowed and update half-open counters.
        state = await self._load()
        if state.state == "open":
            if state.opened_at is not None and (self._time() - state.opened_at) >= self._config.open_seconds:
                state = self._transition(state, "half_open")
                await self._save(state)
            else:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
        if state.state == "half_open":
            if state.half_open_trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            state.half_open_trials += 1
            await self._save(state)

    async def record_success(self) -> None:
        state = await self._load()
        if state.state != "closed":
            state = self._transition(state, "closed")
        else:
            state.failures = 0
            state.half_open_trials = 0
        await self._save(state)

    async def record_failure(self) -> None:
        state = await self._load()
        if state.state == "half_open":
            await self._save(self._transition(state, "open"))
            return
        failures = state.failures + 1
        if failures >= self._config.failure_threshold:
            state = self._transition(state, "open")
        else:
            state.failures = failures
        await self._save(state)
