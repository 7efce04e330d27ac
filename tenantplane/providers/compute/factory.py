from __future__ import annotations

from tenantplane.core.config import Settings
from tenantplane.core.errors import ProviderConfigError
from tenantplane.providers.compute.base import ComputeProviderClient
from tenantplane.providers.compute.fake import FakeComputeProvider
from tenantplane.providers.compute.fly_machines import FlyConfig, FlyMachinesClient
from tenantplane.services.resilience import breaker_config_from_settings, retry_policy_from_settings


def build_compute_provider(settings: Settings) -> ComputeProviderClient:
    provider = (settings.compute_provider or "").lower()
    if provider == "fake":
        return FakeComputeProvider()
    if provider == "fly":
        if not settings.fly_api_token:
            raise ProviderConfigError("FLY_API_TOKEN is required for the fly compute provider")
        return FlyMachinesClient(
            FlyConfig(
                api_token=settings.fly_api_token,
                org_slug=settings.fly_org_slug,
                machines_api_url=settings.fly_machines_api_url,
                graphql_url=settings.fly_graphql_url,
                retry=retry_policy_from_settings(settings),
                breaker=breaker_config_from_settings(settings),
                redis_url=settings.redis_url,
            )
        )
    raise ProviderConfigError(f"Unsupported compute provider: {provider}")
