from __future__ import annotations

from tenantplane.core.config import Settings
from tenantplane.core.errors import ProviderConfigError
from tenantplane.providers.database.base import DatabaseEndpoint, TenantDatabaseAdmin
from tenantplane.providers.database.fake import FakeDatabaseAdmin
from tenantplane.providers.database.postgres import PostgresDatabaseAdmin


def build_database_admin(settings: Settings) -> TenantDatabaseAdmin:
    endpoint = DatabaseEndpoint(host=settings.tenant_database_host, port=settings.tenant_database_port)
    mode = (settings.tenant_database_mode or "").lower()
    if mode == "fake":
        return FakeDatabaseAdmin(endpoint)
    if mode == "postgres":
        if not settings.tenant_database_admin_url:
            raise ProviderConfigError("TENANT_DATABASE_ADMIN_URL is required for postgres tenant databases")
        return PostgresDatabaseAdmin(settings.tenant_database_admin_url, endpoint)
    raise ProviderConfigError(f"Unsupported tenant database mode: {mode}")
