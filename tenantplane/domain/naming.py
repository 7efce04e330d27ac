from __future__ import annotations

# Deterministic provider resource names; retries and re-queries rely on them.

VOLUME_NAME = "tenant_data"


def compute_app_name(prefix: str, tenant_id: str) -> str:
    return f"{prefix}-{tenant_id}".lower()


def tenant_hostname(app_name: str, base_domain: str) -> str:
    return f"{app_name}.{base_domain}"


def machine_name(app_name: str) -> str:
    return f"{app_name}-web"


def app_url(hostname: str) -> str:
    return f"https://{hostname}"
