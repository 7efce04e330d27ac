from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Protocol
from urllib.parse import quote


_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


def tenant_role_name(tenant_id: str) -> str:
    # Tenant ids are hex uuids; keep role names valid unquoted Postgres identifiers.
    role = "tenant_" + re.sub(r"[^a-z0-9_]", "_", tenant_id.lower())
    return role[:63]


def check_identifier(value: str) -> str:
    if not _IDENTIFIER.match(value):
        raise ValueError(f"invalid database identifier: {value!r}")
    return value


@dataclass(frozen=True)
class DatabaseEndpoint:
    host: str
    port: int

    def url_for(self, role: str, password: str, database: str) -> str:
        return f"postgresql://{role}:{quote(password, safe='')}@{self.host}:{self.port}/{database}"


class TenantDatabaseAdmin(Protocol):
    async def ensure_database(self, role: str, password: str) -> str:
        """Create the role and its database if absent, set the password, return the URL."""
        ...

    async def set_password(self, role: str, password: str) -> str:
        """Change the role's password and return the connection URL carrying it."""
        ...

    async def drop(self, role: str) -> None:
        ...

    async def aclose(self) -> None:
        ...
