from __future__ import annotations

from collections import defaultdict

from tenantplane.providers.database.base import DatabaseEndpoint, check_identifier


class FakeDatabaseAdmin:
    def __init__(self, endpoint: DatabaseEndpoint | None = None) -> None:
        self._endpoint = endpoint or DatabaseEndpoint(host="db.internal", port=5432)
        # role -> current password; tests assert rotation reached the database.
        self.passwords: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, list[Exception]] = defaultdict(list)

    def fail_next(self, operation: str, exc: Exception, *, times: int = 1) -> None:
        self._failures[operation].extend([exc] * times)

    def _enter(self, operation: str, role: str) -> None:
        self.calls.append((operation, role))
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    async def ensure_database(self, role: str, password: str) -> str:
        self._enter("ensure_database", check_identifier(role))
        self.passwords[role] = password
        return self._endpoint.url_for(role, password, role)

    async def set_password(self, role: str, password: str) -> str:
        self._enter("set_password", check_identifier(role))
        self.passwords[role] = password
        return self._endpoint.url_for(role, password, role)

    async def drop(self, role: str) -> None:
        self._enter("drop", check_identifier(role))
        self.passwords.pop(role, None)

    async def aclose(self) -> None:
        return None
