from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.services.auth.api_keys import create_api_key


async def create_test_api_key(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    owner_id: str,
    role: str = "owner",
    name: str = "test-key",
) -> tuple[str, dict[str, str], str]:
    # Provision an owner API key for integration tests.
    async with session_factory() as session:
        row, raw_key = await create_api_key(session, owner_id=owner_id, role=role, name=name)
        await session.commit()
    headers = {"Authorization": f"Bearer {raw_key}"}
    return raw_key, headers, row.id
