from __future__ import annotations

import argparse
import asyncio
import sys

from tenantplane.persistence.db import SessionLocal
from tenantplane.services.audit import AuditLog
from tenantplane.services.auth.api_keys import create_api_key, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an API key for a tenant owner")
    parser.add_argument("--owner", required=True, help="Owner identifier (payment customer id)")
    parser.add_argument("--role", default="owner", help="Role: owner|operator")
    parser.add_argument("--name", default=None, help="Key label for auditing")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    async with SessionLocal() as session:
        row, raw_key = await create_api_key(session, owner_id=args.owner, role=role, name=args.name)
        await session.commit()

    await AuditLog(SessionLocal).record(
        tenant_id=None,
        actor_type="system",
        actor_id="create_api_key",
        event_type="auth.api_key.created",
        outcome="success",
        metadata={"owner_id": args.owner, "key_prefix": row.key_prefix, "role": role},
    )

    print("API key created:")
    print(f"  key_id: {row.id}")
    print(f"  key_prefix: {row.key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
