from __future__ import annotations

import argparse
import asyncio

from tenantplane.persistence.db import SessionLocal
from tenantplane.persistence.repos.webhooks import prune_receipts


async def prune(older_than_days: int) -> None:
    async with SessionLocal() as session:
        deleted = await prune_receipts(session, older_than_days=older_than_days)
        await session.commit()
        print(f"pruned_webhook_receipts={deleted}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Delete webhook receipts past the provider's redelivery window")
    parser.add_argument("--older-than-days", type=int, default=30)
    asyncio.run(prune(parser.parse_args().older_than_days))
