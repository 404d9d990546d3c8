from __future__ import annotations

import asyncio

from escapehatch.persistence.db import SessionLocal
from escapehatch.services.delegation import expire_space_admin_assignments


async def expire() -> None:
    async with SessionLocal() as session:
        expired = await expire_space_admin_assignments(session)
        print(f"expired_space_admin_assignments={expired}")


if __name__ == "__main__":
    asyncio.run(expire())
