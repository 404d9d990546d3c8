from __future__ import annotations

import argparse
import asyncio

from escapehatch.persistence.db import SessionLocal
from escapehatch.services.audit import SYSTEM_ACTOR_ID
from escapehatch.services.federation import reconcile_hub_federation_policy


async def reconcile(hub_id: str, actor_user_id: str) -> None:
    async with SessionLocal() as session:
        summary = await reconcile_hub_federation_policy(session, hub_id=hub_id, actor_user_id=actor_user_id)
        print(
            f"hub_id={hub_id} checked_rooms={summary.checked_rooms} "
            f"applied_rooms={summary.applied_rooms} failed_rooms={summary.failed_rooms}"
        )
        for room_id, status in summary.room_statuses.items():
            print(f"room_id={room_id} status={status}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Push a hub's federation allowlist to every provisioned room.")
    parser.add_argument("hub_id")
    parser.add_argument("--actor", default=SYSTEM_ACTOR_ID, help="User id recorded on the reconcile event")
    args = parser.parse_args()
    asyncio.run(reconcile(args.hub_id, args.actor))


if __name__ == "__main__":
    main()
