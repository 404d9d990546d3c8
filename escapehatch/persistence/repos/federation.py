from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escapehatch.domain.models import FederationPolicyEvent, HubFederationPolicy, RoomAclStatus
from escapehatch.persistence.upsert import dialect_insert, new_id


async def get_policy(session: AsyncSession, hub_id: str) -> HubFederationPolicy | None:
    return await session.get(HubFederationPolicy, hub_id, populate_existing=True)


async def upsert_policy(
    session: AsyncSession,
    *,
    hub_id: str,
    allowlist: list[str],
    actor_user_id: str,
    now: datetime,
) -> HubFederationPolicy:
    # Replace the whole allowlist; creator fields survive later updates.
    stmt = dialect_insert(session, HubFederationPolicy).values(
        hub_id=hub_id,
        allowlist=allowlist,
        created_by_user_id=actor_user_id,
        updated_by_user_id=actor_user_id,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["hub_id"],
        set_={
            "allowlist": stmt.excluded.allowlist,
            "updated_by_user_id": stmt.excluded.updated_by_user_id,
            "updated_at": stmt.excluded.updated_at,
        },
    ).returning(HubFederationPolicy)
    result = await session.scalars(stmt, execution_options={"populate_existing": True})
    return result.one()


async def upsert_room_status(
    session: AsyncSession,
    *,
    room_id: str,
    hub_id: str,
    server_id: str | None,
    channel_id: str | None,
    room_kind: str,
    allowlist: list[str],
    status: str,
    last_error: str | None,
    applied_at: datetime | None,
    now: datetime,
) -> None:
    # One row per room; a retry overwrites the previous outcome.
    stmt = dialect_insert(session, RoomAclStatus).values(
        room_id=room_id,
        hub_id=hub_id,
        server_id=server_id,
        channel_id=channel_id,
        room_kind=room_kind,
        allowlist=allowlist,
        status=status,
        last_error=last_error,
        applied_at=applied_at,
        checked_at=now,
        updated_at=now,
    )
    set_: dict[str, Any] = {
        "hub_id": stmt.excluded.hub_id,
        "server_id": stmt.excluded.server_id,
        "channel_id": stmt.excluded.channel_id,
        "room_kind": stmt.excluded.room_kind,
        "allowlist": stmt.excluded.allowlist,
        "status": stmt.excluded.status,
        "last_error": stmt.excluded.last_error,
        "applied_at": stmt.excluded.applied_at,
        "checked_at": stmt.excluded.checked_at,
        "updated_at": stmt.excluded.updated_at,
    }
    stmt = stmt.on_conflict_do_update(index_elements=["room_id"], set_=set_)
    await session.execute(stmt)


def build_policy_event(
    *,
    hub_id: str,
    actor_user_id: str,
    action_type: str,
    policy_json: dict[str, Any],
) -> FederationPolicyEvent:
    return FederationPolicyEvent(
        id=new_id("fpev"),
        hub_id=hub_id,
        actor_user_id=actor_user_id,
        action_type=action_type,
        policy_json=policy_json,
    )


async def list_policy_events(session: AsyncSession, *, hub_id: str, limit: int) -> list[FederationPolicyEvent]:
    result = await session.execute(
        select(FederationPolicyEvent)
        .where(FederationPolicyEvent.hub_id == hub_id)
        .order_by(FederationPolicyEvent.created_at.desc(), FederationPolicyEvent.id.desc())
        .limit(max(limit, 1))
    )
    return list(result.scalars().all())


async def list_room_statuses(session: AsyncSession, hub_id: str) -> list[RoomAclStatus]:
    result = await session.execute(
        select(RoomAclStatus)
        .where(RoomAclStatus.hub_id == hub_id)
        .order_by(RoomAclStatus.checked_at.desc(), RoomAclStatus.room_id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
