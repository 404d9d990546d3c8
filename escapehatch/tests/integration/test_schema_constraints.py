from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from escapehatch.domain.models import RoomAclStatus, SpaceAdminAssignment
from escapehatch.tests.utils.hierarchy import seed_basic_hierarchy


@pytest.mark.asyncio
async def test_assignment_status_is_constrained(session) -> None:
    await seed_basic_hierarchy(session)
    session.add(
        SpaceAdminAssignment(
            id="sa_bad",
            hub_id="hub_1",
            server_id="srv_1",
            assigned_user_id="user_2",
            assigned_by_user_id="owner_1",
            status="suspended",
        )
    )
    with pytest.raises(IntegrityError):
        await session.commit()
    await session.rollback()


@pytest.mark.asyncio
async def test_room_acl_status_is_constrained(session) -> None:
    await seed_basic_hierarchy(session)
    session.add(
        RoomAclStatus(
            room_id="!room:hs.test",
            hub_id="hub_1",
            server_id="srv_1",
            room_kind="space",
            allowlist=["hs.test"],
            status="pending",
        )
    )
    with pytest.raises(IntegrityError):
        await session.commit()
    await session.rollback()
