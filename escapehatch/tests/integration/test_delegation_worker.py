from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import update

from escapehatch.domain.models import SpaceAdminAssignment, utc_now
from escapehatch.services.delegation import assign_space_admin, list_space_admin_assignments
from escapehatch.tests.utils.hierarchy import seed_basic_hierarchy, seed_channel
from escapehatch.workers.delegation_worker import WorkerSettings, expire_assignments, reconcile_hub_federation


@pytest.mark.asyncio
async def test_worker_sweep_expires_due_assignments(session) -> None:
    await seed_basic_hierarchy(session)
    assignment = await assign_space_admin(
        session,
        actor_user_id="owner_1",
        assigned_user_id="user_2",
        server_id="srv_1",
        expires_at=utc_now() + timedelta(hours=1),
    )
    await session.execute(
        update(SpaceAdminAssignment)
        .where(SpaceAdminAssignment.id == assignment.id)
        .values(expires_at=utc_now() - timedelta(minutes=1))
    )
    await session.commit()

    assert await expire_assignments({}) == 1
    rows = await list_space_admin_assignments(session, "srv_1")
    assert rows[0].status == "expired"


@pytest.mark.asyncio
async def test_worker_reconcile_job_returns_summary(session) -> None:
    await seed_basic_hierarchy(session)
    await seed_channel(session, channel_id="chn_room", server_id="srv_1", matrix_room_id="!room:hs.test")

    summary = await reconcile_hub_federation({}, {"hub_id": "hub_1", "actor_user_id": "hub_owner"})
    assert summary == {"checked_rooms": 1, "applied_rooms": 1, "failed_rooms": 0}


def test_worker_registers_jobs() -> None:
    names = {func.__name__ for func in WorkerSettings.functions}
    assert names == {"reconcile_hub_federation", "expire_assignments"}
