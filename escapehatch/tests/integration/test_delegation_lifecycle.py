from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from escapehatch.core.errors import ForbiddenError, NotFoundError
from escapehatch.domain.models import DelegationAuditEvent, SpaceAdminAssignment, utc_now
from escapehatch.domain.scopes import MODERATION_UNBAN, Scope
from escapehatch.persistence.db import SessionLocal
from escapehatch.services.authz.policy import can_manage_server, is_action_allowed
from escapehatch.services.delegation import (
    assign_space_admin,
    expire_space_admin_assignments,
    has_active_space_admin_assignment,
    list_delegation_audit_events,
    list_space_admin_assignments,
    revoke_space_admin_assignment,
    transfer_space_ownership,
)
from escapehatch.services.telemetry import counters_snapshot
from escapehatch.tests.utils.hierarchy import seed_basic_hierarchy


async def _force_past_expiry(assignment_id: str) -> None:
    # Simulate time passing by moving expires_at behind now in a separate session.
    async with SessionLocal() as other:
        await other.execute(
            update(SpaceAdminAssignment)
            .where(SpaceAdminAssignment.id == assignment_id)
            .values(expires_at=utc_now() - timedelta(minutes=5))
        )
        await other.commit()


@pytest.mark.asyncio
async def test_assignment_grants_space_owner_authority(session) -> None:
    await seed_basic_hierarchy(session)
    assignment = await assign_space_admin(
        session, actor_user_id="owner_1", assigned_user_id="user_2", server_id="srv_1"
    )
    assert assignment.status == "active"
    assert assignment.id.startswith("saa_")

    assert await has_active_space_admin_assignment(session, assigned_user_id="user_2", server_id="srv_1")
    assert await can_manage_server(session, actor_user_id="user_2", server_id="srv_1")
    assert await is_action_allowed(
        session, actor_user_id="user_2", action=MODERATION_UNBAN, scope=Scope(server_id="srv_1")
    )
    assert not await can_manage_server(session, actor_user_id="user_2", server_id="srv_2")

    events = await list_delegation_audit_events(session, hub_id="hub_1")
    assert [event.action_type for event in events] == ["space_admin_assigned"]
    assert events[0].target_user_id == "user_2"


@pytest.mark.asyncio
async def test_assign_requires_management_authority(session) -> None:
    await seed_basic_hierarchy(session)
    with pytest.raises(ForbiddenError):
        await assign_space_admin(session, actor_user_id="user_2", assigned_user_id="user_2", server_id="srv_1")
    with pytest.raises(NotFoundError):
        await assign_space_admin(
            session, actor_user_id="owner_1", assigned_user_id="user_2", server_id="srv_missing"
        )
    with pytest.raises(ValueError):
        await assign_space_admin(
            session,
            actor_user_id="owner_1",
            assigned_user_id="user_2",
            server_id="srv_1",
            expires_at=utc_now() - timedelta(seconds=1),
        )


@pytest.mark.asyncio
async def test_reassignment_keeps_one_row_per_pair(session) -> None:
    await seed_basic_hierarchy(session)
    first = await assign_space_admin(session, actor_user_id="owner_1", assigned_user_id="user_2", server_id="srv_1")
    revoked = await revoke_space_admin_assignment(session, actor_user_id="owner_1", assignment_id=first.id)
    assert revoked is not None

    second = await assign_space_admin(
        session,
        actor_user_id="owner_1",
        assigned_user_id="user_2",
        server_id="srv_1",
        expires_at=utc_now() + timedelta(days=1),
    )
    assert second.id == first.id
    assert second.status == "active"

    rows = await list_space_admin_assignments(session, "srv_1")
    assert len(rows) == 1
    assert rows[0].status == "active"

    actions = [event.action_type for event in await list_delegation_audit_events(session, hub_id="hub_1")]
    assert sorted(actions) == ["space_admin_assigned", "space_admin_assigned", "space_admin_revoked"]


@pytest.mark.asyncio
async def test_reassigning_lapsed_pair_records_expiry_first(session) -> None:
    await seed_basic_hierarchy(session)
    first = await assign_space_admin(
        session,
        actor_user_id="owner_1",
        assigned_user_id="user_2",
        server_id="srv_1",
        expires_at=utc_now() + timedelta(hours=1),
    )
    await _force_past_expiry(first.id)

    second = await assign_space_admin(session, actor_user_id="owner_1", assigned_user_id="user_2", server_id="srv_1")
    assert second.id == first.id
    assert second.status == "active"
    assert second.expires_at is None

    events = await list_delegation_audit_events(session, hub_id="hub_1")
    assert sorted(event.action_type for event in events) == [
        "space_admin_assigned",
        "space_admin_assigned",
        "space_admin_revoked",
    ]
    expired = [event for event in events if event.action_type == "space_admin_revoked"]
    assert expired[0].metadata_json == {"reason": "expired"}
    assert expired[0].actor_user_id == "system"


@pytest.mark.asyncio
async def test_expired_assignment_is_never_active_without_sweep(session) -> None:
    await seed_basic_hierarchy(session)
    assignment = await assign_space_admin(
        session,
        actor_user_id="owner_1",
        assigned_user_id="user_2",
        server_id="srv_1",
        expires_at=utc_now() + timedelta(hours=1),
    )
    await _force_past_expiry(assignment.id)

    # Any read path treats the assignment as inactive.
    assert not await has_active_space_admin_assignment(session, assigned_user_id="user_2", server_id="srv_1")
    assert not await can_manage_server(session, actor_user_id="user_2", server_id="srv_1")

    rows = await list_space_admin_assignments(session, "srv_1")
    assert [row.status for row in rows] == ["expired"]

    events = await list_delegation_audit_events(session, hub_id="hub_1")
    expiry_events = [event for event in events if event.metadata_json.get("reason") == "expired"]
    assert len(expiry_events) == 1
    assert expiry_events[0].action_type == "space_admin_revoked"
    assert expiry_events[0].actor_user_id == "system"
    assert counters_snapshot()["delegation_assignments_expired_total"] == 1


@pytest.mark.asyncio
async def test_expiry_sweep_transitions_each_row_once(session) -> None:
    await seed_basic_hierarchy(session)
    for user_id in ("user_2", "user_3"):
        assignment = await assign_space_admin(
            session,
            actor_user_id="owner_1",
            assigned_user_id=user_id,
            server_id="srv_1",
            expires_at=utc_now() + timedelta(hours=1),
        )
        await _force_past_expiry(assignment.id)

    assert await expire_space_admin_assignments(session) == 2
    assert await expire_space_admin_assignments(session) == 0

    result = await session.execute(
        select(DelegationAuditEvent).where(DelegationAuditEvent.actor_user_id == "system")
    )
    assert len(result.scalars().all()) == 2


@pytest.mark.asyncio
async def test_revoke_is_idempotent(session) -> None:
    await seed_basic_hierarchy(session)
    assignment = await assign_space_admin(
        session, actor_user_id="owner_1", assigned_user_id="user_2", server_id="srv_1"
    )
    first = await revoke_space_admin_assignment(session, actor_user_id="owner_1", assignment_id=assignment.id)
    second = await revoke_space_admin_assignment(session, actor_user_id="owner_1", assignment_id=assignment.id)
    assert first is not None
    assert first.assigned_user_id == "user_2"
    assert second is None
    assert await revoke_space_admin_assignment(session, actor_user_id="owner_1", assignment_id="saa_missing") is None

    actions = [event.action_type for event in await list_delegation_audit_events(session, hub_id="hub_1")]
    assert actions.count("space_admin_revoked") == 1


@pytest.mark.asyncio
async def test_assignee_may_step_down_but_strangers_may_not_revoke(session) -> None:
    await seed_basic_hierarchy(session)
    assignment = await assign_space_admin(
        session, actor_user_id="owner_1", assigned_user_id="user_2", server_id="srv_1"
    )
    with pytest.raises(ForbiddenError):
        await revoke_space_admin_assignment(session, actor_user_id="user_9", assignment_id=assignment.id)
    result = await revoke_space_admin_assignment(session, actor_user_id="user_2", assignment_id=assignment.id)
    assert result is not None
    assert not await has_active_space_admin_assignment(session, assigned_user_id="user_2", server_id="srv_1")


@pytest.mark.asyncio
async def test_transfer_ownership_is_audited(session) -> None:
    await seed_basic_hierarchy(session)
    result = await transfer_space_ownership(
        session, actor_user_id="owner_1", server_id="srv_1", new_owner_user_id="user_2"
    )
    assert result.previous_owner_user_id == "owner_1"
    assert result.new_owner_user_id == "user_2"

    assert await can_manage_server(session, actor_user_id="user_2", server_id="srv_1")
    assert not await can_manage_server(session, actor_user_id="owner_1", server_id="srv_1")

    actions = {event.action_type for event in await list_delegation_audit_events(session, hub_id="hub_1")}
    assert actions == {"space_admin_transfer_started", "space_admin_transfer_completed"}


@pytest.mark.asyncio
async def test_transfer_requires_owner_or_transfer_authority(session) -> None:
    await seed_basic_hierarchy(session)
    with pytest.raises(ForbiddenError):
        await transfer_space_ownership(session, actor_user_id="user_2", server_id="srv_1", new_owner_user_id="user_2")
    with pytest.raises(NotFoundError):
        await transfer_space_ownership(
            session, actor_user_id="owner_1", server_id="srv_missing", new_owner_user_id="user_2"
        )

    # The hub owner holds space.transfer across the hub.
    result = await transfer_space_ownership(
        session, actor_user_id="hub_owner", server_id="srv_2", new_owner_user_id="user_3"
    )
    assert result.previous_owner_user_id == "owner_2"
    assert await list_delegation_audit_events(session, hub_id="hub_1", limit=1)
