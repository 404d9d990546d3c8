from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import exists, or_, select, update
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncSession

from escapehatch.domain.models import DelegationAuditEvent, SpaceAdminAssignment
from escapehatch.persistence.upsert import dialect_insert, new_id


def _active_at(now: datetime):
    # An assignment past its expiry is never active, swept or not.
    return (
        SpaceAdminAssignment.status == "active",
        or_(SpaceAdminAssignment.expires_at.is_(None), SpaceAdminAssignment.expires_at > now),
    )


async def upsert_active_assignment(
    session: AsyncSession,
    *,
    hub_id: str,
    server_id: str,
    assigned_user_id: str,
    assigned_by_user_id: str,
    expires_at: datetime | None,
    now: datetime,
) -> SpaceAdminAssignment:
    # Single INSERT ... ON CONFLICT keeps at most one row per (server, user).
    stmt = dialect_insert(session, SpaceAdminAssignment).values(
        id=new_id("saa"),
        hub_id=hub_id,
        server_id=server_id,
        assigned_user_id=assigned_user_id,
        assigned_by_user_id=assigned_by_user_id,
        status="active",
        expires_at=expires_at,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["server_id", "assigned_user_id"],
        set_={
            "status": "active",
            "hub_id": stmt.excluded.hub_id,
            "assigned_by_user_id": stmt.excluded.assigned_by_user_id,
            "expires_at": stmt.excluded.expires_at,
            "updated_at": stmt.excluded.updated_at,
        },
    ).returning(SpaceAdminAssignment)
    result = await session.scalars(stmt, execution_options={"populate_existing": True})
    return result.one()


async def expire_due_assignments(
    session: AsyncSession,
    *,
    now: datetime,
    server_id: str | None = None,
    assigned_user_id: str | None = None,
) -> list[Row[Any]]:
    # Conditional bulk update; RETURNING yields each row exactly once under concurrent sweeps.
    stmt = update(SpaceAdminAssignment).where(
        SpaceAdminAssignment.status == "active",
        SpaceAdminAssignment.expires_at.is_not(None),
        SpaceAdminAssignment.expires_at <= now,
    )
    if server_id is not None:
        stmt = stmt.where(SpaceAdminAssignment.server_id == server_id)
    if assigned_user_id is not None:
        stmt = stmt.where(SpaceAdminAssignment.assigned_user_id == assigned_user_id)
    stmt = (
        stmt.values(status="expired", updated_at=now)
        .returning(
            SpaceAdminAssignment.id,
            SpaceAdminAssignment.hub_id,
            SpaceAdminAssignment.server_id,
            SpaceAdminAssignment.assigned_user_id,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return list(result.all())


async def revoke_if_active(
    session: AsyncSession,
    *,
    assignment_id: str,
    now: datetime,
) -> Row[Any] | None:
    # Only the caller whose update matched gets a row back; repeats return None.
    stmt = (
        update(SpaceAdminAssignment)
        .where(SpaceAdminAssignment.id == assignment_id, *_active_at(now))
        .values(status="revoked", updated_at=now)
        .returning(
            SpaceAdminAssignment.id,
            SpaceAdminAssignment.hub_id,
            SpaceAdminAssignment.server_id,
            SpaceAdminAssignment.assigned_user_id,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.one_or_none()


async def has_active_assignment(
    session: AsyncSession,
    *,
    assigned_user_id: str,
    server_id: str,
    now: datetime,
) -> bool:
    stmt = select(
        exists().where(
            SpaceAdminAssignment.assigned_user_id == assigned_user_id,
            SpaceAdminAssignment.server_id == server_id,
            *_active_at(now),
        )
    )
    result = await session.execute(stmt)
    return bool(result.scalar())


async def list_active_for_user(
    session: AsyncSession,
    *,
    assigned_user_id: str,
    now: datetime,
) -> list[tuple[str, str]]:
    # (hub_id, server_id) pairs materialized as space_owner bindings.
    result = await session.execute(
        select(SpaceAdminAssignment.hub_id, SpaceAdminAssignment.server_id).where(
            SpaceAdminAssignment.assigned_user_id == assigned_user_id,
            *_active_at(now),
        )
    )
    return [(row.hub_id, row.server_id) for row in result.all()]


async def list_for_server(session: AsyncSession, server_id: str) -> list[SpaceAdminAssignment]:
    # Bulk updates skip the identity map, so refresh whatever is already loaded.
    result = await session.execute(
        select(SpaceAdminAssignment)
        .where(SpaceAdminAssignment.server_id == server_id)
        .order_by(SpaceAdminAssignment.created_at.asc(), SpaceAdminAssignment.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_assignment(session: AsyncSession, assignment_id: str) -> SpaceAdminAssignment | None:
    return await session.get(SpaceAdminAssignment, assignment_id, populate_existing=True)


def build_audit_event(
    *,
    action_type: str,
    actor_user_id: str,
    target_user_id: str | None = None,
    assignment_id: str | None = None,
    hub_id: str | None = None,
    server_id: str | None = None,
    metadata_json: dict[str, Any] | None = None,
    created_at: datetime | None = None,
) -> DelegationAuditEvent:
    event = DelegationAuditEvent(
        id=new_id("dae"),
        action_type=action_type,
        actor_user_id=actor_user_id,
        target_user_id=target_user_id,
        assignment_id=assignment_id,
        hub_id=hub_id,
        server_id=server_id,
        metadata_json=metadata_json or {},
    )
    if created_at is not None:
        event.created_at = created_at
    return event


async def list_audit_events(
    session: AsyncSession,
    *,
    hub_id: str,
    limit: int,
) -> list[DelegationAuditEvent]:
    result = await session.execute(
        select(DelegationAuditEvent)
        .where(DelegationAuditEvent.hub_id == hub_id)
        .order_by(DelegationAuditEvent.created_at.desc(), DelegationAuditEvent.id.desc())
        .limit(max(limit, 1))
    )
    return list(result.scalars().all())
