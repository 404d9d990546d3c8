from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from escapehatch.core.config import get_settings
from escapehatch.core.errors import ForbiddenError, NotFoundError
from escapehatch.domain.models import DelegationAuditEvent, SpaceAdminAssignment, ensure_utc, utc_now
from escapehatch.domain.scopes import SPACE_TRANSFER, Scope
from escapehatch.persistence.repos import delegation as delegation_repo
from escapehatch.persistence.repos import hierarchy as hierarchy_repo
from escapehatch.services.audit import SYSTEM_ACTOR_ID
from escapehatch.services.authz.policy import can_manage_server, is_action_allowed
from escapehatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ACTION_ASSIGNED = "space_admin_assigned"
ACTION_REVOKED = "space_admin_revoked"
ACTION_TRANSFER_STARTED = "space_admin_transfer_started"
ACTION_TRANSFER_COMPLETED = "space_admin_transfer_completed"


@dataclass(frozen=True)
class RevokeResult:
    assignment_id: str
    hub_id: str
    server_id: str
    assigned_user_id: str


@dataclass(frozen=True)
class TransferResult:
    hub_id: str
    server_id: str
    previous_owner_user_id: str | None
    new_owner_user_id: str


async def expire_space_admin_assignments(
    session: AsyncSession,
    *,
    server_id: str | None = None,
    assigned_user_id: str | None = None,
) -> int:
    """Move every due assignment from active to expired.

    This is the only code path that writes the expired status. The status
    change and one system-attributed revoke event per row commit together,
    and the conditional update guarantees a row is expired exactly once even
    when sweeps race.
    """
    now = utc_now()
    rows = await delegation_repo.expire_due_assignments(
        session, now=now, server_id=server_id, assigned_user_id=assigned_user_id
    )
    for row in rows:
        session.add(
            delegation_repo.build_audit_event(
                action_type=ACTION_REVOKED,
                actor_user_id=SYSTEM_ACTOR_ID,
                target_user_id=row.assigned_user_id,
                assignment_id=row.id,
                hub_id=row.hub_id,
                server_id=row.server_id,
                metadata_json={"reason": "expired"},
            )
        )
    # Commit even when nothing matched so the sweep never leaves a write transaction open.
    await session.commit()
    if rows:
        increment_counter("delegation_assignments_expired_total", len(rows))
        logger.info(
            "space_admin_assignments_expired count=%s server_id=%s user_id=%s",
            len(rows),
            server_id,
            assigned_user_id,
        )
    return len(rows)


async def assign_space_admin(
    session: AsyncSession,
    *,
    actor_user_id: str,
    assigned_user_id: str,
    server_id: str,
    expires_at: datetime | None = None,
) -> SpaceAdminAssignment:
    server = await hierarchy_repo.get_server(session, server_id)
    if server is None:
        raise NotFoundError(f"Server not found: {server_id}")
    expires_at = ensure_utc(expires_at)
    now = utc_now()
    if expires_at is not None and expires_at <= now:
        raise ValueError("expires_at must be in the future")
    if not await can_manage_server(session, actor_user_id=actor_user_id, server_id=server_id):
        raise ForbiddenError("Actor cannot manage this server")

    # A lapsed row gets its expiry event before it is reactivated.
    await expire_space_admin_assignments(session, server_id=server.id, assigned_user_id=assigned_user_id)
    # Re-assigning a revoked or expired pair reactivates the same row.
    assignment = await delegation_repo.upsert_active_assignment(
        session,
        hub_id=server.hub_id,
        server_id=server.id,
        assigned_user_id=assigned_user_id,
        assigned_by_user_id=actor_user_id,
        expires_at=expires_at,
        now=now,
    )
    session.add(
        delegation_repo.build_audit_event(
            action_type=ACTION_ASSIGNED,
            actor_user_id=actor_user_id,
            target_user_id=assigned_user_id,
            assignment_id=assignment.id,
            hub_id=server.hub_id,
            server_id=server.id,
            metadata_json={"expires_at": expires_at.isoformat() if expires_at else None},
        )
    )
    await session.commit()
    logger.info(
        "space_admin_assigned server_id=%s user_id=%s actor=%s",
        server.id,
        assigned_user_id,
        actor_user_id,
    )
    return assignment


async def list_space_admin_assignments(session: AsyncSession, server_id: str) -> list[SpaceAdminAssignment]:
    await expire_space_admin_assignments(session, server_id=server_id)
    return await delegation_repo.list_for_server(session, server_id)


async def has_active_space_admin_assignment(
    session: AsyncSession,
    *,
    assigned_user_id: str,
    server_id: str,
) -> bool:
    await expire_space_admin_assignments(session, server_id=server_id, assigned_user_id=assigned_user_id)
    return await delegation_repo.has_active_assignment(
        session, assigned_user_id=assigned_user_id, server_id=server_id, now=utc_now()
    )


async def revoke_space_admin_assignment(
    session: AsyncSession,
    *,
    actor_user_id: str,
    assignment_id: str,
) -> RevokeResult | None:
    # None means there was nothing active to revoke; repeated calls are harmless.
    assignment = await delegation_repo.get_assignment(session, assignment_id)
    if assignment is None:
        return None
    server_id = assignment.server_id
    assignee = assignment.assigned_user_id
    if actor_user_id != assignee and not await can_manage_server(
        session, actor_user_id=actor_user_id, server_id=server_id
    ):
        raise ForbiddenError("Actor cannot revoke this assignment")

    await expire_space_admin_assignments(session, server_id=server_id)
    row = await delegation_repo.revoke_if_active(session, assignment_id=assignment_id, now=utc_now())
    if row is None:
        await session.commit()
        return None
    session.add(
        delegation_repo.build_audit_event(
            action_type=ACTION_REVOKED,
            actor_user_id=actor_user_id,
            target_user_id=row.assigned_user_id,
            assignment_id=row.id,
            hub_id=row.hub_id,
            server_id=row.server_id,
            metadata_json={"reason": "revoked"},
        )
    )
    await session.commit()
    logger.info("space_admin_revoked assignment_id=%s actor=%s", row.id, actor_user_id)
    return RevokeResult(
        assignment_id=row.id,
        hub_id=row.hub_id,
        server_id=row.server_id,
        assigned_user_id=row.assigned_user_id,
    )


async def list_delegation_audit_events(
    session: AsyncSession,
    *,
    hub_id: str,
    limit: int | None = None,
) -> list[DelegationAuditEvent]:
    limit = limit or get_settings().delegation_audit_default_limit
    return await delegation_repo.list_audit_events(session, hub_id=hub_id, limit=limit)


async def transfer_space_ownership(
    session: AsyncSession,
    *,
    actor_user_id: str,
    server_id: str,
    new_owner_user_id: str,
) -> TransferResult:
    """Hand the server's owner of record to ``new_owner_user_id``.

    The started event, the owner change and the completed event are written
    in one transaction, so the audit trail never shows a transfer that did
    not happen or misses one that did.
    """
    server = await hierarchy_repo.get_server(session, server_id)
    if server is None:
        raise NotFoundError(f"Server not found: {server_id}")
    previous_owner = server.owner_user_id
    if previous_owner != actor_user_id and not await is_action_allowed(
        session,
        actor_user_id=actor_user_id,
        action=SPACE_TRANSFER,
        scope=Scope(hub_id=server.hub_id, server_id=server.id),
    ):
        raise ForbiddenError("Actor cannot transfer ownership of this server")

    metadata = {"previous_owner_user_id": previous_owner, "new_owner_user_id": new_owner_user_id}
    started_at = utc_now()
    try:
        session.add(
            delegation_repo.build_audit_event(
                action_type=ACTION_TRANSFER_STARTED,
                actor_user_id=actor_user_id,
                target_user_id=new_owner_user_id,
                hub_id=server.hub_id,
                server_id=server.id,
                metadata_json=metadata,
                created_at=started_at,
            )
        )
        server.owner_user_id = new_owner_user_id
        session.add(
            delegation_repo.build_audit_event(
                action_type=ACTION_TRANSFER_COMPLETED,
                actor_user_id=actor_user_id,
                target_user_id=new_owner_user_id,
                hub_id=server.hub_id,
                server_id=server.id,
                metadata_json=metadata,
                created_at=max(utc_now(), started_at),
            )
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("space_ownership_transfer_failed server_id=%s", server_id, exc_info=exc)
        raise
    logger.info(
        "space_ownership_transferred server_id=%s from=%s to=%s",
        server_id,
        previous_owner,
        new_owner_user_id,
    )
    return TransferResult(
        hub_id=server.hub_id,
        server_id=server_id,
        previous_owner_user_id=previous_owner,
        new_owner_user_id=new_owner_user_id,
    )
