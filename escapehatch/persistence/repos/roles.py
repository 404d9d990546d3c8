from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escapehatch.domain.models import RoleAssignmentAuditLog, RoleBinding
from escapehatch.persistence.upsert import new_id


async def list_bindings_for_user(session: AsyncSession, product_user_id: str) -> list[RoleBinding]:
    result = await session.execute(
        select(RoleBinding)
        .where(RoleBinding.product_user_id == product_user_id)
        .order_by(RoleBinding.created_at.asc(), RoleBinding.id.asc())
    )
    return list(result.scalars().all())


async def get_binding(session: AsyncSession, binding_id: str) -> RoleBinding | None:
    return await session.get(RoleBinding, binding_id)


async def find_identical_binding(
    session: AsyncSession,
    *,
    product_user_id: str,
    role: str,
    hub_id: str | None,
    server_id: str | None,
    channel_id: str | None,
) -> RoleBinding | None:
    # `IS NULL` comparisons are required so wider bindings are not confused with narrower ones.
    stmt = select(RoleBinding).where(
        RoleBinding.product_user_id == product_user_id,
        RoleBinding.role == role,
        RoleBinding.hub_id.is_(None) if hub_id is None else RoleBinding.hub_id == hub_id,
        RoleBinding.server_id.is_(None) if server_id is None else RoleBinding.server_id == server_id,
        RoleBinding.channel_id.is_(None) if channel_id is None else RoleBinding.channel_id == channel_id,
    )
    result = await session.execute(stmt.order_by(RoleBinding.created_at.asc()).limit(1))
    return result.scalar_one_or_none()


def build_binding(
    *,
    product_user_id: str,
    role: str,
    hub_id: str | None,
    server_id: str | None,
    channel_id: str | None,
) -> RoleBinding:
    return RoleBinding(
        id=new_id("rb"),
        product_user_id=product_user_id,
        role=role,
        hub_id=hub_id,
        server_id=server_id,
        channel_id=channel_id,
    )


def build_assignment_audit(
    *,
    actor_user_id: str,
    target_user_id: str,
    role: str,
    hub_id: str | None,
    server_id: str | None,
    channel_id: str | None,
    outcome: str,
    reason: str | None = None,
) -> RoleAssignmentAuditLog:
    return RoleAssignmentAuditLog(
        id=new_id("raal"),
        actor_user_id=actor_user_id,
        target_user_id=target_user_id,
        role=role,
        hub_id=hub_id,
        server_id=server_id,
        channel_id=channel_id,
        outcome=outcome,
        reason=reason,
    )


async def list_assignment_audit(
    session: AsyncSession,
    *,
    target_user_id: str | None = None,
    server_id: str | None = None,
    limit: int = 50,
) -> list[RoleAssignmentAuditLog]:
    stmt = select(RoleAssignmentAuditLog)
    if target_user_id is not None:
        stmt = stmt.where(RoleAssignmentAuditLog.target_user_id == target_user_id)
    if server_id is not None:
        stmt = stmt.where(RoleAssignmentAuditLog.server_id == server_id)
    result = await session.execute(
        stmt.order_by(RoleAssignmentAuditLog.created_at.desc(), RoleAssignmentAuditLog.id.desc()).limit(
            max(limit, 1)
        )
    )
    return list(result.scalars().all())
