from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escapehatch.domain.models import ModerationAction, ModerationReport


async def list_actions_for_server(session: AsyncSession, *, server_id: str, limit: int) -> list[ModerationAction]:
    result = await session.execute(
        select(ModerationAction)
        .where(ModerationAction.server_id == server_id)
        .order_by(ModerationAction.created_at.desc(), ModerationAction.id.desc())
        .limit(max(limit, 1))
    )
    return list(result.scalars().all())


async def get_report_in_server(
    session: AsyncSession,
    *,
    server_id: str,
    report_id: str,
) -> ModerationReport | None:
    # Reports outside the caller's server resolve as missing.
    result = await session.execute(
        select(ModerationReport).where(
            ModerationReport.id == report_id,
            ModerationReport.server_id == server_id,
        )
    )
    return result.scalar_one_or_none()


async def list_reports_for_server(
    session: AsyncSession,
    *,
    server_id: str,
    status: str | None = None,
) -> list[ModerationReport]:
    stmt = select(ModerationReport).where(ModerationReport.server_id == server_id)
    if status is not None:
        stmt = stmt.where(ModerationReport.status == status)
    result = await session.execute(stmt.order_by(ModerationReport.created_at.desc(), ModerationReport.id.desc()))
    return list(result.scalars().all())
