from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from escapehatch.core.config import get_settings
from escapehatch.core.errors import NotFoundError
from escapehatch.domain.models import ModerationAction, ModerationReport, ensure_utc, utc_now
from escapehatch.domain.scopes import (
    CHANNEL_LOCK,
    CHANNEL_POSTING,
    CHANNEL_SLOWMODE,
    CHANNEL_UNLOCK,
    MODERATION_BAN,
    MODERATION_KICK,
    MODERATION_REDACT,
    MODERATION_TIMEOUT,
    MODERATION_UNBAN,
    REPORTS_TRIAGE,
    Scope,
    parse_role,
)
from escapehatch.persistence.repos import hierarchy as hierarchy_repo
from escapehatch.persistence.repos import moderation as moderation_repo
from escapehatch.persistence.upsert import new_id
from escapehatch.services.privileged_gateway import execute_privileged_action


logger = logging.getLogger(__name__)

MODERATION_ACTIONS: dict[str, str] = {
    "kick": MODERATION_KICK,
    "ban": MODERATION_BAN,
    "unban": MODERATION_UNBAN,
    "timeout": MODERATION_TIMEOUT,
    "redact_message": MODERATION_REDACT,
}

REPORT_TRANSITION_STATUSES = frozenset({"triaged", "resolved", "dismissed"})


@dataclass(frozen=True)
class ChannelControls:
    channel_id: str
    server_id: str
    is_locked: bool
    slow_mode_seconds: int
    posting_restricted_to_roles: list[str]


@dataclass(frozen=True)
class ModerationReportRecord:
    id: str
    server_id: str
    channel_id: str | None
    reporter_user_id: str
    target_user_id: str | None
    target_message_id: str | None
    reason: str
    status: str
    triaged_by_user_id: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, report: ModerationReport) -> "ModerationReportRecord":
        return cls(
            id=report.id,
            server_id=report.server_id,
            channel_id=report.channel_id,
            reporter_user_id=report.reporter_user_id,
            target_user_id=report.target_user_id,
            target_message_id=report.target_message_id,
            reason=report.reason,
            status=report.status,
            triaged_by_user_id=report.triaged_by_user_id,
            created_at=ensure_utc(report.created_at),
            updated_at=ensure_utc(report.updated_at),
        )


async def perform_moderation_action(
    session: AsyncSession,
    *,
    actor_user_id: str,
    server_id: str,
    action: str,
    reason: str,
    channel_id: str | None = None,
    target_user_id: str | None = None,
    target_message_id: str | None = None,
    timeout_seconds: int | None = None,
) -> None:
    # Enforcement against chat membership happens in the chat service; this records the decision.
    privileged_action = MODERATION_ACTIONS.get(action)
    if privileged_action is None:
        raise ValueError(f"Unsupported moderation action: {action}")
    if timeout_seconds is not None and timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be positive")

    async def _run() -> None:
        return None

    await execute_privileged_action(
        session,
        actor_user_id=actor_user_id,
        action=privileged_action,
        scope=Scope(server_id=server_id, channel_id=channel_id),
        reason=reason,
        run=_run,
        target_user_id=target_user_id,
        target_message_id=target_message_id,
        metadata={"timeout_seconds": timeout_seconds} if timeout_seconds else None,
    )


async def _load_channel(session: AsyncSession, *, server_id: str, channel_id: str):
    channel = await hierarchy_repo.get_channel_in_server(session, server_id=server_id, channel_id=channel_id)
    if channel is None:
        raise NotFoundError(f"Channel not found in server: {channel_id}")
    return channel


async def set_channel_controls(
    session: AsyncSession,
    *,
    actor_user_id: str,
    server_id: str,
    channel_id: str,
    reason: str,
    lock: bool | None = None,
    slow_mode_seconds: int | None = None,
    posting_restricted_to_roles: list[str] | None = None,
) -> ChannelControls:
    """Apply channel controls; each requested change is its own audited action."""
    if slow_mode_seconds is not None and slow_mode_seconds < 0:
        raise ValueError("slow_mode_seconds must not be negative")
    roles = None
    if posting_restricted_to_roles is not None:
        roles = [parse_role(role).value for role in posting_restricted_to_roles]
    await _load_channel(session, server_id=server_id, channel_id=channel_id)
    scope = Scope(server_id=server_id, channel_id=channel_id)

    if lock is not None:

        async def _apply_lock() -> None:
            channel = await _load_channel(session, server_id=server_id, channel_id=channel_id)
            channel.is_locked = lock
            await session.commit()

        await execute_privileged_action(
            session,
            actor_user_id=actor_user_id,
            action=CHANNEL_LOCK if lock else CHANNEL_UNLOCK,
            scope=scope,
            reason=reason,
            run=_apply_lock,
        )

    if slow_mode_seconds is not None:

        async def _apply_slow_mode() -> None:
            channel = await _load_channel(session, server_id=server_id, channel_id=channel_id)
            channel.slow_mode_seconds = slow_mode_seconds
            await session.commit()

        await execute_privileged_action(
            session,
            actor_user_id=actor_user_id,
            action=CHANNEL_SLOWMODE,
            scope=scope,
            reason=reason,
            run=_apply_slow_mode,
            metadata={"slow_mode_seconds": slow_mode_seconds},
        )

    if roles is not None:

        async def _apply_posting() -> None:
            channel = await _load_channel(session, server_id=server_id, channel_id=channel_id)
            channel.posting_restricted_to_roles = roles
            await session.commit()

        await execute_privileged_action(
            session,
            actor_user_id=actor_user_id,
            action=CHANNEL_POSTING,
            scope=scope,
            reason=reason,
            run=_apply_posting,
            metadata={"roles": roles},
        )

    channel = await _load_channel(session, server_id=server_id, channel_id=channel_id)
    return ChannelControls(
        channel_id=channel.id,
        server_id=channel.server_id,
        is_locked=channel.is_locked,
        slow_mode_seconds=channel.slow_mode_seconds,
        posting_restricted_to_roles=list(channel.posting_restricted_to_roles or []),
    )


async def create_report(
    session: AsyncSession,
    *,
    reporter_user_id: str,
    server_id: str,
    reason: str,
    channel_id: str | None = None,
    target_user_id: str | None = None,
    target_message_id: str | None = None,
) -> ModerationReportRecord:
    # Any member may report; triage is the privileged step.
    if await hierarchy_repo.get_server(session, server_id) is None:
        raise NotFoundError(f"Server not found: {server_id}")
    now = utc_now()
    report = ModerationReport(
        id=new_id("rpt"),
        server_id=server_id,
        channel_id=channel_id,
        reporter_user_id=reporter_user_id,
        target_user_id=target_user_id,
        target_message_id=target_message_id,
        reason=reason,
        status="open",
        created_at=now,
        updated_at=now,
    )
    session.add(report)
    await session.commit()
    logger.info("moderation_report_created report_id=%s server_id=%s", report.id, server_id)
    return ModerationReportRecord.from_model(report)


async def transition_report_status(
    session: AsyncSession,
    *,
    actor_user_id: str,
    server_id: str,
    report_id: str,
    status: str,
    reason: str,
) -> ModerationReportRecord:
    if status not in REPORT_TRANSITION_STATUSES:
        raise ValueError(f"Unsupported report status: {status}")

    async def _transition() -> ModerationReportRecord:
        report = await moderation_repo.get_report_in_server(session, server_id=server_id, report_id=report_id)
        if report is None:
            raise NotFoundError("Report not found for scope")
        report.status = status
        report.triaged_by_user_id = actor_user_id
        report.updated_at = utc_now()
        await session.commit()
        logger.info("moderation_report_transitioned report_id=%s status=%s", report_id, status)
        return ModerationReportRecord.from_model(report)

    return await execute_privileged_action(
        session,
        actor_user_id=actor_user_id,
        action=REPORTS_TRIAGE,
        scope=Scope(server_id=server_id),
        reason=reason,
        run=_transition,
        metadata={"report_id": report_id, "status": status},
    )


async def list_moderation_actions(
    session: AsyncSession,
    *,
    server_id: str,
    limit: int | None = None,
) -> list[ModerationAction]:
    limit = limit or get_settings().moderation_action_list_limit
    return await moderation_repo.list_actions_for_server(session, server_id=server_id, limit=limit)
