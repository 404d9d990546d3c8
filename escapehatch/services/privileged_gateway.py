from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from escapehatch.core.errors import ForbiddenError
from escapehatch.domain.models import ModerationAction
from escapehatch.domain.scopes import (
    AUDIT_READ,
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
    VOICE_TOKEN_ISSUE,
    Scope,
)
from escapehatch.persistence.upsert import new_id
from escapehatch.services.audit import append_audit_row
from escapehatch.services.authz.policy import complete_scope, is_action_allowed
from escapehatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Public labels stored in moderation_actions.action_type.
ACTION_LABELS: dict[str, str] = {
    MODERATION_KICK: "kick",
    MODERATION_BAN: "ban",
    MODERATION_UNBAN: "unban",
    MODERATION_TIMEOUT: "timeout",
    MODERATION_REDACT: "redact_message",
    CHANNEL_LOCK: "lock_channel",
    CHANNEL_UNLOCK: "unlock_channel",
    CHANNEL_SLOWMODE: "set_slow_mode",
    CHANNEL_POSTING: "set_posting_restrictions",
    VOICE_TOKEN_ISSUE: "issue_voice_token",
    REPORTS_TRIAGE: "triage_report",
    AUDIT_READ: "read_audit",
}


def action_label(action: str) -> str:
    try:
        return ACTION_LABELS[action]
    except KeyError as exc:
        raise ValueError(f"Action is not gateway-audited: {action}") from exc


async def execute_privileged_action(
    session: AsyncSession,
    *,
    actor_user_id: str,
    action: str,
    scope: Scope,
    reason: str,
    run: Callable[[], Awaitable[T]],
    target_user_id: str | None = None,
    target_message_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> T:
    """Authorize, execute, then audit one privileged action.

    The scope is resolved against the stored hierarchy first, so an unknown
    channel or a channel named under the wrong server raises NotFoundError.
    A denied actor gets ForbiddenError before ``run`` is touched. Errors from
    ``run`` propagate unchanged and leave no audit row.

    ``run`` must commit its own writes: the audit row is committed separately
    and a failed audit write rolls the session back. After success exactly
    one moderation_actions row is appended; if that write fails the error is
    logged and the result is still returned, because the committed action
    already took effect.
    """
    label = action_label(action)
    scope = await complete_scope(session, scope)
    server_id = scope.server_id
    if server_id is None:
        # Moderation rows are always attributed to a server.
        raise ValueError("Privileged actions require a server or channel scope")
    allowed = await is_action_allowed(session, actor_user_id=actor_user_id, action=action, scope=scope)
    if not allowed:
        increment_counter(f"privileged_action_denied_total.{label}")
        logger.info(
            "privileged_action_denied actor=%s action=%s server_id=%s channel_id=%s",
            actor_user_id,
            action,
            server_id,
            scope.channel_id,
        )
        raise ForbiddenError("Action is outside of assigned moderation scope")

    result = await run()

    row = ModerationAction(
        id=new_id("mod"),
        action_type=label,
        actor_user_id=actor_user_id,
        server_id=server_id,
        channel_id=scope.channel_id,
        target_user_id=target_user_id,
        target_message_id=target_message_id,
        reason=reason,
        metadata_json=metadata or {},
    )
    await append_audit_row(session, row, event_type=f"moderation.{label}", best_effort=False)
    return result
