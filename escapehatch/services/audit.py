from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession


logger = logging.getLogger(__name__)

SYSTEM_ACTOR_ID = "system"

# Homeserver credentials and anything token-shaped never reach audit storage.
_REDACT_FRAGMENTS = ("access_token", "authorization", "token", "secret", "password")
_REDACTED = "[REDACTED]"


def sanitize_metadata(value: Any) -> Any:
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    if not isinstance(value, dict):
        return value
    cleaned: dict[str, Any] = {}
    for key, item in value.items():
        name = str(key)
        redact = any(fragment in name.lower() for fragment in _REDACT_FRAGMENTS)
        cleaned[name] = _REDACTED if redact else sanitize_metadata(item)
    return cleaned


async def append_audit_row(
    session: AsyncSession,
    row: Any,
    *,
    event_type: str,
    best_effort: bool = True,
) -> bool:
    """Append one audit row and commit it.

    Audit tables are append-only and written after the primary change has
    already been committed, so a failure here must never undo that change.
    Failures are rolled back and logged: WARNING for best-effort trails,
    ERROR when the missing row is an integrity problem an operator must see.
    Returns whether the row was persisted.
    """
    if hasattr(row, "metadata_json"):
        row.metadata_json = sanitize_metadata(row.metadata_json or {})
    try:
        session.add(row)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        level = logger.warning if best_effort else logger.error
        level(
            "audit_row_write_failed event_type=%s table=%s",
            event_type,
            getattr(row, "__tablename__", type(row).__name__),
            exc_info=exc,
        )
        return False
    return True
