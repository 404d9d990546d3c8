from __future__ import annotations

from uuid import uuid4

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def new_id(prefix: str) -> str:
    # Prefixed ids keep rows recognizable in logs and audit exports.
    return f"{prefix}_{uuid4().hex}"


def dialect_insert(session: AsyncSession, model):
    # Both supported dialects expose on_conflict_do_update with the same signature.
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(model)
    if dialect == "postgresql":
        return postgresql.insert(model)
    raise RuntimeError(f"Upsert is not supported for dialect: {dialect}")
