from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere so the schema also builds on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Hub(Base):
    __tablename__ = "hubs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Hub owner of record is treated as a hub_admin for the hub.
    owner_user_id: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class Server(Base):
    __tablename__ = "servers"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    hub_id: Mapped[str] = mapped_column(String, ForeignKey("hubs.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String)
    # Externally provisioned Matrix space; null until provisioning succeeds.
    matrix_space_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by_user_id: Mapped[str] = mapped_column(String)
    # Owner of record, mutated only by ownership transfer.
    owner_user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class Channel(Base):
    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    server_id: Mapped[str] = mapped_column(
        String, ForeignKey("servers.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String)
    type: Mapped[str] = mapped_column(String, default="text")
    matrix_room_id: Mapped[str | None] = mapped_column(String, nullable=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    slow_mode_seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    posting_restricted_to_roles: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class RoleBinding(Base):
    __tablename__ = "role_bindings"
    __table_args__ = (
        Index("ix_role_bindings_user", "product_user_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    product_user_id: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String)
    # Null scope fields widen the binding; all null is platform-global.
    hub_id: Mapped[str | None] = mapped_column(String, nullable=True)
    server_id: Mapped[str | None] = mapped_column(String, nullable=True)
    channel_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class RoleAssignmentAuditLog(Base):
    __tablename__ = "role_assignment_audit_logs"
    __table_args__ = (
        Index("ix_role_assignment_audit_target", "target_user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    actor_user_id: Mapped[str] = mapped_column(String)
    target_user_id: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String)
    hub_id: Mapped[str | None] = mapped_column(String, nullable=True)
    server_id: Mapped[str | None] = mapped_column(String, nullable=True)
    channel_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # granted | denied | revoked
    outcome: Mapped[str] = mapped_column(String)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class SpaceAdminAssignment(Base):
    __tablename__ = "space_admin_assignments"
    __table_args__ = (
        # One logical grant per (server, user); re-assignment reactivates the row.
        UniqueConstraint("server_id", "assigned_user_id", name="uq_space_admin_assignments_pair"),
        CheckConstraint("status in ('active', 'revoked', 'expired')", name="ck_space_admin_assignments_status"),
        Index("ix_space_admin_assignments_status_expiry", "status", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    hub_id: Mapped[str] = mapped_column(String, ForeignKey("hubs.id", ondelete="CASCADE"))
    server_id: Mapped[str] = mapped_column(String, ForeignKey("servers.id", ondelete="CASCADE"))
    assigned_user_id: Mapped[str] = mapped_column(String)
    assigned_by_user_id: Mapped[str] = mapped_column(String)
    # active | revoked | expired
    status: Mapped[str] = mapped_column(String, default="active")
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class DelegationAuditEvent(Base):
    __tablename__ = "delegation_audit_events"
    __table_args__ = (
        Index("ix_delegation_audit_events_hub_created", "hub_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    action_type: Mapped[str] = mapped_column(String)
    actor_user_id: Mapped[str] = mapped_column(String)
    target_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    assignment_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("space_admin_assignments.id", ondelete="SET NULL"), nullable=True
    )
    hub_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("hubs.id", ondelete="SET NULL"), nullable=True
    )
    server_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("servers.id", ondelete="SET NULL"), nullable=True
    )
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class ModerationAction(Base):
    __tablename__ = "moderation_actions"
    __table_args__ = (
        Index("ix_moderation_actions_server_created", "server_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    action_type: Mapped[str] = mapped_column(String)
    actor_user_id: Mapped[str] = mapped_column(String)
    server_id: Mapped[str] = mapped_column(String)
    channel_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target_message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str] = mapped_column(Text)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class ModerationReport(Base):
    __tablename__ = "moderation_reports"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    server_id: Mapped[str] = mapped_column(String, index=True)
    channel_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reporter_user_id: Mapped[str] = mapped_column(String)
    target_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target_message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str] = mapped_column(Text)
    # open | triaged | resolved | dismissed
    status: Mapped[str] = mapped_column(String, default="open")
    triaged_by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class HubFederationPolicy(Base):
    __tablename__ = "hub_federation_policies"

    hub_id: Mapped[str] = mapped_column(String, ForeignKey("hubs.id", ondelete="CASCADE"), primary_key=True)
    # Normalized (trimmed, lower-cased, de-duplicated) host list.
    allowlist: Mapped[list[str]] = mapped_column(JSONType, default=list)
    created_by_user_id: Mapped[str] = mapped_column(String)
    updated_by_user_id: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class FederationPolicyEvent(Base):
    __tablename__ = "federation_policy_events"
    __table_args__ = (
        Index("ix_federation_policy_events_hub_created", "hub_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    hub_id: Mapped[str] = mapped_column(String, ForeignKey("hubs.id", ondelete="CASCADE"))
    actor_user_id: Mapped[str] = mapped_column(String)
    # policy_updated | policy_reconciled
    action_type: Mapped[str] = mapped_column(String)
    policy_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class RoomAclStatus(Base):
    __tablename__ = "room_acl_status"
    __table_args__ = (
        Index("ix_room_acl_status_hub_checked", "hub_id", "checked_at"),
        CheckConstraint("status in ('applied', 'skipped', 'error')", name="ck_room_acl_status_status"),
    )

    # Last known state per room; upserted by every reconciliation pass.
    room_id: Mapped[str] = mapped_column(String, primary_key=True)
    hub_id: Mapped[str] = mapped_column(String, ForeignKey("hubs.id", ondelete="CASCADE"))
    server_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("servers.id", ondelete="CASCADE"), nullable=True
    )
    channel_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("channels.id", ondelete="CASCADE"), nullable=True
    )
    room_kind: Mapped[str] = mapped_column(String)
    allowlist: Mapped[list[str]] = mapped_column(JSONType, default=list)
    # applied | skipped | error
    status: Mapped[str] = mapped_column(String)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
