"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "hubs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("owner_user_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_hubs_owner_user_id", "hubs", ["owner_user_id"])

    op.create_table(
        "servers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("hub_id", sa.String(), sa.ForeignKey("hubs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("matrix_space_id", sa.String(), nullable=True),
        sa.Column("created_by_user_id", sa.String(), nullable=False),
        sa.Column("owner_user_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_servers_hub_id", "servers", ["hub_id"])
    op.create_index("ix_servers_owner_user_id", "servers", ["owner_user_id"])

    op.create_table(
        "channels",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("server_id", sa.String(), sa.ForeignKey("servers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False, server_default="text"),
        sa.Column("matrix_room_id", sa.String(), nullable=True),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("slow_mode_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "posting_restricted_to_roles",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_channels_server_id", "channels", ["server_id"])

    op.create_table(
        "role_bindings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("product_user_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        # Null scope columns widen the binding.
        sa.Column("hub_id", sa.String(), nullable=True),
        sa.Column("server_id", sa.String(), nullable=True),
        sa.Column("channel_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_role_bindings_user", "role_bindings", ["product_user_id"])

    op.create_table(
        "role_assignment_audit_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("actor_user_id", sa.String(), nullable=False),
        sa.Column("target_user_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("hub_id", sa.String(), nullable=True),
        sa.Column("server_id", sa.String(), nullable=True),
        sa.Column("channel_id", sa.String(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_role_assignment_audit_target",
        "role_assignment_audit_logs",
        ["target_user_id", "created_at"],
    )

    op.create_table(
        "space_admin_assignments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("hub_id", sa.String(), sa.ForeignKey("hubs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("server_id", sa.String(), sa.ForeignKey("servers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("assigned_user_id", sa.String(), nullable=False),
        sa.Column("assigned_by_user_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("server_id", "assigned_user_id", name="uq_space_admin_assignments_pair"),
        sa.CheckConstraint(
            "status in ('active', 'revoked', 'expired')",
            name="ck_space_admin_assignments_status",
        ),
    )
    op.create_index(
        "ix_space_admin_assignments_status_expiry",
        "space_admin_assignments",
        ["status", "expires_at"],
    )

    op.create_table(
        "delegation_audit_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("actor_user_id", sa.String(), nullable=False),
        sa.Column("target_user_id", sa.String(), nullable=True),
        sa.Column(
            "assignment_id",
            sa.String(),
            sa.ForeignKey("space_admin_assignments.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("hub_id", sa.String(), sa.ForeignKey("hubs.id", ondelete="SET NULL"), nullable=True),
        sa.Column("server_id", sa.String(), sa.ForeignKey("servers.id", ondelete="SET NULL"), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_delegation_audit_events_hub_created",
        "delegation_audit_events",
        ["hub_id", "created_at"],
    )

    op.create_table(
        "moderation_actions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("actor_user_id", sa.String(), nullable=False),
        sa.Column("server_id", sa.String(), nullable=False),
        sa.Column("channel_id", sa.String(), nullable=True),
        sa.Column("target_user_id", sa.String(), nullable=True),
        sa.Column("target_message_id", sa.String(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_moderation_actions_server_created",
        "moderation_actions",
        ["server_id", "created_at"],
    )

    op.create_table(
        "moderation_reports",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("server_id", sa.String(), nullable=False),
        sa.Column("channel_id", sa.String(), nullable=True),
        sa.Column("reporter_user_id", sa.String(), nullable=False),
        sa.Column("target_user_id", sa.String(), nullable=True),
        sa.Column("target_message_id", sa.String(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        sa.Column("triaged_by_user_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_moderation_reports_server_id", "moderation_reports", ["server_id"])

    op.create_table(
        "hub_federation_policies",
        sa.Column("hub_id", sa.String(), sa.ForeignKey("hubs.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("allowlist", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_by_user_id", sa.String(), nullable=False),
        sa.Column("updated_by_user_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "federation_policy_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("hub_id", sa.String(), sa.ForeignKey("hubs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("actor_user_id", sa.String(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("policy_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_federation_policy_events_hub_created",
        "federation_policy_events",
        ["hub_id", "created_at"],
    )

    op.create_table(
        "room_acl_status",
        sa.Column("room_id", sa.String(), primary_key=True),
        sa.Column("hub_id", sa.String(), sa.ForeignKey("hubs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("server_id", sa.String(), sa.ForeignKey("servers.id", ondelete="CASCADE"), nullable=True),
        sa.Column("channel_id", sa.String(), sa.ForeignKey("channels.id", ondelete="CASCADE"), nullable=True),
        sa.Column("room_kind", sa.String(), nullable=False),
        sa.Column("allowlist", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("checked_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status in ('applied', 'skipped', 'error')",
            name="ck_room_acl_status_status",
        ),
    )
    op.create_index("ix_room_acl_status_hub_checked", "room_acl_status", ["hub_id", "checked_at"])


def downgrade() -> None:
    op.drop_index("ix_room_acl_status_hub_checked", table_name="room_acl_status")
    op.drop_table("room_acl_status")
    op.drop_index("ix_federation_policy_events_hub_created", table_name="federation_policy_events")
    op.drop_table("federation_policy_events")
    op.drop_table("hub_federation_policies")
    op.drop_index("ix_moderation_reports_server_id", table_name="moderation_reports")
    op.drop_table("moderation_reports")
    op.drop_index("ix_moderation_actions_server_created", table_name="moderation_actions")
    op.drop_table("moderation_actions")
    op.drop_index("ix_delegation_audit_events_hub_created", table_name="delegation_audit_events")
    op.drop_table("delegation_audit_events")
    op.drop_index("ix_space_admin_assignments_status_expiry", table_name="space_admin_assignments")
    op.drop_table("space_admin_assignments")
    op.drop_index("ix_role_assignment_audit_target", table_name="role_assignment_audit_logs")
    op.drop_table("role_assignment_audit_logs")
    op.drop_index("ix_role_bindings_user", table_name="role_bindings")
    op.drop_table("role_bindings")
    op.drop_index("ix_channels_server_id", table_name="channels")
    op.drop_table("channels")
    op.drop_index("ix_servers_owner_user_id", table_name="servers")
    op.drop_index("ix_servers_hub_id", table_name="servers")
    op.drop_table("servers")
    op.drop_index("ix_hubs_owner_user_id", table_name="hubs")
    op.drop_table("hubs")
