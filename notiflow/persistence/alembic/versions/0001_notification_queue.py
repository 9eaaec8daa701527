"""notification queue

Revision ID: 0001_notification_queue
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_notification_queue"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("disabled", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "user_profiles",
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column("district_id", sa.String(), nullable=False),
        sa.Column("school_id", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=True),
        sa.Column("grades", sa.Text(), nullable=True),
    )
    op.create_index("ix_user_profiles_district_id", "user_profiles", ["district_id"])
    op.create_index("ix_user_profiles_school_id", "user_profiles", ["school_id"])

    op.create_table(
        "tenant_settings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("school_id", sa.String(), nullable=True),
        sa.Column("settings", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "school_id", name="uq_tenant_settings_tenant_school"),
    )
    op.create_index("ix_tenant_settings_tenant_id", "tenant_settings", ["tenant_id"])

    op.create_table(
        "notification_messages",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("school_id", sa.String(), nullable=True),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("segment", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("send_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_notification_messages_tenant_id", "notification_messages", ["tenant_id"])
    op.create_index("ix_notification_messages_status", "notification_messages", ["status"])
    op.create_index(
        "ix_notification_messages_status_send_at",
        "notification_messages",
        ["status", "send_at"],
    )

    op.create_table(
        "notification_queue",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("message_id", sa.String(), sa.ForeignKey("notification_messages.id"), nullable=False),
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("message_id", "recipient_id", name="uq_notification_queue_message_recipient"),
    )
    op.create_index("ix_notification_queue_message_id", "notification_queue", ["message_id"])
    # Claim query filters on status and orders by due time.
    op.create_index(
        "ix_notification_queue_status_next_attempt",
        "notification_queue",
        ["status", "next_attempt_at"],
    )

    op.create_table(
        "notification_deliveries",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("message_id", sa.String(), sa.ForeignKey("notification_messages.id"), nullable=False),
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("provider_response", postgresql.JSONB(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "message_id",
            "recipient_id",
            "channel",
            name="uq_notification_deliveries_message_recipient_channel",
        ),
    )
    op.create_index("ix_notification_deliveries_message_id", "notification_deliveries", ["message_id"])
    op.create_index("ix_notification_deliveries_status", "notification_deliveries", ["status"])

    op.create_table(
        "notification_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("delivery_id", sa.String(), sa.ForeignKey("notification_deliveries.id"), nullable=False),
        sa.Column("message_id", sa.String(), sa.ForeignKey("notification_messages.id"), nullable=False),
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("event_ts", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_notification_events_delivery_id", "notification_events", ["delivery_id"])
    op.create_index("ix_notification_events_message_id", "notification_events", ["message_id"])
    op.create_index("ix_notification_events_event_type", "notification_events", ["event_type"])

    op.create_table(
        "notification_dead_letters",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("queue_entry_id", sa.String(), sa.ForeignKey("notification_queue.id"), nullable=False),
        sa.Column("message_id", sa.String(), sa.ForeignKey("notification_messages.id"), nullable=False),
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_notification_dead_letters_queue_entry_id",
        "notification_dead_letters",
        ["queue_entry_id"],
        unique=True,
    )
    op.create_index("ix_notification_dead_letters_message_id", "notification_dead_letters", ["message_id"])


def downgrade() -> None:
    op.drop_index("ix_notification_dead_letters_message_id", table_name="notification_dead_letters")
    op.drop_index("ix_notification_dead_letters_queue_entry_id", table_name="notification_dead_letters")
    op.drop_table("notification_dead_letters")
    op.drop_index("ix_notification_events_event_type", table_name="notification_events")
    op.drop_index("ix_notification_events_message_id", table_name="notification_events")
    op.drop_index("ix_notification_events_delivery_id", table_name="notification_events")
    op.drop_table("notification_events")
    op.drop_index("ix_notification_deliveries_status", table_name="notification_deliveries")
    op.drop_index("ix_notification_deliveries_message_id", table_name="notification_deliveries")
    op.drop_table("notification_deliveries")
    op.drop_index("ix_notification_queue_status_next_attempt", table_name="notification_queue")
    op.drop_index("ix_notification_queue_message_id", table_name="notification_queue")
    op.drop_table("notification_queue")
    op.drop_index("ix_notification_messages_status_send_at", table_name="notification_messages")
    op.drop_index("ix_notification_messages_status", table_name="notification_messages")
    op.drop_index("ix_notification_messages_tenant_id", table_name="notification_messages")
    op.drop_table("notification_messages")
    op.drop_index("ix_tenant_settings_tenant_id", table_name="tenant_settings")
    op.drop_table("tenant_settings")
    op.drop_index("ix_user_profiles_school_id", table_name="user_profiles")
    op.drop_index("ix_user_profiles_district_id", table_name="user_profiles")
    op.drop_table("user_profiles")
    op.drop_table("users")
