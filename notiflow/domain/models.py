from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Store JSON as JSONB on Postgres while keeping SQLite usable for local tests.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        # SQLite drops offsets; every stored timestamp is UTC so reattach it.
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Deactivated accounts stay in the directory but are skipped by default segments.
    disabled: Mapped[bool | None] = mapped_column(Boolean, default=False, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


class UserProfile(Base):
    __tablename__ = "user_profiles"

    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), primary_key=True)
    # District is the tenant boundary for recipient resolution.
    district_id: Mapped[str] = mapped_column(String, index=True)
    school_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    role: Mapped[str | None] = mapped_column(String, nullable=True)
    # Free-form grade text ("3", "Grade 3", "3rd, 4th"); matched with delimiter-aware patterns.
    grades: Mapped[str | None] = mapped_column(Text, nullable=True)


class TenantSetting(Base):
    __tablename__ = "tenant_settings"
    __table_args__ = (
        UniqueConstraint("tenant_id", "school_id", name="uq_tenant_settings_tenant_school"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Null school_id rows hold tenant-wide defaults; school rows override them.
    school_id: Mapped[str | None] = mapped_column(String, nullable=True)
    settings: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class NotificationMessage(Base):
    __tablename__ = "notification_messages"
    __table_args__ = (
        Index("ix_notification_messages_status_send_at", "status", "send_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    school_id: Mapped[str | None] = mapped_column(String, nullable=True)
    channel: Mapped[str] = mapped_column(String)
    title: Mapped[str | None] = mapped_column(String, nullable=True)
    body: Mapped[str] = mapped_column(Text)
    # Opaque sender payload; never interpreted by the queue itself.
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    segment: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    status: Mapped[str] = mapped_column(String, index=True)
    send_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class NotificationQueueEntry(Base):
    __tablename__ = "notification_queue"
    __table_args__ = (
        # Fan-out relies on this constraint to make re-enqueue a no-op.
        UniqueConstraint("message_id", "recipient_id", name="uq_notification_queue_message_recipient"),
        Index("ix_notification_queue_status_next_attempt", "status", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    message_id: Mapped[str] = mapped_column(String, ForeignKey("notification_messages.id"), index=True)
    recipient_id: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    # Null once the entry is terminal.
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class NotificationDelivery(Base):
    __tablename__ = "notification_deliveries"
    __table_args__ = (
        UniqueConstraint(
            "message_id", "recipient_id", "channel", name="uq_notification_deliveries_message_recipient_channel"
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    message_id: Mapped[str] = mapped_column(String, ForeignKey("notification_messages.id"), index=True)
    recipient_id: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    # Provider-reported status such as delivered or bounced.
    status: Mapped[str] = mapped_column(String, index=True)
    provider_response: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    delivered_at: Mapped[datetime] = mapped_column(UTCDateTime())
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


class NotificationEvent(Base):
    __tablename__ = "notification_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    delivery_id: Mapped[str] = mapped_column(String, ForeignKey("notification_deliveries.id"), index=True)
    message_id: Mapped[str] = mapped_column(String, ForeignKey("notification_messages.id"), index=True)
    recipient_id: Mapped[str] = mapped_column(String)
    event_type: Mapped[str] = mapped_column(String, index=True)
    event_ts: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


class NotificationDeadLetter(Base):
    __tablename__ = "notification_dead_letters"

    # Audit row written once per dead queue entry; never updated.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    queue_entry_id: Mapped[str] = mapped_column(
        String, ForeignKey("notification_queue.id"), unique=True, index=True
    )
    message_id: Mapped[str] = mapped_column(String, ForeignKey("notification_messages.id"), index=True)
    recipient_id: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
