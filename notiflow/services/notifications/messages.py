from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from notiflow.core.config import Settings, get_settings
from notiflow.domain.models import (
    NotificationDeadLetter,
    NotificationDelivery,
    NotificationEvent,
    NotificationMessage,
)
from notiflow.services.notifications.scheduler import enqueue_message
from notiflow.services.notifications.segments import Segment


logger = logging.getLogger(__name__)

SUPPORTED_CHANNELS = ("email", "sms", "push")

_enqueue_pool = None
_enqueue_pool_loop: asyncio.AbstractEventLoop | None = None
_enqueue_pool_lock = asyncio.Lock()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _message_dict(message: NotificationMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "tenant_id": message.tenant_id,
        "school_id": message.school_id,
        "channel": message.channel,
        "title": message.title,
        "body": message.body,
        "payload": message.payload or {},
        "segment": message.segment or {},
        "status": message.status,
        "send_at": message.send_at.isoformat() if message.send_at else None,
        "created_by": message.created_by,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


async def create_message(
    *,
    session: AsyncSession,
    tenant_id: str,
    channel: str,
    body: str,
    school_id: str | None = None,
    title: str | None = None,
    segment: dict[str, Any] | None = None,
    payload: dict[str, Any] | None = None,
    send_at: datetime | None = None,
    created_by: str | None = None,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Create an announcement and fan it out right away unless it is scheduled."""
    if channel not in SUPPORTED_CHANNELS:
        raise ValueError(f"channel must be one of {', '.join(SUPPORTED_CHANNELS)}")
    if not body or not body.strip():
        raise ValueError("body is required")
    now = now or _utc_now()
    send_at = _as_utc(send_at)
    status = "scheduled" if send_at is not None and send_at > now else "pending"

    message = NotificationMessage(
        id=uuid4().hex,
        tenant_id=tenant_id,
        school_id=school_id,
        channel=channel,
        title=title,
        body=body,
        payload=dict(payload or {}),
        # Normalize on write so stored segments always have the resolver's shape.
        segment=Segment.from_json(segment or {}).model_dump(),
        status=status,
        send_at=send_at,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    session.add(message)
    await session.commit()
    logger.info("notification_message_created message_id=%s status=%s", message.id, status)

    enqueued = None
    if status == "pending":
        enqueued = await enqueue_message(session=session, message_id=message.id, now=now, settings=settings)
    data = _message_dict(message)
    if enqueued is not None:
        data["status"] = enqueued["status"]
        data["enqueued"] = enqueued["enqueued"]
    return data


def _school_scope(school_id: str):
    # A school view also covers tenant-wide messages.
    return or_(NotificationMessage.school_id.is_(None), NotificationMessage.school_id == school_id)


def _sent_counts():
    return (
        select(NotificationDelivery.message_id, func.count(NotificationDelivery.id).label("sent_count"))
        .where(NotificationDelivery.status == "delivered")
        .group_by(NotificationDelivery.message_id)
        .subquery()
    )


def _event_counts():
    def _count(event_type: str):
        return func.sum(case((NotificationEvent.event_type == event_type, 1), else_=0)).label(event_type)

    return (
        select(NotificationEvent.message_id, _count("opened"), _count("clicked"), _count("bounced"))
        .group_by(NotificationEvent.message_id)
        .subquery()
    )


async def list_messages(
    *,
    session: AsyncSession,
    tenant_id: str,
    school_id: str | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    sent = _sent_counts()
    events = _event_counts()
    query = (
        select(
            NotificationMessage,
            func.coalesce(sent.c.sent_count, 0),
            func.coalesce(events.c.bounced, 0),
        )
        .outerjoin(sent, sent.c.message_id == NotificationMessage.id)
        .outerjoin(events, events.c.message_id == NotificationMessage.id)
        .where(NotificationMessage.tenant_id == tenant_id)
        .order_by(NotificationMessage.created_at.desc(), NotificationMessage.id.desc())
        .limit(max(1, min(int(limit), 500)))
    )
    if school_id:
        query = query.where(_school_scope(school_id))
    rows = (await session.execute(query)).all()
    return [
        {**_message_dict(message), "sent_count": int(sent_count), "bounced_count": int(bounced_count)}
        for message, sent_count, bounced_count in rows
    ]


async def get_message_stats(
    *,
    session: AsyncSession,
    tenant_id: str,
    message_id: str,
    school_id: str | None = None,
) -> dict[str, Any] | None:
    sent = _sent_counts()
    events = _event_counts()
    query = (
        select(
            NotificationMessage.id,
            func.coalesce(sent.c.sent_count, 0),
            func.coalesce(events.c.opened, 0),
            func.coalesce(events.c.clicked, 0),
            func.coalesce(events.c.bounced, 0),
        )
        .outerjoin(sent, sent.c.message_id == NotificationMessage.id)
        .outerjoin(events, events.c.message_id == NotificationMessage.id)
        .where(NotificationMessage.id == message_id, NotificationMessage.tenant_id == tenant_id)
    )
    if school_id:
        query = query.where(_school_scope(school_id))
    row = (await session.execute(query)).first()
    if row is None:
        return None
    return {
        "id": row[0],
        "sent_count": int(row[1]),
        "opened_count": int(row[2]),
        "clicked_count": int(row[3]),
        "bounced_count": int(row[4]),
    }


async def list_dead_letters(
    *,
    session: AsyncSession,
    tenant_id: str,
    message_id: str | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    # Dead letters carry no tenant column; scope them through their message.
    query = (
        select(NotificationDeadLetter)
        .join(NotificationMessage, NotificationMessage.id == NotificationDeadLetter.message_id)
        .where(NotificationMessage.tenant_id == tenant_id)
        .order_by(NotificationDeadLetter.created_at.desc(), NotificationDeadLetter.id.desc())
        .limit(max(1, min(int(limit), 500)))
    )
    if message_id:
        query = query.where(NotificationDeadLetter.message_id == message_id)
    rows = (await session.execute(query)).scalars().all()
    return [
        {
            "id": row.id,
            "queue_entry_id": row.queue_entry_id,
            "message_id": row.message_id,
            "recipient_id": row.recipient_id,
            "channel": row.channel,
            "error": row.error,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]


async def get_enqueue_pool():
    # Cache the arq pool per event loop to avoid reconnect churn from producers and tests.
    global _enqueue_pool, _enqueue_pool_loop
    current_loop = asyncio.get_running_loop()
    if _enqueue_pool is not None and _enqueue_pool_loop == current_loop:
        return _enqueue_pool
    if _enqueue_pool is not None and _enqueue_pool_loop != current_loop:
        _enqueue_pool = None
    async with _enqueue_pool_lock:
        if _enqueue_pool is None:
            settings = get_settings()
            _enqueue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.notify_queue_name,
            )
            _enqueue_pool_loop = current_loop
    return _enqueue_pool


async def publish_enqueue_request(message_id: str) -> bool:
    # Best-effort: the scheduler tick fans out any pending message the worker never saw.
    settings = get_settings()
    try:
        redis = await get_enqueue_pool()
        await redis.enqueue_job(
            "enqueue_notification_message",
            message_id,
            _queue_name=settings.notify_queue_name,
        )
        return True
    except Exception:  # noqa: BLE001 - keep publish best-effort and rely on the scheduler fallback.
        logger.warning("notification_enqueue_publish_failed message_id=%s", message_id, exc_info=True)
        return False
