from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from notiflow.core.config import Settings, get_settings
from notiflow.core.errors import is_connectivity_error
from notiflow.domain.models import NotificationMessage, NotificationQueueEntry
from notiflow.services.notifications.fanout import build_queue_entries, insert_queue_entries
from notiflow.services.notifications.segments import resolve_recipients
from notiflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DUE_MESSAGE_STATUSES = ("scheduled", "pending")
# Statuses from which fan-out may run; queued is allowed so a partial fan-out can be completed.
_ENQUEUEABLE_STATUSES = {"draft", "scheduled", "pending", "queued"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | str | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _field(message: Any, name: str) -> Any:
    if isinstance(message, dict):
        return message.get(name)
    return getattr(message, name, None)


def select_due_messages(messages: Iterable[Any] | None, now: datetime | None = None) -> list[Any]:
    """Filter messages whose send time has arrived, preserving input order."""
    current = _as_utc(now or _utc_now())
    due: list[Any] = []
    for message in messages or []:
        if not message:
            continue
        if _field(message, "status") not in DUE_MESSAGE_STATUSES:
            continue
        send_at = _as_utc(_field(message, "send_at"))
        if send_at is None or send_at <= current:
            due.append(message)
    return due


async def enqueue_message(
    *,
    session: AsyncSession,
    message_id: str,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Fan a message out to its recipients.

    Idempotent: entries already queued for a recipient are left untouched.
    Returns ``{"enqueued": <new entries>, "status": <message status>}``.
    """
    settings = settings or get_settings()
    now = now or _utc_now()
    # Re-read so a long-lived session never acts on a stale status.
    message = await session.get(NotificationMessage, message_id, populate_existing=True)
    if message is None:
        return {"enqueued": 0, "status": "missing"}
    if message.status not in _ENQUEUEABLE_STATUSES:
        # Past fan-out already; never pull a processing or terminal message back to queued.
        return {"enqueued": 0, "status": message.status}

    recipients = await resolve_recipients(
        session=session,
        tenant_id=message.tenant_id,
        school_id=message.school_id,
        segment=message.segment,
        limit=settings.notification_recipient_cap,
    )
    if not recipients:
        existing = (
            await session.execute(
                select(func.count())
                .select_from(NotificationQueueEntry)
                .where(NotificationQueueEntry.message_id == message.id)
            )
        ).scalar_one()
        if message.status == "queued" or existing:
            # An empty audience on re-enqueue leaves earlier entries to finish delivery.
            if message.status != "queued":
                message.status = "queued"
                message.updated_at = now
            await session.commit()
            return {"enqueued": 0, "status": "queued"}
        message.status = "no_recipients"
        message.updated_at = now
        await session.commit()
        logger.info("notification_message_no_recipients message_id=%s", message.id)
        return {"enqueued": 0, "status": "no_recipients"}

    entries = build_queue_entries(
        message_id=message.id,
        recipients=recipients,
        channel=message.channel,
        max_attempts=settings.notification_max_attempts,
        now=now,
    )
    inserted = await insert_queue_entries(session=session, entries=entries)
    message.status = "queued"
    message.updated_at = now
    await session.commit()
    increment_counter("notification.queue.enqueued", inserted)
    logger.info(
        "notification_message_queued message_id=%s recipients=%s inserted=%s",
        message.id,
        len(recipients),
        inserted,
    )
    return {"enqueued": inserted, "status": "queued"}


async def enqueue_due_messages(
    *,
    session: AsyncSession,
    now: datetime | None = None,
    limit: int = 20,
    settings: Settings | None = None,
) -> list[dict[str, Any]]:
    """Fan out every due scheduled/pending message, oldest send time first.

    A failure on one message is logged and skipped; its status is unchanged so
    the next tick retries it. Lost store connectivity aborts the tick.
    """
    now = now or _utc_now()
    due_ids = (
        await session.execute(
            select(NotificationMessage.id)
            .where(
                NotificationMessage.status.in_(DUE_MESSAGE_STATUSES),
                (NotificationMessage.send_at.is_(None)) | (NotificationMessage.send_at <= now),
            )
            .order_by(NotificationMessage.send_at.asc().nulls_first(), NotificationMessage.created_at.asc())
            .limit(max(1, int(limit)))
        )
    ).scalars().all()

    results: list[dict[str, Any]] = []
    for message_id in due_ids:
        try:
            result = await enqueue_message(session=session, message_id=message_id, now=now, settings=settings)
        except Exception as exc:  # noqa: BLE001 - one bad segment must not block the rest of the tick.
            await session.rollback()
            if is_connectivity_error(exc):
                raise
            increment_counter("notification.queue.resolution_failed")
            logger.exception("notification_message_enqueue_failed message_id=%s", message_id)
            results.append({"message_id": message_id, "enqueued": 0, "status": "error", "error": str(exc)})
            continue
        results.append({"message_id": message_id, **result})
    return results
