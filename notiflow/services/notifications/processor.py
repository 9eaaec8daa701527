from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from notiflow.core.config import Settings, get_settings
from notiflow.core.errors import SendTimeoutError, is_connectivity_error
from notiflow.domain.models import (
    NotificationDeadLetter,
    NotificationDelivery,
    NotificationEvent,
    NotificationMessage,
    NotificationQueueEntry,
)
from notiflow.services.notifications.compliance import (
    load_tenant_notification_settings,
    validate_tenant_channel,
)
from notiflow.services.notifications.retry import RetryOptions, apply_retry_policy
from notiflow.services.notifications.senders import QueuedMessage, SendRequest, SendResult, Sender
from notiflow.services.telemetry import increment_counter, record_send


logger = logging.getLogger(__name__)

# Message statuses the processor may rewrite; anything else is terminal or not yet fanned out.
_RECOMPUTABLE_MESSAGE_STATUSES = ("queued", "processing")
_IN_FLIGHT_ENTRY_STATUSES = {"pending", "processing"}
_DEFAULT_SEND_ERROR = "send failed"


@dataclass(frozen=True)
class ClaimedEntry:
    id: str
    message_id: str
    recipient_id: str
    channel: str
    attempts: int
    max_attempts: int
    message: QueuedMessage


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def derive_message_status(current_status: str, entry_statuses: Iterable[str]) -> str:
    """Aggregate a message status from its queue entry statuses."""
    statuses = set(entry_statuses)
    if statuses & _IN_FLIGHT_ENTRY_STATUSES:
        return "processing"
    if "dead" in statuses:
        return "partial_failed"
    if "sent" in statuses:
        return "sent"
    return current_status


async def claim_due_entries(
    *,
    session: AsyncSession,
    now: datetime,
    limit: int,
    lease_until: datetime | None = None,
) -> list[ClaimedEntry]:
    """Select due pending entries and lease them until ``lease_until``.

    The lease moves ``next_attempt_at`` forward inside the locking transaction,
    so once the caller commits no other consumer sees these rows as due. An
    entry whose outcome is never written becomes due again when the lease ends.
    """
    # SKIP LOCKED keeps a second consumer off rows this one is reading; SQLite ignores it.
    rows = (
        await session.execute(
            select(NotificationQueueEntry, NotificationMessage)
            .join(NotificationMessage, NotificationMessage.id == NotificationQueueEntry.message_id)
            .where(
                NotificationQueueEntry.status == "pending",
                NotificationQueueEntry.next_attempt_at <= now,
            )
            .order_by(NotificationQueueEntry.created_at.asc(), NotificationQueueEntry.id.asc())
            .limit(max(1, int(limit)))
            .with_for_update(skip_locked=True, of=NotificationQueueEntry)
        )
    ).all()
    claimed: list[ClaimedEntry] = []
    for entry, message in rows:
        attempts = int(entry.attempts or 0)
        if lease_until is not None:
            leased = await session.execute(
                update(NotificationQueueEntry)
                .where(
                    NotificationQueueEntry.id == entry.id,
                    NotificationQueueEntry.status == "pending",
                    NotificationQueueEntry.attempts == attempts,
                    NotificationQueueEntry.next_attempt_at <= now,
                )
                .values(next_attempt_at=lease_until, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if not leased.rowcount:
                continue
        claimed.append(
            ClaimedEntry(
                id=entry.id,
                message_id=entry.message_id,
                recipient_id=entry.recipient_id,
                channel=entry.channel,
                attempts=attempts,
                max_attempts=int(entry.max_attempts),
                message=QueuedMessage(
                    message_id=message.id,
                    tenant_id=message.tenant_id,
                    school_id=message.school_id,
                    title=message.title,
                    body=message.body,
                    payload=dict(message.payload or {}),
                ),
            )
        )
    return claimed


def _owned(entry: ClaimedEntry) -> tuple[Any, ...]:
    # Conditional write guard: the row must still be pending with the attempt count we read.
    return (
        NotificationQueueEntry.id == entry.id,
        NotificationQueueEntry.status == "pending",
        NotificationQueueEntry.attempts == entry.attempts,
    )


def _dead_letter(entry: ClaimedEntry, error: str) -> NotificationDeadLetter:
    return NotificationDeadLetter(
        id=uuid4().hex,
        queue_entry_id=entry.id,
        message_id=entry.message_id,
        recipient_id=entry.recipient_id,
        channel=entry.channel,
        error=error,
    )


async def _dead_letter_rejected(
    *,
    session: AsyncSession,
    entry: ClaimedEntry,
    error: str,
    now: datetime,
) -> dict[str, Any]:
    # Compliance rejections are terminal and leave attempts untouched.
    result = await session.execute(
        update(NotificationQueueEntry)
        .where(*_owned(entry))
        .values(status="dead", next_attempt_at=None, last_error=error, updated_at=now)
    )
    if not result.rowcount:
        await session.rollback()
        return {"id": entry.id, "status": "skipped"}
    session.add(_dead_letter(entry, error))
    await session.commit()
    increment_counter("notification.queue.compliance_rejected")
    increment_counter("notification.queue.dead")
    logger.warning(
        "notification_compliance_rejected queue_id=%s message_id=%s channel=%s reason=%s",
        entry.id,
        entry.message_id,
        entry.channel,
        error,
    )
    return {"id": entry.id, "status": "dead", "error": error}


async def _record_failure(
    *,
    session: AsyncSession,
    entry: ClaimedEntry,
    error: str,
    now: datetime,
    options: RetryOptions,
) -> dict[str, Any]:
    decision = apply_retry_policy(
        attempts=entry.attempts,
        max_attempts=entry.max_attempts,
        now=now,
        options=options,
    )
    attempts = min(decision.attempts, entry.max_attempts)
    result = await session.execute(
        update(NotificationQueueEntry)
        .where(*_owned(entry))
        .values(
            status=decision.status,
            attempts=attempts,
            next_attempt_at=decision.next_attempt_at,
            last_error=error,
            updated_at=now,
        )
    )
    if not result.rowcount:
        await session.rollback()
        return {"id": entry.id, "status": "skipped"}
    if decision.status == "dead":
        session.add(_dead_letter(entry, error))
    await session.commit()
    if decision.status == "dead":
        increment_counter("notification.queue.dead")
        logger.warning(
            "notification_dead_lettered queue_id=%s message_id=%s attempts=%s error=%s",
            entry.id,
            entry.message_id,
            attempts,
            error,
        )
        return {"id": entry.id, "status": "dead", "error": error}
    increment_counter("notification.queue.retry")
    logger.info(
        "notification_retry_scheduled queue_id=%s attempts=%s next_attempt_at=%s",
        entry.id,
        attempts,
        decision.next_attempt_at.isoformat() if decision.next_attempt_at else None,
    )
    return {"id": entry.id, "status": "retry", "error": error}


async def _record_success(
    *,
    session: AsyncSession,
    entry: ClaimedEntry,
    sent: SendResult,
    now: datetime,
) -> dict[str, Any]:
    result = await session.execute(
        update(NotificationQueueEntry)
        .where(*_owned(entry))
        .values(status="sent", next_attempt_at=None, last_error=None, updated_at=now)
    )
    if not result.rowcount:
        await session.rollback()
        return {"id": entry.id, "status": "skipped"}
    delivery = NotificationDelivery(
        id=uuid4().hex,
        message_id=entry.message_id,
        recipient_id=entry.recipient_id,
        channel=entry.channel,
        status=sent.status,
        provider_response=sent.provider_response or {},
        delivered_at=sent.delivered_at or now,
    )
    session.add(delivery)
    # A sender that reports no events still produced a delivery.
    for event_type in sent.events or ["delivered"]:
        session.add(
            NotificationEvent(
                id=uuid4().hex,
                delivery_id=delivery.id,
                message_id=entry.message_id,
                recipient_id=entry.recipient_id,
                event_type=event_type,
                event_ts=delivery.delivered_at,
            )
        )
    await session.commit()
    increment_counter("notification.queue.sent")
    return {"id": entry.id, "status": "sent"}


async def _send(*, sender: Sender, entry: ClaimedEntry, timeout_s: float) -> SendResult:
    request = SendRequest(channel=entry.channel, recipient_id=entry.recipient_id, message=entry.message)
    started = time.perf_counter()
    success = False
    try:
        sent = await asyncio.wait_for(sender.send(request), timeout=timeout_s)
        success = True
        return sent
    except asyncio.TimeoutError as exc:
        raise SendTimeoutError(
            f"send timed out after {int(timeout_s * 1000)} ms",
            code="TIMEOUT",
        ) from exc
    finally:
        record_send(
            channel=entry.channel,
            latency_ms=(time.perf_counter() - started) * 1000.0,
            success=success,
        )


async def process_entry(
    *,
    session: AsyncSession,
    entry: ClaimedEntry,
    sender: Sender,
    now: datetime,
    options: RetryOptions,
    timeout_s: float,
) -> dict[str, Any]:
    """Run one claimed entry through compliance, send and outcome recording."""
    try:
        tenant_settings = await load_tenant_notification_settings(
            session=session,
            tenant_id=entry.message.tenant_id,
            school_id=entry.message.school_id,
        )
    except Exception as exc:  # noqa: BLE001 - a settings lookup failure is treated as transient.
        await session.rollback()
        if is_connectivity_error(exc):
            raise
        logger.warning("notification_settings_lookup_failed queue_id=%s", entry.id, exc_info=exc)
        return await _record_failure(
            session=session,
            entry=entry,
            error=f"tenant settings lookup failed: {exc}",
            now=now,
            options=options,
        )

    validation = validate_tenant_channel(tenant_settings, entry.channel)
    if not validation.ok:
        return await _dead_letter_rejected(
            session=session,
            entry=entry,
            error=validation.error or "channel not allowed",
            now=now,
        )

    try:
        sent = await _send(sender=sender, entry=entry, timeout_s=timeout_s)
    except Exception as exc:  # noqa: BLE001 - every send failure follows the retry policy.
        error = str(exc) or _DEFAULT_SEND_ERROR
        logger.info(
            "notification_send_failed queue_id=%s channel=%s code=%s error=%s",
            entry.id,
            entry.channel,
            getattr(exc, "code", None),
            error,
        )
        return await _record_failure(session=session, entry=entry, error=error, now=now, options=options)
    return await _record_success(session=session, entry=entry, sent=sent, now=now)


async def update_message_statuses(
    *,
    session: AsyncSession,
    message_ids: Iterable[str] | None = None,
    now: datetime | None = None,
) -> int:
    """Recompute aggregate status for queued/processing messages.

    With ``message_ids`` only those messages are considered; otherwise every
    queued/processing message is reconciled. Returns the number changed.
    """
    now = now or _utc_now()
    query = select(NotificationMessage).where(NotificationMessage.status.in_(_RECOMPUTABLE_MESSAGE_STATUSES))
    if message_ids is not None:
        ids = sorted(set(message_ids))
        if not ids:
            return 0
        query = query.where(NotificationMessage.id.in_(ids))
    messages = (await session.execute(query.execution_options(populate_existing=True))).scalars().all()
    if not messages:
        return 0
    entry_rows = (
        await session.execute(
            select(NotificationQueueEntry.message_id, NotificationQueueEntry.status).where(
                NotificationQueueEntry.message_id.in_([message.id for message in messages])
            )
        )
    ).all()
    statuses_by_message: dict[str, list[str]] = defaultdict(list)
    for message_id, status in entry_rows:
        statuses_by_message[message_id].append(status)

    changed = 0
    for message in messages:
        derived = derive_message_status(message.status, statuses_by_message.get(message.id, []))
        if derived == message.status:
            continue
        result = await session.execute(
            update(NotificationMessage)
            .where(
                NotificationMessage.id == message.id,
                NotificationMessage.status.in_(_RECOMPUTABLE_MESSAGE_STATUSES),
            )
            .values(status=derived, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        changed += int(result.rowcount or 0)
    await session.commit()
    return changed


async def process_queue_batch(
    *,
    session: AsyncSession,
    sender: Sender,
    now: datetime | None = None,
    limit: int | None = None,
    options: RetryOptions | None = None,
    settings: Settings | None = None,
) -> list[dict[str, Any]]:
    """Deliver one bounded batch of due queue entries.

    Each entry is handled in its own transaction; a failing entry never aborts
    the batch. Returns one outcome per claimed entry with status ``sent``,
    ``retry``, ``dead``, ``skipped`` (lost a conditional write) or ``error``.
    """
    settings = settings or get_settings()
    now = now or _utc_now()
    options = options or RetryOptions.from_settings(settings)
    batch_size = limit if limit is not None else settings.notification_queue_batch_size
    timeout_s = max(0.001, settings.notification_send_timeout_ms / 1000.0)

    # Entries are sent one after another, so the lease covers a full batch of timed-out sends.
    lease_ms = (
        settings.notification_send_timeout_ms * max(1, int(batch_size))
        + settings.notification_claim_lease_ms
    )
    claimed = await claim_due_entries(
        session=session,
        now=now,
        limit=batch_size,
        lease_until=now + timedelta(milliseconds=lease_ms),
    )
    await session.commit()

    processed: list[dict[str, Any]] = []
    for entry in claimed:
        try:
            outcome = await process_entry(
                session=session,
                entry=entry,
                sender=sender,
                now=now,
                options=options,
                timeout_s=timeout_s,
            )
        except Exception as exc:  # noqa: BLE001 - isolate store write failures to the entry that hit them.
            await session.rollback()
            if is_connectivity_error(exc):
                raise
            logger.exception("notification_entry_failed queue_id=%s", entry.id)
            outcome = {"id": entry.id, "status": "error", "error": str(exc)}
        processed.append(outcome)

    # Idle ticks reconcile every open message so a crash between an entry commit and this step self-heals.
    affected = {entry.message_id for entry in claimed}
    await update_message_statuses(session=session, message_ids=affected or None, now=now)
    return processed
