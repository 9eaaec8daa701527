from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from notiflow.domain.models import NotificationQueueEntry

_INSERT_CHUNK_SIZE = 1000


def _recipient_id(recipient: Any) -> str:
    if isinstance(recipient, dict):
        return str(recipient["id"])
    return str(recipient.id)


def build_queue_entries(
    *,
    message_id: str,
    recipients: Iterable[Any],
    channel: str,
    max_attempts: int,
    now: datetime,
) -> list[dict[str, Any]]:
    # One pending, immediately due entry per recipient; ids are assigned here so rows are insert-ready.
    return [
        {
            "id": uuid4().hex,
            "message_id": message_id,
            "recipient_id": _recipient_id(recipient),
            "channel": channel,
            "status": "pending",
            "attempts": 0,
            "max_attempts": int(max_attempts),
            "next_attempt_at": now,
            "last_error": None,
            "created_at": now,
            "updated_at": now,
        }
        for recipient in recipients or []
    ]


async def _insert_chunk(*, session: AsyncSession, dialect: str, rows: list[dict[str, Any]]) -> int:
    if dialect == "postgresql":
        statement = pg_insert(NotificationQueueEntry).values(rows).on_conflict_do_nothing()
    elif dialect == "sqlite":
        statement = sqlite_insert(NotificationQueueEntry).values(rows).on_conflict_do_nothing()
    else:
        # No portable conflict clause; filter out recipients already queued for the message.
        message_ids = {row["message_id"] for row in rows}
        existing = set(
            (
                await session.execute(
                    select(NotificationQueueEntry.message_id, NotificationQueueEntry.recipient_id).where(
                        NotificationQueueEntry.message_id.in_(message_ids)
                    )
                )
            ).all()
        )
        fresh: list[dict[str, Any]] = []
        for row in rows:
            key = (row["message_id"], row["recipient_id"])
            if key in existing:
                continue
            existing.add(key)
            fresh.append(row)
        if not fresh:
            return 0
        statement = insert(NotificationQueueEntry).values(fresh)
    result = await session.execute(statement)
    return int(result.rowcount or 0)


async def insert_queue_entries(*, session: AsyncSession, entries: list[dict[str, Any]]) -> int:
    """Insert queue entries, ignoring (message_id, recipient_id) duplicates.

    Returns the number of rows actually inserted. The caller owns the commit.
    """
    if not entries:
        return 0
    dialect = session.get_bind().dialect.name
    inserted = 0
    # Chunk multi-row VALUES to stay under driver bind-parameter limits.
    for start in range(0, len(entries), _INSERT_CHUNK_SIZE):
        inserted += await _insert_chunk(
            session=session,
            dialect=dialect,
            rows=entries[start : start + _INSERT_CHUNK_SIZE],
        )
    return inserted
