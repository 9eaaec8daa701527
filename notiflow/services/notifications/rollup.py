from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from notiflow.domain.models import NotificationDelivery, NotificationEvent, NotificationMessage


ROLLUP_EVENT_TYPES = ("delivered", "bounced", "opened", "clicked")


def _empty_rollup() -> dict[str, int]:
    rollup = {event_type: 0 for event_type in ROLLUP_EVENT_TYPES}
    rollup["total"] = 0
    return rollup


def _event_type(event: Any) -> Any:
    if isinstance(event, str):
        return event
    if isinstance(event, Mapping):
        return event.get("event_type")
    return getattr(event, "event_type", None)


def rollup_deliverability_events(events: Iterable[Any] | None) -> dict[str, int]:
    """Count delivered/bounced/opened/clicked events in one pass.

    Matching is exact; unknown or missing types only add to ``total``.
    """
    rollup = _empty_rollup()
    for event in events or []:
        rollup["total"] += 1
        event_type = _event_type(event)
        if event_type in ROLLUP_EVENT_TYPES:
            rollup[event_type] += 1
    return rollup


async def deliverability_metrics(
    *,
    session: AsyncSession,
    tenant_id: str,
    school_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    channel: str | None = None,
) -> dict[str, Any]:
    # Aggregate in the store; counting rules match rollup_deliverability_events.
    query = (
        select(NotificationEvent.event_type, func.count(NotificationEvent.id))
        .join(NotificationMessage, NotificationMessage.id == NotificationEvent.message_id)
        .where(NotificationMessage.tenant_id == tenant_id)
    )
    if school_id:
        # Tenant-wide messages count toward every school in the tenant.
        query = query.where(
            or_(NotificationMessage.school_id.is_(None), NotificationMessage.school_id == school_id)
        )
    if start is not None:
        query = query.where(NotificationEvent.event_ts >= start)
    if end is not None:
        query = query.where(NotificationEvent.event_ts <= end)
    if channel:
        query = query.join(
            NotificationDelivery, NotificationDelivery.id == NotificationEvent.delivery_id
        ).where(NotificationDelivery.channel == channel)
    query = query.group_by(NotificationEvent.event_type)

    rollup = _empty_rollup()
    for event_type, count in (await session.execute(query)).all():
        rollup["total"] += int(count)
        if event_type in ROLLUP_EVENT_TYPES:
            rollup[event_type] += int(count)
    return {
        "tenant_id": tenant_id,
        "school_id": school_id,
        "channel": channel,
        "start": start.isoformat() if start else None,
        "end": end.isoformat() if end else None,
        "totals": rollup,
    }
