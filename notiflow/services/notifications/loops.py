from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notiflow.core.config import Settings, get_settings
from notiflow.persistence.db import SessionLocal
from notiflow.services.notifications.processor import process_queue_batch
from notiflow.services.notifications.retry import RetryOptions
from notiflow.services.notifications.scheduler import enqueue_due_messages
from notiflow.services.notifications.senders import Sender


logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class PeriodicTask:
    """Run ``tick`` every ``interval_s`` seconds until stopped.

    A tick that raises is logged and the loop waits for the next interval.
    """

    def __init__(
        self,
        name: str,
        tick: Callable[[], Awaitable[Any]],
        interval_s: float,
        clock: Clock | None = None,
    ) -> None:
        self.name = name
        self._tick = tick
        self._interval_s = max(0.0, float(interval_s))
        self._clock = clock or SystemClock()
        self._task: asyncio.Task[None] | None = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Any:
        try:
            return await self._tick()
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - keep the loop alive while surfacing failures in worker logs.
            logger.exception("notification_loop_tick_failed loop=%s", self.name)
            return None

    async def _run(self) -> None:
        while not self._stopping:
            await self.run_once()
            if self._stopping:
                break
            await self._clock.sleep(self._interval_s)

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name=f"notiflow:{self.name}")
        logger.info("notification_loop_started loop=%s interval_s=%s", self.name, self._interval_s)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        self._stopping = True
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("notification_loop_stopped loop=%s", self.name)


@dataclass
class NotificationQueueLoops:
    scheduler: PeriodicTask | None
    processor: PeriodicTask | None

    def _tasks(self) -> list[PeriodicTask]:
        return [task for task in (self.scheduler, self.processor) if task is not None]

    def start(self) -> None:
        for task in self._tasks():
            task.start()

    async def stop(self) -> None:
        for task in self._tasks():
            await task.stop()

    @property
    def running(self) -> bool:
        return any(task.running for task in self._tasks())


def build_queue_loops(
    *,
    sender: Sender,
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    clock: Clock | None = None,
) -> NotificationQueueLoops | None:
    """Wire the scheduler and processor ticks; ``None`` when the queue is disabled."""
    settings = settings or get_settings()
    if not settings.notification_queue_enabled:
        return None
    clock = clock or SystemClock()
    options = RetryOptions.from_settings(settings)

    async def schedule_tick() -> list[dict[str, Any]]:
        async with session_factory() as session:
            return await enqueue_due_messages(
                session=session,
                now=clock.now(),
                limit=settings.notification_queue_schedule_batch_size,
                settings=settings,
            )

    async def process_tick() -> list[dict[str, Any]]:
        async with session_factory() as session:
            return await process_queue_batch(
                session=session,
                sender=sender,
                now=clock.now(),
                limit=settings.notification_queue_batch_size,
                options=options,
                settings=settings,
            )

    scheduler = None
    if settings.notification_queue_schedule_enabled:
        scheduler = PeriodicTask(
            "schedule",
            schedule_tick,
            settings.notification_queue_schedule_interval_ms / 1000.0,
            clock,
        )
    processor = None
    if settings.notification_queue_process_enabled:
        processor = PeriodicTask(
            "process",
            process_tick,
            settings.notification_queue_process_interval_ms / 1000.0,
            clock,
        )
    return NotificationQueueLoops(scheduler=scheduler, processor=processor)
