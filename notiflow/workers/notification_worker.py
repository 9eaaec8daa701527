from __future__ import annotations

import logging

from arq.connections import RedisSettings

from notiflow.core.config import get_settings
from notiflow.core.logging import configure_logging
from notiflow.persistence.db import SessionLocal, dispose_engine
from notiflow.services.notifications.loops import build_queue_loops
from notiflow.services.notifications.scheduler import enqueue_message
from notiflow.services.notifications.senders import build_sender

logger = logging.getLogger(__name__)


async def enqueue_notification_message(ctx, message_id: str) -> str:
    # Fan out one message on demand; the scheduler tick covers anything this misses.
    async with SessionLocal() as session:
        result = await enqueue_message(session=session, message_id=message_id)
    logger.info(
        "notification_enqueue_job message_id=%s status=%s enqueued=%s",
        message_id,
        result["status"],
        result["enqueued"],
    )
    return result["status"]


async def _startup(ctx) -> None:
    # Start the scheduler and processor loops with the worker so delivery continues without producer traffic.
    configure_logging()
    settings = get_settings()
    loops = build_queue_loops(settings=settings, sender=build_sender(settings))
    if loops is None:
        logger.info("notification_queue_disabled")
        return
    loops.start()
    ctx["queue_loops"] = loops


async def _shutdown(ctx) -> None:
    # Stop loops on shutdown to avoid dangling coroutines in tests and local runs.
    loops = ctx.get("queue_loops")
    if loops is not None:
        await loops.stop()
    await dispose_engine()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_queue_name
    functions = [enqueue_notification_message]
    on_startup = _startup
    on_shutdown = _shutdown
