from __future__ import annotations

import asyncio
import logging
import signal

from notiflow.core.config import get_settings
from notiflow.core.logging import configure_logging
from notiflow.persistence.db import dispose_engine
from notiflow.services.notifications.loops import build_queue_loops
from notiflow.services.notifications.senders import build_sender


logger = logging.getLogger("notiflow.notification_worker")


async def _main() -> int:
    # Run the scheduler and processor loops without Redis so a single host can drain the queue.
    configure_logging()
    settings = get_settings()
    loops = build_queue_loops(settings=settings, sender=build_sender(settings))
    if loops is None:
        logger.info("notification_queue_disabled")
        return 0
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    loops.start()
    try:
        await stop_event.wait()
    finally:
        await loops.stop()
        await dispose_engine()
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
