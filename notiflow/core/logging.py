from __future__ import annotations

import logging

from notiflow.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once per process; worker and scripts call this at boot.
    resolved = (level or get_settings().log_level or "INFO").upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    logging.getLogger().setLevel(resolved)
    # Keep driver chatter out of queue logs unless explicitly debugging.
    if resolved != "DEBUG":
        for noisy in ("sqlalchemy.engine", "httpx", "arq.worker"):
            logging.getLogger(noisy).setLevel(logging.WARNING)
