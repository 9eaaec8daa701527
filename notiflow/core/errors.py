from __future__ import annotations

from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError


class NotiflowError(Exception):
    """Base error for notiflow."""


class SendError(NotiflowError):
    """Sender failed to deliver; retried according to the retry policy."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class SendTimeoutError(SendError):
    """Sender call exceeded the configured timeout."""


class SenderConfigError(NotiflowError):
    """Missing or invalid sender configuration."""


def is_connectivity_error(exc: BaseException) -> bool:
    # Only a lost store connection may abort a whole tick; anything else is isolated per item.
    if isinstance(exc, DisconnectionError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (InterfaceError, ConnectionError))
