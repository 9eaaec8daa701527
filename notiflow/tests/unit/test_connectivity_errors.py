from __future__ import annotations

import pytest
from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError, OperationalError

from notiflow.core.errors import SendError, is_connectivity_error


@pytest.mark.parametrize(
    "exc",
    [
        DisconnectionError("connection lost"),
        InterfaceError("SELECT 1", {}, Exception("connection is closed")),
        DBAPIError("SELECT 1", {}, Exception("server closed the connection"), connection_invalidated=True),
        OperationalError("SELECT 1", {}, Exception("terminating connection"), connection_invalidated=True),
        ConnectionResetError("reset by peer"),
    ],
)
def test_lost_connections_abort_the_tick(exc: BaseException) -> None:
    assert is_connectivity_error(exc)


@pytest.mark.parametrize(
    "exc",
    [
        OperationalError("SELECT 1", {}, Exception("canceling statement due to statement timeout")),
        OperationalError("SELECT 1", {}, Exception("user-defined function raised exception")),
        DBAPIError("SELECT 1", {}, Exception("division by zero")),
        SendError("provider unavailable", code="TEMP_FAIL"),
        ValueError("bad segment"),
    ],
)
def test_item_errors_stay_isolated(exc: BaseException) -> None:
    assert not is_connectivity_error(exc)
