from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from notiflow.core.errors import SendError
from notiflow.services.notifications.senders import SendRequest, SendResult


class StubSender:
    """Sender double that records requests and fails on demand."""

    def __init__(
        self,
        *,
        fail_times: int = 0,
        fail_recipients: set[str] | None = None,
        delay_s: float = 0.0,
        result: SendResult | None = None,
    ) -> None:
        self.fail_times = fail_times
        self.fail_recipients = fail_recipients or set()
        self.delay_s = delay_s
        self.result = result
        self.requests: list[SendRequest] = []

    async def send(self, request: SendRequest) -> SendResult:
        self.requests.append(request)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if len(self.requests) <= self.fail_times or request.recipient_id in self.fail_recipients:
            raise SendError("provider unavailable", code="TEMP_FAIL")
        return self.result or SendResult(status="delivered", events=["delivered"])


class FakeClock:
    """Clock that advances instantly when slept on."""

    def __init__(self, start: datetime) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current = self.current + timedelta(seconds=seconds)
        # Yield so the loop under test never starves the test body.
        await asyncio.sleep(0)
