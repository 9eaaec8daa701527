from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from notiflow.core.config import Settings
from notiflow.core.errors import SendError, SenderConfigError
from notiflow.services.notifications.senders import (
    QueuedMessage,
    SendRequest,
    SimulatedSender,
    WebhookSender,
    build_sender,
)


def _request(payload: dict | None = None, channel: str = "email") -> SendRequest:
    return SendRequest(
        channel=channel,
        recipient_id="u1",
        message=QueuedMessage(
            message_id="m1",
            tenant_id="d1",
            school_id="s1",
            title="Heads up",
            body="Early release",
            payload=payload or {},
        ),
    )


@pytest.mark.asyncio
async def test_simulated_sender_delivers_by_default() -> None:
    result = await SimulatedSender().send(_request())
    assert result.status == "delivered"
    assert result.events == ["delivered"]
    assert result.provider_response == {"simulated": True, "channel": "email", "recipient_id": "u1"}


@pytest.mark.asyncio
async def test_simulated_sender_bounce_and_temporary_failure() -> None:
    bounced = await SimulatedSender().send(_request({"simulate": {"status": "bounced"}}))
    assert bounced.status == "bounced"
    assert bounced.events == ["bounced"]

    with pytest.raises(SendError) as excinfo:
        await SimulatedSender().send(_request({"simulate": {"error": "temporary"}}))
    assert excinfo.value.code == "TEMP_FAIL"


@pytest.mark.asyncio
async def test_webhook_sender_posts_request_and_parses_events() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "delivered", "events": ["delivered", "opened"]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sender = WebhookSender("https://gateway.example.test/send", token="secret", client=client)
        result = await sender.send(_request(channel="sms"))

    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["channel"] == "sms"
    assert seen["body"]["message_id"] == "m1"
    assert result.status == "delivered"
    assert result.events == ["delivered", "opened"]
    assert result.provider_response["status_code"] == 200


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("delivered_at", "expected"),
    [
        ("2026-03-02T09:00:00Z", datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)),
        ("2026-03-02T09:00:00", datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)),
        ("not-a-date", None),
        (12345, None),
    ],
)
async def test_webhook_sender_tolerates_gateway_timestamps(delivered_at, expected) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "delivered", "delivered_at": delivered_at})

    before = datetime.now(timezone.utc)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sender = WebhookSender("https://gateway.example.test/send", client=client)
        result = await sender.send(_request())

    assert result.status == "delivered"
    if expected is None:
        assert result.delivered_at >= before
    else:
        assert result.delivered_at == expected


@pytest.mark.asyncio
async def test_webhook_sender_maps_http_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "down"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sender = WebhookSender("https://gateway.example.test/send", client=client)
        with pytest.raises(SendError) as excinfo:
            await sender.send(_request())
    assert excinfo.value.code == "http_503"


@pytest.mark.asyncio
async def test_webhook_sender_maps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sender = WebhookSender("https://gateway.example.test/send", client=client)
        with pytest.raises(SendError) as excinfo:
            await sender.send(_request())
    assert excinfo.value.code == "GATEWAY_UNAVAILABLE"


def test_build_sender_selection() -> None:
    assert isinstance(build_sender(Settings(_env_file=None)), SimulatedSender)
    webhook = build_sender(
        Settings(
            _env_file=None,
            notification_sender="webhook",
            notification_sender_webhook_url="https://gateway.example.test/send",
        )
    )
    assert isinstance(webhook, WebhookSender)
    with pytest.raises(SenderConfigError):
        build_sender(Settings(_env_file=None, notification_sender="webhook"))
    with pytest.raises(SenderConfigError):
        build_sender(Settings(_env_file=None, notification_sender="carrier"))
