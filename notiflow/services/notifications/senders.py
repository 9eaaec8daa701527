from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from notiflow.core.config import Settings, get_settings
from notiflow.core.errors import SendError, SenderConfigError


@dataclass(frozen=True)
class QueuedMessage:
    # Snapshot of the message fields a sender may need; detached from the ORM session.
    message_id: str
    tenant_id: str
    school_id: str | None
    title: str | None
    body: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SendRequest:
    channel: str
    recipient_id: str
    message: QueuedMessage


@dataclass(frozen=True)
class SendResult:
    status: str
    delivered_at: datetime | None = None
    provider_response: dict[str, Any] | None = None
    events: list[str] = field(default_factory=list)


class Sender(Protocol):
    async def send(self, request: SendRequest) -> SendResult:
        """Deliver one notification or raise ``SendError``."""
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_delivered_at(value: Any) -> datetime:
    # Missing or malformed gateway timestamps fall back to the local clock.
    if not isinstance(value, str) or not value:
        return _utc_now()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return _utc_now()
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


class SimulatedSender:
    """Deterministic sender driven by ``payload["simulate"]``.

    ``{"simulate": {"error": "temporary"}}`` fails the send;
    ``{"simulate": {"status": "bounced"}}`` reports a bounce.
    """

    async def send(self, request: SendRequest) -> SendResult:
        simulate = request.message.payload.get("simulate") if isinstance(request.message.payload, dict) else None
        simulate = simulate if isinstance(simulate, dict) else {}
        if simulate.get("error") == "temporary":
            raise SendError("temporary send failure", code="TEMP_FAIL")
        status = str(simulate.get("status") or "delivered")
        events = simulate.get("events")
        if not isinstance(events, list) or not events:
            events = ["bounced" if status == "bounced" else "delivered"]
        return SendResult(
            status=status,
            delivered_at=_utc_now(),
            provider_response={
                "simulated": True,
                "channel": request.channel,
                "recipient_id": request.recipient_id,
            },
            events=[str(event) for event in events],
        )


class WebhookSender:
    """Relay sends to a provider gateway over HTTP.

    The gateway owns the email/SMS/push protocols; it answers with JSON
    ``{"status": ..., "events": [...]}`` or an HTTP error.
    """

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not url or not url.startswith(("http://", "https://")):
            raise SenderConfigError("webhook sender url must start with http:// or https://")
        self._url = url
        self._token = token
        self._timeout_s = timeout_s
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _body(self, request: SendRequest) -> dict[str, Any]:
        message = request.message
        return {
            "channel": request.channel,
            "recipient_id": request.recipient_id,
            "message_id": message.message_id,
            "tenant_id": message.tenant_id,
            "school_id": message.school_id,
            "title": message.title,
            "body": message.body,
            "payload": message.payload,
        }

    async def _post(self, client: httpx.AsyncClient, request: SendRequest) -> httpx.Response:
        try:
            return await client.post(self._url, json=self._body(request), headers=self._headers())
        except httpx.HTTPError as exc:
            raise SendError(f"provider gateway unreachable: {exc}", code="GATEWAY_UNAVAILABLE") from exc

    async def send(self, request: SendRequest) -> SendResult:
        if self._client is not None:
            response = await self._post(self._client, request)
        else:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await self._post(client, request)
        if response.status_code >= 400:
            raise SendError(
                f"provider gateway rejected send ({response.status_code})",
                code=f"http_{int(response.status_code)}",
            )
        try:
            data = response.json()
        except ValueError:
            data = {}
        data = data if isinstance(data, dict) else {}
        events = data.get("events")
        return SendResult(
            status=str(data.get("status") or "delivered"),
            delivered_at=_parse_delivered_at(data.get("delivered_at")),
            provider_response={
                "status_code": int(response.status_code),
                "body": data,
            },
            events=[str(event) for event in events] if isinstance(events, list) else [],
        )


def build_sender(settings: Settings | None = None) -> Sender:
    settings = settings or get_settings()
    kind = (settings.notification_sender or "simulated").strip().lower()
    if kind == "simulated":
        return SimulatedSender()
    if kind == "webhook":
        return WebhookSender(
            settings.notification_sender_webhook_url or "",
            token=settings.notification_sender_webhook_token,
            timeout_s=max(0.2, settings.notification_send_timeout_ms / 1000.0),
        )
    raise SenderConfigError(f"Unsupported notification_sender: {settings.notification_sender}")
