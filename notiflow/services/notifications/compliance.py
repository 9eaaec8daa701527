from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from notiflow.domain.models import TenantSetting


EMAIL_AUTH_INCOMPLETE = "Email SPF/DKIM/DMARC validation not complete."
SMS_OPT_IN_REQUIRED = "SMS opt-in is required before sending."


@dataclass(frozen=True)
class ChannelValidation:
    ok: bool
    error: str | None = None


async def load_tenant_notification_settings(
    *,
    session: AsyncSession,
    tenant_id: str,
    school_id: str | None,
) -> dict[str, Any]:
    # School-specific settings win over the tenant-wide row (school_id null).
    row = (
        await session.execute(
            select(TenantSetting.settings)
            .where(
                TenantSetting.tenant_id == tenant_id,
                TenantSetting.school_id.is_(None) | (TenantSetting.school_id == school_id),
            )
            .order_by(TenantSetting.school_id.is_(None).asc())
            .limit(1)
        )
    ).scalar_one_or_none()
    return row if isinstance(row, dict) else {}


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _auth_status(settings: dict[str, Any], key: str) -> str:
    return str(settings.get(key) or settings.get(f"{key}_status") or "").lower()


def validate_tenant_channel(settings: dict[str, Any] | None, channel: str) -> ChannelValidation:
    """Check whether a tenant may send on ``channel``.

    Email requires SPF, DKIM and DMARC to all report ``pass``; SMS requires an
    explicit opt-in. Push and unknown channels are not gated.
    """
    settings = _as_dict(settings)
    notifications = _as_dict(settings.get("notifications"))

    if channel == "email":
        email_settings = _as_dict(notifications.get("email") or settings.get("email_security"))
        statuses = [_auth_status(email_settings, key) for key in ("spf", "dkim", "dmarc")]
        if all(status == "pass" for status in statuses):
            return ChannelValidation(ok=True)
        return ChannelValidation(ok=False, error=EMAIL_AUTH_INCOMPLETE)

    if channel == "sms":
        sms_settings = _as_dict(notifications.get("sms") or settings.get("sms_opt_in"))
        opt_in = sms_settings.get("opt_in")
        if opt_in is None:
            opt_in = sms_settings.get("enabled")
        if opt_in is None:
            opt_in = settings.get("sms_opt_in")
        # Only a literal True counts as consent.
        if opt_in is True:
            return ChannelValidation(ok=True)
        return ChannelValidation(ok=False, error=SMS_OPT_IN_REQUIRED)

    return ChannelValidation(ok=True)
