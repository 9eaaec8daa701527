from __future__ import annotations

import pytest

from notiflow.services.notifications.compliance import (
    EMAIL_AUTH_INCOMPLETE,
    SMS_OPT_IN_REQUIRED,
    validate_tenant_channel,
)


def test_email_requires_all_three_passes() -> None:
    settings = {"notifications": {"email": {"spf": "pass", "dkim": "PASS", "dmarc": "pass"}}}
    assert validate_tenant_channel(settings, "email").ok


@pytest.mark.parametrize(
    "email_settings",
    [
        {"spf": "pass", "dkim": "pass"},
        {"spf": "pass", "dkim": "fail", "dmarc": "pass"},
        {},
    ],
)
def test_email_rejects_incomplete_authentication(email_settings: dict) -> None:
    result = validate_tenant_channel({"notifications": {"email": email_settings}}, "email")
    assert not result.ok
    assert result.error == EMAIL_AUTH_INCOMPLETE


def test_email_reads_legacy_security_block_and_status_keys() -> None:
    settings = {"email_security": {"spf_status": "pass", "dkim_status": "pass", "dmarc_status": "pass"}}
    assert validate_tenant_channel(settings, "email").ok


def test_sms_requires_explicit_true_opt_in() -> None:
    assert validate_tenant_channel({"notifications": {"sms": {"opt_in": True}}}, "sms").ok
    assert validate_tenant_channel({"notifications": {"sms": {"enabled": True}}}, "sms").ok
    assert validate_tenant_channel({"sms_opt_in": True}, "sms").ok
    for value in ("true", 1, None, False):
        result = validate_tenant_channel({"notifications": {"sms": {"opt_in": value}}}, "sms")
        assert not result.ok
        assert result.error == SMS_OPT_IN_REQUIRED


def test_missing_settings_block_email_and_sms_but_not_push() -> None:
    assert not validate_tenant_channel(None, "email").ok
    assert not validate_tenant_channel({}, "sms").ok
    assert validate_tenant_channel(None, "push").ok
    assert validate_tenant_channel({}, "carrier-pigeon").ok
