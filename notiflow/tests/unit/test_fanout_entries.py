from __future__ import annotations

from datetime import datetime, timezone

from notiflow.services.notifications.fanout import build_queue_entries
from notiflow.services.notifications.segments import Recipient


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def test_build_queue_entries_one_pending_entry_per_recipient() -> None:
    recipients = [
        Recipient(id="u1", email=None, role="parent", school_id="s1", district_id="d1"),
        {"id": "u2"},
    ]
    entries = build_queue_entries(
        message_id="m1",
        recipients=recipients,
        channel="sms",
        max_attempts=4,
        now=NOW,
    )
    assert [entry["recipient_id"] for entry in entries] == ["u1", "u2"]
    for entry in entries:
        assert entry["message_id"] == "m1"
        assert entry["channel"] == "sms"
        assert entry["status"] == "pending"
        assert entry["attempts"] == 0
        assert entry["max_attempts"] == 4
        assert entry["next_attempt_at"] == NOW
        assert entry["last_error"] is None
    assert len({entry["id"] for entry in entries}) == 2


def test_build_queue_entries_empty() -> None:
    assert build_queue_entries(message_id="m1", recipients=[], channel="email", max_attempts=5, now=NOW) == []
