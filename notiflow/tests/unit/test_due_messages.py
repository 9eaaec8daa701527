from __future__ import annotations

from datetime import datetime, timezone

from notiflow.services.notifications.scheduler import select_due_messages


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def test_select_due_messages_filters_status_and_send_time() -> None:
    messages = [
        {"id": "1", "status": "scheduled", "send_at": datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)},
        {"id": "2", "status": "scheduled", "send_at": datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)},
        {"id": "3", "status": "pending", "send_at": None},
        {"id": "4", "status": "sent", "send_at": None},
    ]
    assert [message["id"] for message in select_due_messages(messages, NOW)] == ["1", "3"]


def test_select_due_messages_handles_empty_and_falsy_items() -> None:
    assert select_due_messages(None, NOW) == []
    assert select_due_messages([None, {}], NOW) == []


def test_select_due_messages_includes_exact_boundary_and_iso_strings() -> None:
    messages = [
        {"id": "a", "status": "scheduled", "send_at": "2026-03-02T09:00:00Z"},
        {"id": "b", "status": "pending", "send_at": "2026-03-02T09:00:01+00:00"},
    ]
    assert [message["id"] for message in select_due_messages(messages, NOW)] == ["a"]


def test_select_due_messages_reads_attributes() -> None:
    class _Row:
        def __init__(self, status: str) -> None:
            self.status = status
            self.send_at = None

    rows = [_Row("pending"), _Row("draft")]
    assert select_due_messages(rows, NOW) == [rows[0]]
