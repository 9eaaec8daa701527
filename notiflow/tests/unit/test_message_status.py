from __future__ import annotations

from notiflow.services.notifications.processor import derive_message_status


def test_any_in_flight_entry_keeps_message_processing() -> None:
    assert derive_message_status("queued", ["sent", "pending"]) == "processing"
    assert derive_message_status("queued", ["dead", "processing"]) == "processing"


def test_dead_entry_marks_partial_failure() -> None:
    assert derive_message_status("processing", ["sent", "dead"]) == "partial_failed"
    assert derive_message_status("processing", ["dead"]) == "partial_failed"


def test_all_sent_marks_message_sent() -> None:
    assert derive_message_status("processing", ["sent", "sent"]) == "sent"


def test_no_entries_keeps_current_status() -> None:
    assert derive_message_status("queued", []) == "queued"
