from datetime import datetime, timezone

from app.kafka.consumer import process_event


class RecordingOrchestrator:
    def __init__(self):
        self.events = []

    def submit_event(self, event):
        self.events.append(event)


def test_valid_message_is_forwarded():
    orch = RecordingOrchestrator()
    ok = process_event({
        "phase": "AFTER",
        "operation": "UPDATE",
        "order_id": 12,
        "actor_id": "pos-1",
        "timestamp": "2026-10-19T10:00:00Z",
        "write_id": "w-77",
        "snapshot": {"id": 12, "notes": "extra napkins"},
    }, orch)
    assert ok
    (event,) = orch.events
    assert event.order_id == 12
    assert event.timestamp == datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)
    assert event.snapshot.notes == "extra napkins"


def test_malformed_message_is_skipped():
    orch = RecordingOrchestrator()
    assert not process_event({"phase": "SOMETIME", "order_id": "x"}, orch)
    assert orch.events == []
