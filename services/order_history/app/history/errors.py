"""Failures of the history pipeline. None of them may reach the business write."""


class HistoryError(Exception):
    pass


class CaptureFailure(HistoryError):
    """A snapshot read failed or timed out; the entry is skipped."""

    def __init__(self, order_id, reason: str):
        super().__init__(f"capture failed for order {order_id}: {reason}")
        self.order_id = order_id
        self.reason = reason


class SnapshotNotFound(HistoryError):
    """The aggregate does not exist (anymore) in the system of record."""

    def __init__(self, order_id):
        super().__init__(f"order {order_id} not found")
        self.order_id = order_id


class MalformedSnapshot(HistoryError):
    """The loaded aggregate does not have the expected shape."""

    def __init__(self, order_id, detail: str):
        super().__init__(f"malformed snapshot for order {order_id}: {detail}")
        self.order_id = order_id
        self.detail = detail


class PersistenceFailure(HistoryError):
    """Appending to the history store failed."""
