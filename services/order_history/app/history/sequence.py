import threading
import time
from datetime import datetime, timedelta, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SequenceClock:
    """
    Strictly increasing nanosecond stamps.

    A stamp is taken when a write commits, before the capture is queued, so the
    order of stamps is the order of the mutations no matter which capture
    finishes first. The same stamp doubles as the entry's ``changed_at``, which
    keeps ``changed_at`` non-decreasing in sequence order.
    """

    def __init__(self, now_ns=time.time_ns):
        self._now_ns = now_ns
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            stamp = max(self._now_ns(), self._last + 1)
            self._last = stamp
            return stamp

    def observe(self, stamp: int):
        """Never hand out a stamp at or below one seen from elsewhere."""
        with self._lock:
            self._last = max(self._last, stamp)


def stamp_to_datetime(stamp: int) -> datetime:
    return EPOCH + timedelta(microseconds=stamp // 1_000)


def datetime_to_stamp(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1_000
