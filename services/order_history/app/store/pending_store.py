"""
Before-snapshots waiting for the AFTER notification of their write.

Keys are ``(write_id, order_id)``: one write token per business write, so
concurrent writes to the same order never see each other's snapshot. Entries
expire after ``PENDING_SNAPSHOT_TTL_SECONDS`` when the AFTER notification
never comes.
"""
import threading
import time
from typing import Optional, Protocol

from redis import Redis

from app.core.config import settings
from app.history.snapshots import OrderSnapshot


class PendingSnapshots(Protocol):
    def put(self, write_id: str, order_id: int, snapshot: OrderSnapshot) -> None: ...
    def pop(self, write_id: str, order_id: int) -> Optional[OrderSnapshot]: ...


def get_client() -> Redis:
    return Redis.from_url(settings.REDIS_URL, decode_responses=True)


def pending_key(write_id: str, order_id: int) -> str:
    return f"history:pending:{write_id}:{order_id}"


class RedisPendingSnapshots:
    """Shared between consumer replicas; BEFORE and AFTER may land on different ones."""

    def __init__(self, client: Optional[Redis] = None, ttl: int = settings.PENDING_SNAPSHOT_TTL_SECONDS):
        self.client = client or get_client()
        self.ttl = ttl

    def put(self, write_id: str, order_id: int, snapshot: OrderSnapshot) -> None:
        self.client.setex(pending_key(write_id, order_id), self.ttl, snapshot.model_dump_json())

    def pop(self, write_id: str, order_id: int) -> Optional[OrderSnapshot]:
        key = pending_key(write_id, order_id)
        pipe = self.client.pipeline()
        pipe.get(key)
        pipe.delete(key)
        raw, _ = pipe.execute()
        if raw is None:
            return None
        return OrderSnapshot.model_validate_json(raw)


class LocalPendingSnapshots:
    """In-process variant for a single consumer."""

    def __init__(self, ttl: int = settings.PENDING_SNAPSHOT_TTL_SECONDS, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._items: dict[str, tuple[float, OrderSnapshot]] = {}
        self._lock = threading.Lock()

    def _expire(self, now: float):
        for key in [k for k, (deadline, _) in self._items.items() if deadline <= now]:
            del self._items[key]

    def put(self, write_id: str, order_id: int, snapshot: OrderSnapshot) -> None:
        now = self._clock()
        with self._lock:
            self._expire(now)
            self._items[pending_key(write_id, order_id)] = (now + self.ttl, snapshot)

    def pop(self, write_id: str, order_id: int) -> Optional[OrderSnapshot]:
        now = self._clock()
        with self._lock:
            self._expire(now)
            found = self._items.pop(pending_key(write_id, order_id), None)
        return found[1] if found else None
