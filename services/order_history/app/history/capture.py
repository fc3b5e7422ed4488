"""
Capture orchestration: turn committed order writes into history entries.

In-process writes are observed through SQLAlchemy session events:

- ``before_flush``   first touch of a persistent order in a transaction reads its
                     last committed state on a separate connection
- ``after_flush``    newly inserted orders get their ids and are registered
- ``after_flush_postexec``
                     the state each touched order is about to commit is read on
                     the writer's own connection, inside a savepoint; the last
                     flush wins
- ``do_orm_execute`` UPDATE and DELETE statements on aggregate tables bypass the
                     flush: the orders they match are registered before the
                     statement runs, and every in-transaction snapshot is
                     re-read after commit instead
- ``after_commit``   each touched order gets a sequencing stamp and a capture
                     job is queued; no timer is involved anywhere
- ``after_soft_rollback``
                     a rolled back SAVEPOINT forgets the orders first touched
                     inside it and marks the others for a read after commit
- ``after_transaction_end``
                     the outermost transaction is over; whatever was not
                     committed is dropped

Writes made by other processes arrive as ``LifecycleEvent`` messages and
follow the same protocol through ``submit_event``.

The transaction-scoped state lives in ``Session.info`` under a fresh write
token, so nothing is shared between requests. Jobs run on single-thread lanes
picked by order id: appends for one order are serialized, different orders run
in parallel. Every failure is logged and swallowed; the business write has
already returned by the time a job runs.
"""
import logging
import threading
import zlib
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout, wait as futures_wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from itertools import chain
from typing import Any, Literal, Optional
from uuid import uuid4

from prometheus_client import Counter
from pydantic import BaseModel
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import ORMExecuteState, Session, SessionTransaction

from app.core.config import settings
from app.db.models import AGGREGATE_MODELS, Order, OrderItem, OrderItemModifier, OrderItemPizzaCustomization
from app.db.session import INTERNAL_SESSION
from app.history.actor import get_actor
from app.history.batch import aggregate, summarize_snapshot
from app.history.diff import diff_orders
from app.history.errors import CaptureFailure, HistoryError, MalformedSnapshot, PersistenceFailure, SnapshotNotFound
from app.history.loader import SnapshotLoader
from app.history.sequence import SequenceClock, datetime_to_stamp, stamp_to_datetime
from app.history.snapshots import (
    HistoryEntry, HistoryEntryDraft, HistoryOperation, OrderSnapshot, PartialPayload, SnapshotPayload,
)
from app.history.store import HistoryStore
from app.store.pending_store import LocalPendingSnapshots, PendingSnapshots

logger = logging.getLogger(__name__)

WRITE_STATE_KEY = "order_history.write"
ACTOR_KEY = "actor_id"

AGGREGATE_TABLES = {model.__tablename__: model for model in AGGREGATE_MODELS}

history_recorded = Counter("order_history_recorded_total", "History entries persisted", ["operation"])
history_dropped = Counter("order_history_dropped_total", "History captures dropped", ["reason"])


class LifecyclePhase(str, Enum):
    BEFORE = "BEFORE"
    AFTER = "AFTER"


class LifecycleEvent(BaseModel):
    """
    Lifecycle notification published by the order-management system.

    ``write_id`` correlates the BEFORE and AFTER notifications of one write.
    ``snapshot`` is optional; when the writer already knows the state (before
    the write for BEFORE, after commit for AFTER) it should send it, which
    spares a read and removes any dependency on consumption timing.
    """
    phase: LifecyclePhase
    operation: Literal["INSERT", "UPDATE", "DELETE"]
    order_id: int
    actor_id: Optional[str] = None
    timestamp: datetime
    write_id: str
    snapshot: Optional[OrderSnapshot] = None


@dataclass
class PendingCapture:
    order_id: int
    created: bool = False
    deleted: bool = False
    before: Optional[OrderSnapshot] = None
    after: Optional[OrderSnapshot] = None
    # innermost SAVEPOINT open when the order was first touched, and when it was deleted
    scope: Any = None
    deleted_scope: Any = None

    @property
    def operation(self) -> Optional[str]:
        if self.created:
            # created and deleted in the same transaction: nothing was ever committed
            return None if self.deleted else HistoryOperation.INSERT.value
        return HistoryOperation.DELETE.value if self.deleted else HistoryOperation.UPDATE.value


@dataclass
class WriteState:
    """Captures collected for one transaction of one session."""
    write_id: str = field(default_factory=lambda: uuid4().hex)
    captures: dict[int, PendingCapture] = field(default_factory=dict)


@dataclass(frozen=True)
class CaptureJob:
    order_id: int
    operation: str
    write_id: str
    sequence: int
    changed_at: datetime
    changed_by: Optional[str] = None
    before: Optional[OrderSnapshot] = None
    after: Optional[OrderSnapshot] = None

    @property
    def idempotency_key(self) -> str:
        return f"{self.write_id}:{self.order_id}"


def _within(transaction: Optional[SessionTransaction], savepoint: SessionTransaction) -> bool:
    while transaction is not None:
        if transaction is savepoint:
            return True
        transaction = transaction.parent
    return False


class CaptureOrchestrator:
    def __init__(
        self,
        loader: SnapshotLoader,
        store: HistoryStore,
        *,
        lanes: int = settings.HISTORY_LANES,
        timeout: float = settings.SNAPSHOT_TIMEOUT_SECONDS,
        epsilon: float = settings.PRICE_EPSILON,
        clock: Optional[SequenceClock] = None,
        pending: Optional[PendingSnapshots] = None,
    ):
        self.loader = loader
        self.store = store
        self.timeout = timeout
        self.epsilon = epsilon
        self.clock = clock or SequenceClock()
        self.pending = pending or LocalPendingSnapshots()
        lanes = max(1, lanes)
        self._lanes = [ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"history-lane-{i}") for i in range(lanes)]
        self._reader = ThreadPoolExecutor(max_workers=lanes + 1, thread_name_prefix="history-reader")
        self._futures: set[Future] = set()
        self._lock = threading.Lock()
        self._listeners: list[tuple[object, str, object]] = []

    # --- lifecycle binding ---

    def bind(self, target):
        """Listen to the session events of ``target`` (a sessionmaker, Session class or instance)."""
        for name, fn in (
            ("before_flush", self._before_flush),
            ("after_flush", self._after_flush),
            ("after_flush_postexec", self._after_flush_postexec),
            ("do_orm_execute", self._do_orm_execute),
            ("after_commit", self._after_commit),
            ("after_soft_rollback", self._after_soft_rollback),
            ("after_transaction_end", self._after_transaction_end),
        ):
            event.listen(target, name, fn)
            self._listeners.append((target, name, fn))
        return self

    def unbind(self):
        while self._listeners:
            target, name, fn = self._listeners.pop()
            event.remove(target, name, fn)

    def shutdown(self, wait: bool = True):
        self.unbind()
        for lane in self._lanes:
            lane.shutdown(wait=wait)
        self._reader.shutdown(wait=False)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued capture has finished. False on timeout."""
        while True:
            with self._lock:
                pending = list(self._futures)
            if not pending:
                return True
            _, not_done = futures_wait(pending, timeout=timeout)
            if not_done:
                return False

    # --- session hooks ---

    @staticmethod
    def _state(session: Session) -> WriteState:
        state = session.info.get(WRITE_STATE_KEY)
        if state is None:
            state = session.info[WRITE_STATE_KEY] = WriteState()
        return state

    @staticmethod
    def _owning_order(session: Session, obj) -> Optional[Order]:
        root = obj.root_order
        if root is not None:
            return root
        if isinstance(obj, (OrderItemModifier, OrderItemPizzaCustomization)):
            if obj.order_item_id is None:
                return None
            item = session.get(OrderItem, obj.order_item_id)
            return item.order if item is not None else None
        order_id = getattr(obj, "order_id", None)
        return session.get(Order, order_id) if order_id is not None else None

    def _touch(self, session: Session, order_id: int, deleting: bool = False) -> PendingCapture:
        """Register a persistent order with the transaction, reading its committed state on first touch."""
        state = self._state(session)
        capture = state.captures.get(order_id)
        if capture is None:
            capture = PendingCapture(order_id=order_id, scope=session.get_nested_transaction())
            capture.before = self._read_before(order_id, state.write_id)
            state.captures[order_id] = capture
        if deleting and not capture.deleted:
            capture.deleted = True
            capture.deleted_scope = session.get_nested_transaction()
        return capture

    def _before_flush(self, session: Session, flush_context, instances):
        if session.info.get(INTERNAL_SESSION):
            return
        try:
            new, dirty, deleted = session.new, session.dirty, session.deleted
            for obj in chain(new, dirty, deleted):
                if not isinstance(obj, AGGREGATE_MODELS):
                    continue
                if obj in dirty and not session.is_modified(obj):
                    continue
                order = self._owning_order(session, obj)
                if order is None or order.id is None or order in new:
                    # new orders are registered after the flush assigns their id
                    continue
                self._touch(session, order.id, deleting=obj is order and obj in deleted)
        except Exception:
            logger.exception("order history: before-flush capture failed")

    def _read_before(self, order_id: int, write_id: str) -> Optional[OrderSnapshot]:
        try:
            return self.read_snapshot(order_id)
        except SnapshotNotFound:
            logger.info("order history: no committed state for order %s yet (write %s)", order_id, write_id)
        except HistoryError as e:
            logger.warning("order history: before snapshot unavailable for write %s: %s", write_id, e)
        return None

    def _after_flush(self, session: Session, flush_context):
        if session.info.get(INTERNAL_SESSION):
            return
        try:
            for obj in session.new:
                if isinstance(obj, Order) and obj.id is not None:
                    state = self._state(session)
                    if obj.id not in state.captures:
                        state.captures[obj.id] = PendingCapture(
                            order_id=obj.id, created=True, scope=session.get_nested_transaction(),
                        )
        except Exception:
            logger.exception("order history: after-flush registration failed")

    def _after_flush_postexec(self, session: Session, flush_context):
        if session.info.get(INTERNAL_SESSION):
            return
        state: Optional[WriteState] = session.info.get(WRITE_STATE_KEY)
        if state is None:
            return
        try:
            connection = session.connection()
            for capture in state.captures.values():
                if not capture.deleted:
                    capture.after = self._read_within(connection, capture.order_id, state.write_id)
        except Exception:
            logger.exception("order history: after-flush snapshot failed")

    def _read_within(self, connection, order_id: int, write_id: str) -> Optional[OrderSnapshot]:
        """
        Read on the writer's connection inside a savepoint of its own.

        A failing statement rolls back only that savepoint, so the writer's
        transaction stays usable; the job then reads committed state instead.
        """
        try:
            with connection.begin_nested():
                return self.loader.load(order_id, connection=connection)
        except (HistoryError, SQLAlchemyError) as e:
            logger.warning("order history: after snapshot of order %s unavailable in write %s: %s",
                           order_id, write_id, e)
        except Exception:
            logger.exception("order history: after snapshot of order %s failed in write %s", order_id, write_id)
        return None

    def _do_orm_execute(self, orm_execute_state: ORMExecuteState):
        session = orm_execute_state.session
        if session.info.get(INTERNAL_SESSION):
            return None
        if not (orm_execute_state.is_update or orm_execute_state.is_delete):
            return None
        statement = orm_execute_state.statement
        model = AGGREGATE_TABLES.get(getattr(statement.table, "name", None))
        if model is None:
            return None

        try:
            deleting = orm_execute_state.is_delete and model is Order
            for order_id in self._statement_orders(model, statement, orm_execute_state.parameters):
                self._touch(session, order_id, deleting=deleting)
        except Exception:
            logger.exception("order history: could not register %s on %s",
                             "DELETE" if orm_execute_state.is_delete else "UPDATE", model.__tablename__)

        result = orm_execute_state.invoke_statement()

        state: Optional[WriteState] = session.info.get(WRITE_STATE_KEY)
        if state is not None:
            # the statement did not go through a flush, so the snapshots taken so far are stale
            for capture in state.captures.values():
                capture.after = None
        return result

    def _statement_orders(self, model, statement, parameters) -> set[int]:
        criteria = statement.whereclause
        if isinstance(parameters, list):
            # ORM bulk UPDATE by primary key
            keys = [p["id"] for p in parameters if "id" in p]
            if keys:
                criteria = model.id.in_(keys)
        return self._bounded(None, self.loader.affected_orders, model, criteria)

    def _after_commit(self, session: Session):
        # a released SAVEPOINT fires this too; only the outermost commit counts
        if session.info.get(INTERNAL_SESSION) or session.in_nested_transaction():
            return
        state: Optional[WriteState] = session.info.pop(WRITE_STATE_KEY, None)
        if state is None or not state.captures:
            return
        try:
            actor = session.info.get(ACTOR_KEY) or get_actor()
            for capture in state.captures.values():
                operation = capture.operation
                if operation is None:
                    continue
                stamp = self.clock.next()
                self.schedule(CaptureJob(
                    order_id=capture.order_id,
                    operation=operation,
                    write_id=state.write_id,
                    sequence=stamp,
                    changed_at=stamp_to_datetime(stamp),
                    changed_by=actor,
                    before=capture.before,
                    after=capture.after,
                ))
        except Exception:
            logger.exception("order history: could not queue captures of write %s", state.write_id)

    def _after_soft_rollback(self, session: Session, previous_transaction: SessionTransaction):
        if session.info.get(INTERNAL_SESSION) or not previous_transaction.nested:
            return
        state: Optional[WriteState] = session.info.get(WRITE_STATE_KEY)
        if state is None:
            return
        for order_id, capture in list(state.captures.items()):
            if _within(capture.scope, previous_transaction):
                del state.captures[order_id]
                continue
            if capture.deleted and _within(capture.deleted_scope, previous_transaction):
                capture.deleted = False
                capture.deleted_scope = None
            # what the savepoint wrote is gone; read committed state after commit
            capture.after = None

    def _after_transaction_end(self, session: Session, transaction: SessionTransaction):
        if transaction.parent is None:
            session.info.pop(WRITE_STATE_KEY, None)

    # --- inbound lifecycle events ---

    def submit_event(self, ev: LifecycleEvent):
        """Handle a lifecycle notification of a write made by another process."""
        try:
            if ev.phase == LifecyclePhase.BEFORE:
                if ev.operation == HistoryOperation.INSERT.value:
                    return
                before = ev.snapshot or self._read_before(ev.order_id, ev.write_id)
                if before is not None:
                    self.pending.put(ev.write_id, ev.order_id, before)
                return

            before = self.pending.pop(ev.write_id, ev.order_id)
            stamp = datetime_to_stamp(ev.timestamp)
            self.clock.observe(stamp)
            self.schedule(CaptureJob(
                order_id=ev.order_id,
                operation=ev.operation,
                write_id=ev.write_id,
                sequence=stamp,
                changed_at=ev.timestamp,
                changed_by=ev.actor_id,
                before=before,
                after=ev.snapshot,
            ))
        except Exception:
            logger.exception("order history: lifecycle event for order %s (write %s) failed", ev.order_id, ev.write_id)

    # --- capture pipeline ---

    def schedule(self, job: CaptureJob) -> Optional[Future]:
        lane = self._lanes[zlib.crc32(str(job.order_id).encode()) % len(self._lanes)]
        try:
            future = lane.submit(self._run, job)
        except RuntimeError:
            logger.warning("order history: orchestrator stopped, dropping capture of order %s", job.order_id)
            history_dropped.labels(reason="shutdown").inc()
            return None
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future):
        with self._lock:
            self._futures.discard(future)

    def _bounded(self, order_id: Optional[int], fn, *args):
        """
        Run a loader read on the reader pool, waiting at most ``timeout``.

        A read that overruns keeps its worker until the server-side statement
        timeout set by the loader ends it; only the wait is abandoned here.
        """
        future = self._reader.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as e:
            future.cancel()
            raise CaptureFailure(order_id, f"snapshot read timed out after {self.timeout}s") from e
        except SQLAlchemyError as e:
            raise CaptureFailure(order_id, str(e)) from e

    def read_snapshot(self, order_id: int) -> OrderSnapshot:
        """Loader read bounded by the configured timeout."""
        return self._bounded(order_id, self.loader.load, order_id)

    def _run(self, job: CaptureJob) -> Optional[HistoryEntry]:
        try:
            draft = self.build_entry(job)
            if draft is None:
                logger.debug("order history: write %s left order %s unchanged", job.write_id, job.order_id)
                return None
            return self._persist(draft, job)
        except HistoryError as e:
            history_dropped.labels(reason=type(e).__name__).inc()
            logger.warning("order history: capture of order %s (write %s) skipped: %s", job.order_id, job.write_id, e)
        except Exception:
            history_dropped.labels(reason="unexpected").inc()
            logger.exception("order history: capture of order %s (write %s) failed", job.order_id, job.write_id)
        return None

    def _draft(self, job: CaptureJob, operation: str, payload) -> HistoryEntryDraft:
        return HistoryEntryDraft(
            order_id=job.order_id,
            operation=operation,
            changed_by=job.changed_by,
            changed_at=job.changed_at,
            payload=payload,
        )

    def build_entry(self, job: CaptureJob) -> Optional[HistoryEntryDraft]:
        """The entry a job should write, or None when the write changed nothing."""
        if job.operation == HistoryOperation.INSERT.value:
            # read after commit, so every child row of the new order exists
            after = job.after or self.read_snapshot(job.order_id)
            return self._draft(job, HistoryOperation.INSERT.value,
                               SnapshotPayload(snapshot=after, summary=summarize_snapshot(after)))

        if job.operation == HistoryOperation.DELETE.value:
            last_known = job.before or job.after
            if last_known is None:
                raise CaptureFailure(job.order_id, "no snapshot of the deleted order")
            return self._draft(job, HistoryOperation.DELETE.value,
                               SnapshotPayload(snapshot=last_known, summary=summarize_snapshot(last_known, created=False)))

        if job.operation != HistoryOperation.UPDATE.value:
            raise MalformedSnapshot(job.order_id, f"unknown operation {job.operation!r}")

        after = job.after
        if after is None:
            try:
                after = self.read_snapshot(job.order_id)
            except SnapshotNotFound:
                if job.before is None:
                    raise
                logger.info("order history: order %s vanished before its after-state was read", job.order_id)
                return self._draft(job, HistoryOperation.UPDATE.value,
                                   PartialPayload(snapshot=job.before, missing="after"))
        if job.before is None:
            return self._draft(job, HistoryOperation.UPDATE.value, PartialPayload(snapshot=after, missing="before"))
        if after.id != job.order_id or job.before.id != job.order_id:
            raise MalformedSnapshot(job.order_id, "snapshot belongs to a different order")

        return aggregate(
            diff_orders(job.before, after, self.epsilon),
            order_id=job.order_id,
            changed_by=job.changed_by,
            changed_at=job.changed_at,
        )

    def _persist(self, draft: HistoryEntryDraft, job: CaptureJob) -> Optional[HistoryEntry]:
        for attempt in (1, 2):
            try:
                entry = self.store.append(draft, job.sequence, idempotency_key=job.idempotency_key)
            except PersistenceFailure as e:
                if attempt == 1:
                    logger.warning("order history: append for order %s failed, retrying once: %s", job.order_id, e)
                    continue
                history_dropped.labels(reason="PersistenceFailure").inc()
                logger.error("order history: dropped %s entry of order %s (write %s): %s",
                             draft.operation, job.order_id, job.write_id, e)
                return None
            history_recorded.labels(operation=entry.operation).inc()
            return entry
        return None
