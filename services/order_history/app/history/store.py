import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.db.models import OrderHistory
from app.db.session import INTERNAL_SESSION
from app.history.errors import PersistenceFailure
from app.history.snapshots import HistoryEntry, HistoryEntryDraft

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def entry_from_row(row: OrderHistory) -> HistoryEntry:
    return HistoryEntry(
        id=row.id,
        order_id=row.order_id,
        sequence=row.sequence,
        operation=row.operation,
        changed_by=row.changed_by,
        changed_at=_aware(row.changed_at),
        payload=row.payload,
    )


class HistoryStore:
    """Append-only store of history entries. There is no update or delete."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _session(self) -> Session:
        return self.session_factory(info={INTERNAL_SESSION: True})

    def _by_key(self, db: Session, idempotency_key: str) -> Optional[OrderHistory]:
        return db.execute(
            select(OrderHistory).where(OrderHistory.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    def append(self, draft: HistoryEntryDraft, sequence: int, idempotency_key: Optional[str] = None) -> HistoryEntry:
        """
        Persist one entry at ``sequence`` within its order.

        Submitting the same ``idempotency_key`` twice returns the entry written
        the first time. A sequence already taken for the order is moved forward
        to the next free value, so ties between equal stamps keep arrival order.
        """
        db = self._session()
        try:
            if idempotency_key:
                existing = self._by_key(db, idempotency_key)
                if existing is not None:
                    logger.info("history entry %s already recorded (key=%s)", existing.id, idempotency_key)
                    return entry_from_row(existing)

            while db.execute(
                select(OrderHistory.id).where(
                    OrderHistory.order_id == draft.order_id, OrderHistory.sequence == sequence,
                )
            ).first() is not None:
                sequence += 1

            row = OrderHistory(
                order_id=draft.order_id,
                sequence=sequence,
                operation=draft.operation,
                changed_by=draft.changed_by,
                changed_at=draft.changed_at,
                payload=draft.payload.model_dump(mode="json"),
                idempotency_key=idempotency_key,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return entry_from_row(row)
        except IntegrityError as e:
            db.rollback()
            if idempotency_key:
                existing = self._by_key(db, idempotency_key)
                if existing is not None:
                    return entry_from_row(existing)
            raise PersistenceFailure(f"could not append history for order {draft.order_id}: {e}") from e
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceFailure(f"could not append history for order {draft.order_id}: {e}") from e
        finally:
            db.close()

    def list_by_order(
        self, order_id: int, page: int = 1, page_size: int = 20, newest_first: bool = True,
    ) -> tuple[list[HistoryEntry], int]:
        """One page of an order's history in sequence order, plus the total count."""
        if newest_first:
            ordering = (OrderHistory.sequence.desc(), OrderHistory.id.desc())
        else:
            ordering = (OrderHistory.sequence.asc(), OrderHistory.id.asc())
        with self._session() as db:
            total = db.scalar(
                select(func.count()).select_from(OrderHistory).where(OrderHistory.order_id == order_id)
            ) or 0
            rows = db.execute(
                select(OrderHistory)
                .where(OrderHistory.order_id == order_id)
                .order_by(*ordering)
                .offset((max(page, 1) - 1) * page_size)
                .limit(page_size)
            ).scalars().all()
            return [entry_from_row(r) for r in rows], total

    def get(self, entry_id: int) -> Optional[HistoryEntry]:
        with self._session() as db:
            row = db.get(OrderHistory, entry_id)
            return entry_from_row(row) if row is not None else None
