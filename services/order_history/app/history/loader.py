import logging
from sqlalchemy import Connection, select, text
from sqlalchemy.orm import Session, sessionmaker, selectinload
from pydantic import ValidationError

from app.core.config import settings
from app.db.models import Order, OrderItem
from app.db.session import INTERNAL_SESSION
from app.history.errors import MalformedSnapshot, SnapshotNotFound
from app.history.snapshots import (
    AdjustmentSnapshot, DeliveryInfoSnapshot, ModifierSnapshot, OrderItemSnapshot,
    OrderSnapshot, PizzaCustomizationSnapshot, TableRef, DELIVERY_FIELDS,
)

logger = logging.getLogger(__name__)

AGGREGATE_LOAD_OPTIONS = (
    selectinload(Order.items).selectinload(OrderItem.modifiers),
    selectinload(Order.items).selectinload(OrderItem.pizza_customizations),
    selectinload(Order.delivery_info),
    selectinload(Order.adjustments),
    selectinload(Order.table),
)


def _money(value) -> float:
    return float(value) if value is not None else 0.0


def snapshot_from_order(order: Order) -> OrderSnapshot:
    """Copy a fully loaded ``Order`` graph into an immutable snapshot."""
    try:
        table = None
        if order.table is not None:
            table = TableRef(id=order.table.id, name=order.table.name, area=order.table.area_name)
        elif order.table_id is not None:
            table = TableRef(id=order.table_id)

        delivery = None
        if order.delivery_info is not None:
            delivery = DeliveryInfoSnapshot(**{f: getattr(order.delivery_info, f) for f in DELIVERY_FIELDS})

        items = tuple(
            OrderItemSnapshot(
                id=it.id,
                product_id=it.product_id,
                product_name=it.product_name,
                variant_id=it.variant_id,
                variant_name=it.variant_name,
                quantity=it.quantity,
                base_price=_money(it.base_price),
                final_price=_money(it.final_price),
                preparation_status=it.preparation_status,
                preparation_notes=it.preparation_notes,
                modifiers=tuple(
                    ModifierSnapshot(id=m.modifier_id, name=m.name, price=_money(m.price))
                    for m in it.modifiers
                ),
                pizza_customizations=tuple(
                    PizzaCustomizationSnapshot(
                        customization_id=c.customization_id, name=c.name, half=c.half, action=c.action,
                    )
                    for c in it.pizza_customizations
                ),
            )
            for it in order.items
        )

        adjustments = tuple(
            AdjustmentSnapshot(
                id=a.id, name=a.name, is_percentage=bool(a.is_percentage),
                value=_money(a.value), amount=_money(a.amount),
            )
            for a in order.adjustments
        )

        return OrderSnapshot(
            id=order.id,
            order_type=order.order_type,
            order_status=order.order_status,
            notes=order.notes,
            table=table,
            customer_id=order.customer_id,
            scheduled_at=order.scheduled_at,
            estimated_delivery_time=order.estimated_delivery_time,
            is_from_whatsapp=bool(order.is_from_whatsapp),
            delivery_info=delivery,
            subtotal=_money(order.subtotal),
            total=_money(order.total),
            items=items,
            adjustments=adjustments,
        )
    except (ValidationError, TypeError, ValueError) as e:
        raise MalformedSnapshot(order.id, str(e)) from e


def statement_timeout_sql(dialect_name: str, seconds: float | None) -> str | None:
    """Server-side cap for a read on its own connection; only PostgreSQL has one."""
    if not seconds or dialect_name != "postgresql":
        return None
    return f"SET LOCAL statement_timeout = {max(1, int(seconds * 1000))}"


class SnapshotLoader:
    """
    Reads the whole order aggregate in one transaction on its own session.

    Because the loader never shares a session (or connection) with the writer,
    a read issued before a flush returns the last committed state and a read
    issued after commit returns the committed result. Passing the writer's
    ``connection`` instead reads inside its transaction: right after the final
    flush that is exactly the state about to be committed.

    Reads on the loader's own session also carry a server-side statement
    timeout, so a hung query gives its thread back instead of holding it until
    the driver returns.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        isolation_level: str | None = None,
        statement_timeout: float | None = settings.SNAPSHOT_TIMEOUT_SECONDS,
    ):
        self.session_factory = session_factory
        self.isolation_level = isolation_level or None
        self.statement_timeout = statement_timeout

    def _own_session(self) -> Session:
        db = self.session_factory(info={INTERNAL_SESSION: True})
        try:
            if self.isolation_level:
                conn = db.connection(execution_options={"isolation_level": self.isolation_level})
            else:
                conn = db.connection()
            sql = statement_timeout_sql(conn.dialect.name, self.statement_timeout)
            if sql:
                db.execute(text(sql))
        except Exception:
            db.close()
            raise
        return db

    def load(self, order_id: int, connection: Connection | None = None) -> OrderSnapshot:
        if connection is not None:
            # joins the writer's transaction without ending it on close
            db = Session(bind=connection, autoflush=False, info={INTERNAL_SESSION: True})
        else:
            db = self._own_session()
        try:
            order = db.execute(
                select(Order).options(*AGGREGATE_LOAD_OPTIONS).where(Order.id == order_id)
            ).scalar_one_or_none()
            if order is None:
                raise SnapshotNotFound(order_id)
            snapshot = snapshot_from_order(order)
            if connection is None:
                db.rollback()
            logger.debug("loaded snapshot of order %s (%d items)", order_id, len(snapshot.items))
            return snapshot
        finally:
            db.close()

    def affected_orders(self, model, criteria=None) -> set[int]:
        """Ids of the committed orders owning the ``model`` rows that match ``criteria``."""
        if model is Order:
            stmt = select(Order.id)
        elif hasattr(model, "order_id"):
            stmt = select(model.order_id)
        else:
            stmt = select(OrderItem.order_id).join(model, model.order_item_id == OrderItem.id)
        if criteria is not None:
            stmt = stmt.where(criteria)
        with self._own_session() as db:
            return set(db.scalars(stmt.distinct()))
