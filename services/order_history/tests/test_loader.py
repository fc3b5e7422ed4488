from sqlalchemy import select

from app.db.models import Order, OrderItem, OrderItemModifier
from app.history.loader import statement_timeout_sql


def make_order(db, notes=None):
    order = Order(order_type="DINE_IN", order_status="PENDING", notes=notes)
    order.items = [
        OrderItem(product_id="P-PIZZA", product_name="Pizza", quantity=1, base_price=12, final_price=12,
                  modifiers=[OrderItemModifier(modifier_id="M1", name="Bacon", price=1)]),
    ]
    db.add(order)
    db.commit()
    return order


def test_statement_timeout_only_on_postgresql():
    assert statement_timeout_sql("postgresql", 5) == "SET LOCAL statement_timeout = 5000"
    assert statement_timeout_sql("postgresql", 0.0001) == "SET LOCAL statement_timeout = 1"
    assert statement_timeout_sql("sqlite", 5) is None
    assert statement_timeout_sql("postgresql", None) is None


def test_load_reads_committed_aggregate(db, loader):
    order = make_order(db, notes="window seat")
    snapshot = loader.load(order.id)
    assert snapshot.notes == "window seat"
    assert snapshot.items[0].modifiers[0].name == "Bacon"


def test_affected_orders_by_table(db, loader):
    first, second = make_order(db, notes="a"), make_order(db, notes="b")

    assert loader.affected_orders(Order, Order.notes == "b") == {second.id}
    assert loader.affected_orders(OrderItem) == {first.id, second.id}

    modifier_id = db.scalar(
        select(OrderItemModifier.id).join(OrderItem).where(OrderItem.order_id == first.id)
    )
    assert loader.affected_orders(OrderItemModifier, OrderItemModifier.id == modifier_id) == {first.id}
