from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import (
    Integer, String, Text, DateTime, ForeignKey, BigInteger, Boolean, Numeric, Float, JSON,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime, timezone
from enum import Enum
from app.db.session import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderType(str, Enum):
    DINE_IN = "DINE_IN"
    TAKE_AWAY = "TAKE_AWAY"
    DELIVERY = "DELIVERY"

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    IN_PREPARATION = "IN_PREPARATION"
    READY = "READY"
    IN_DELIVERY = "IN_DELIVERY"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

class PreparationStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    READY = "READY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

class PizzaHalf(str, Enum):
    FULL = "FULL"
    HALF_1 = "HALF_1"
    HALF_2 = "HALF_2"

class CustomizationAction(str, Enum):
    ADD = "ADD"
    REMOVE = "REMOVE"


# --- Order aggregate (system of record, written by the order-management system) ---

class RestaurantTable(Base):
    __tablename__ = "tables"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(64))
    area_name: Mapped[str | None] = mapped_column(String(64), nullable=True)

class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_type: Mapped[str] = mapped_column(String(32), default=OrderType.DINE_IN.value)
    order_status: Mapped[str] = mapped_column(String(32), default=OrderStatus.PENDING.value)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    table_id: Mapped[int | None] = mapped_column(ForeignKey("tables.id"), nullable=True)
    customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_delivery_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_from_whatsapp: Mapped[bool] = mapped_column(Boolean, default=False)
    subtotal: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    total: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    table = relationship("RestaurantTable")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id")
    delivery_info = relationship("DeliveryInfo", back_populates="order", uselist=False, cascade="all, delete-orphan")
    adjustments = relationship("Adjustment", back_populates="order", cascade="all, delete-orphan", order_by="Adjustment.id")

    @property
    def root_order(self) -> "Order":
        return self

class DeliveryInfo(Base):
    __tablename__ = "delivery_info"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), unique=True)
    recipient_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recipient_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    full_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    street: Mapped[str | None] = mapped_column(String(255), nullable=True)
    number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    interior_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    neighborhood: Mapped[str | None] = mapped_column(String(120), nullable=True)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    state: Mapped[str | None] = mapped_column(String(120), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    country: Mapped[str | None] = mapped_column(String(64), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    order = relationship("Order", back_populates="delivery_info")

    @property
    def root_order(self) -> Order | None:
        return self.order

class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    product_id: Mapped[str] = mapped_column(String(64))
    product_name: Mapped[str] = mapped_column(String(255))
    variant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    variant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    base_price: Mapped[float] = mapped_column(Numeric(10, 2))
    final_price: Mapped[float] = mapped_column(Numeric(10, 2))
    preparation_status: Mapped[str] = mapped_column(String(32), default=PreparationStatus.PENDING.value)
    preparation_notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    order = relationship("Order", back_populates="items")
    modifiers = relationship("OrderItemModifier", back_populates="order_item", cascade="all, delete-orphan", order_by="OrderItemModifier.id")
    pizza_customizations = relationship("OrderItemPizzaCustomization", back_populates="order_item", cascade="all, delete-orphan", order_by="OrderItemPizzaCustomization.id")

    @property
    def root_order(self) -> Order | None:
        return self.order

class OrderItemModifier(Base):
    __tablename__ = "order_item_modifiers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_item_id: Mapped[int] = mapped_column(ForeignKey("order_items.id", ondelete="CASCADE"), index=True)
    modifier_id: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(255))
    price: Mapped[float] = mapped_column(Numeric(10, 2), default=0)

    order_item = relationship("OrderItem", back_populates="modifiers")

    @property
    def root_order(self) -> Order | None:
        return self.order_item.order if self.order_item is not None else None

class OrderItemPizzaCustomization(Base):
    __tablename__ = "order_item_pizza_customizations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_item_id: Mapped[int] = mapped_column(ForeignKey("order_items.id", ondelete="CASCADE"), index=True)
    customization_id: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(255))
    half: Mapped[str] = mapped_column(String(16), default=PizzaHalf.FULL.value)
    action: Mapped[str] = mapped_column(String(16), default=CustomizationAction.ADD.value)

    order_item = relationship("OrderItem", back_populates="pizza_customizations")

    @property
    def root_order(self) -> Order | None:
        return self.order_item.order if self.order_item is not None else None

class Adjustment(Base):
    __tablename__ = "adjustments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    is_percentage: Mapped[bool] = mapped_column(Boolean, default=False)
    value: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    amount: Mapped[float] = mapped_column(Numeric(10, 2), default=0)

    order = relationship("Order", back_populates="adjustments")

    @property
    def root_order(self) -> Order | None:
        return self.order


AGGREGATE_MODELS = (Order, DeliveryInfo, OrderItem, OrderItemModifier, OrderItemPizzaCustomization, Adjustment)


# --- Audit trail (append-only, owned by this service) ---

class OrderHistory(Base):
    __tablename__ = "order_history"
    __table_args__ = (UniqueConstraint("order_id", "sequence", name="uq_order_history_order_sequence"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    # no FK: entries outlive hard-deleted orders
    order_id: Mapped[int] = mapped_column(Integer, index=True)
    sequence: Mapped[int] = mapped_column(BigInteger)
    operation: Mapped[str] = mapped_column(String(16))
    changed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    payload: Mapped[dict] = mapped_column(JSON().with_variant(JSONB(), "postgresql"))
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
