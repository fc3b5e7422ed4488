"""
Value types of the order change history.

Everything here is a frozen pydantic model: snapshots are captured by value and
never point back at live ORM rows, and history payloads are a tagged union
discriminated by ``kind`` so consumers can match on the variant instead of
probing optional keys.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


# --- snapshots ---

class TableRef(FrozenModel):
    id: int
    name: Optional[str] = None
    area: Optional[str] = None

class DeliveryInfoSnapshot(FrozenModel):
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    full_address: Optional[str] = None
    delivery_instructions: Optional[str] = None
    street: Optional[str] = None
    number: Optional[str] = None
    interior_number: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

DELIVERY_FIELDS = tuple(DeliveryInfoSnapshot.model_fields)

class ModifierSnapshot(FrozenModel):
    id: str
    name: Optional[str] = None
    price: float = 0.0

class PizzaCustomizationSnapshot(FrozenModel):
    customization_id: str
    name: Optional[str] = None
    half: str = "FULL"
    action: str = "ADD"

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.customization_id, self.half, self.action)

class OrderItemSnapshot(FrozenModel):
    id: int
    product_id: str
    product_name: Optional[str] = None
    variant_id: Optional[str] = None
    variant_name: Optional[str] = None
    quantity: int = 1
    base_price: float = 0.0
    final_price: float = 0.0
    preparation_status: Optional[str] = None
    preparation_notes: Optional[str] = None
    modifiers: tuple[ModifierSnapshot, ...] = ()
    pizza_customizations: tuple[PizzaCustomizationSnapshot, ...] = ()

    @property
    def description(self) -> str:
        return describe_item(self.product_name or self.product_id, self.variant_name)

class AdjustmentSnapshot(FrozenModel):
    id: int
    name: Optional[str] = None
    is_percentage: bool = False
    value: float = 0.0
    amount: float = 0.0

class OrderSnapshot(FrozenModel):
    id: int
    order_type: Optional[str] = None
    order_status: Optional[str] = None
    notes: Optional[str] = None
    table: Optional[TableRef] = None
    customer_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None
    is_from_whatsapp: bool = False
    delivery_info: Optional[DeliveryInfoSnapshot] = None
    subtotal: float = 0.0
    total: float = 0.0
    items: tuple[OrderItemSnapshot, ...] = ()
    adjustments: tuple[AdjustmentSnapshot, ...] = ()

    @property
    def table_id(self) -> Optional[int]:
        return self.table.id if self.table is not None else None


def describe_item(product: str, variant: Optional[str] = None) -> str:
    return f"{product} ({variant})" if variant else product


# --- diffs ---

class FieldChange(FrozenModel):
    before: Any = None
    after: Any = None

class TableChange(FrozenModel):
    before: Optional[TableRef] = None
    after: Optional[TableRef] = None

class ModifiersDiff(FrozenModel):
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    price_changed: dict[str, FieldChange] = Field(default_factory=dict)
    # modifier id -> name, for every id above whose name is known
    names: dict[str, str] = Field(default_factory=dict)

    def name_of(self, modifier_id: str) -> str:
        return self.names.get(modifier_id) or modifier_id

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.price_changed)

class CustomizationsDiff(FrozenModel):
    added: tuple[PizzaCustomizationSnapshot, ...] = ()
    removed: tuple[PizzaCustomizationSnapshot, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed)

class ItemDiff(FrozenModel):
    item_id: int
    description: str
    fields: dict[str, FieldChange] = Field(default_factory=dict)
    modifiers_diff: ModifiersDiff = ModifiersDiff()
    customizations_diff: CustomizationsDiff = CustomizationsDiff()

    @property
    def is_empty(self) -> bool:
        return not self.fields and self.modifiers_diff.is_empty and self.customizations_diff.is_empty

class ItemSetDiff(FrozenModel):
    added: tuple[OrderItemSnapshot, ...] = ()
    removed: tuple[OrderItemSnapshot, ...] = ()
    modified: tuple[ItemDiff, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.modified)

class AdjustmentChange(FrozenModel):
    adjustment_id: int
    name: Optional[str] = None
    fields: dict[str, FieldChange] = Field(default_factory=dict)

class AdjustmentSetDiff(FrozenModel):
    added: tuple[AdjustmentSnapshot, ...] = ()
    removed: tuple[AdjustmentSnapshot, ...] = ()
    modified: tuple[AdjustmentChange, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.modified)

class Diff(FrozenModel):
    fields: dict[str, FieldChange] = Field(default_factory=dict)
    # full table references whenever fields["table_id"] changed
    table: Optional[TableChange] = None
    delivery_info: dict[str, FieldChange] = Field(default_factory=dict)
    items: ItemSetDiff = ItemSetDiff()
    adjustments: AdjustmentSetDiff = AdjustmentSetDiff()

    @property
    def has_order_changes(self) -> bool:
        """Header, delivery or adjustment changes, i.e. anything but the item set."""
        return bool(self.fields or self.delivery_info) or not self.adjustments.is_empty

    @property
    def is_empty(self) -> bool:
        return not self.has_order_changes and self.items.is_empty


# --- history payloads ---

class HistoryOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    BATCH = "BATCH"


class ItemInserted(FrozenModel):
    operation: Literal["INSERT"] = "INSERT"
    item: OrderItemSnapshot

    @property
    def item_description(self) -> str:
        return self.item.description

class ItemUpdated(FrozenModel):
    operation: Literal["UPDATE"] = "UPDATE"
    item_diff: ItemDiff

    @property
    def item_description(self) -> str:
        return self.item_diff.description

class ItemDeleted(FrozenModel):
    operation: Literal["DELETE"] = "DELETE"
    item: OrderItemSnapshot

    @property
    def item_description(self) -> str:
        return self.item.description

ItemOperation = Annotated[Union[ItemInserted, ItemUpdated, ItemDeleted], Field(discriminator="operation")]

class SnapshotPayload(FrozenModel):
    kind: Literal["snapshot"] = "snapshot"
    snapshot: OrderSnapshot
    summary: str = ""

class DiffPayload(FrozenModel):
    kind: Literal["diff"] = "diff"
    diff: Diff
    summary: str = ""

class BatchPayload(FrozenModel):
    kind: Literal["batch"] = "batch"
    operations: tuple[ItemOperation, ...]
    order_changes: Optional[Diff] = None
    summary: str = ""

class PartialPayload(FrozenModel):
    kind: Literal["partial"] = "partial"
    snapshot: OrderSnapshot
    missing: Literal["before", "after"]

HistoryPayload = Annotated[
    Union[SnapshotPayload, DiffPayload, BatchPayload, PartialPayload],
    Field(discriminator="kind"),
]


class HistoryEntryDraft(FrozenModel):
    """A history entry before the store has assigned its id and sequence."""
    order_id: int
    operation: Literal["INSERT", "UPDATE", "DELETE", "BATCH"]
    changed_by: Optional[str] = None
    changed_at: datetime
    payload: HistoryPayload

class HistoryEntry(HistoryEntryDraft):
    id: int
    sequence: int
