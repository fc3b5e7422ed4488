"""
Structural diff between two snapshots of the same order.

Pure functions only: nothing in this module performs I/O, so it can run on the
capture lanes, in tests, or on snapshots replayed from stored INSERT/DELETE
entries alike.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from app.history.snapshots import (
    AdjustmentChange, AdjustmentSetDiff, AdjustmentSnapshot, CustomizationsDiff,
    DeliveryInfoSnapshot, Diff, FieldChange, ItemDiff, ItemSetDiff, ModifiersDiff,
    OrderItemSnapshot, OrderSnapshot, TableChange, DELIVERY_FIELDS,
)

DEFAULT_EPSILON = 1e-6

ORDER_FIELDS: dict[str, Callable[[OrderSnapshot], Any]] = {
    "order_type": lambda o: o.order_type,
    "order_status": lambda o: o.order_status,
    "notes": lambda o: o.notes,
    "table_id": lambda o: o.table_id,
    "customer_id": lambda o: o.customer_id,
    "scheduled_at": lambda o: o.scheduled_at,
    "estimated_delivery_time": lambda o: o.estimated_delivery_time,
    "is_from_whatsapp": lambda o: o.is_from_whatsapp,
    "subtotal": lambda o: o.subtotal,
    "total": lambda o: o.total,
}

ITEM_FIELDS = (
    "quantity",
    "variant_id",
    "variant_name",
    "base_price",
    "final_price",
    "preparation_status",
    "preparation_notes",
)

ADJUSTMENT_FIELDS = ("name", "is_percentage", "value", "amount")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def values_equal(a: Any, b: Any, epsilon: float = DEFAULT_EPSILON) -> bool:
    """
    Equality used for every scalar the engine compares.

    - absent equals absent, but absent never equals ``""`` or ``0``
    - numbers (bools excluded) are equal within ``epsilon``
    - strings are equal after trimming surrounding whitespace
    - datetimes compare as instants, naive values being taken as UTC
    """
    if a is None or b is None:
        return a is None and b is None
    if _is_number(a) and _is_number(b):
        return abs(float(a) - float(b)) <= epsilon
    if isinstance(a, str) and isinstance(b, str):
        return a.strip() == b.strip()
    if isinstance(a, datetime) and isinstance(b, datetime):
        return _as_utc(a) == _as_utc(b)
    return a == b


def _compare(pairs: Iterable[tuple[str, Any, Any]], epsilon: float) -> dict[str, FieldChange]:
    return {
        name: FieldChange(before=before, after=after)
        for name, before, after in pairs
        if not values_equal(before, after, epsilon)
    }


def diff_order_fields(before: OrderSnapshot, after: OrderSnapshot, epsilon: float = DEFAULT_EPSILON) -> dict[str, FieldChange]:
    return _compare(((name, get(before), get(after)) for name, get in ORDER_FIELDS.items()), epsilon)


def diff_delivery_info(
    before: Optional[DeliveryInfoSnapshot],
    after: Optional[DeliveryInfoSnapshot],
    epsilon: float = DEFAULT_EPSILON,
) -> dict[str, FieldChange]:
    # a missing delivery object reads as every field absent
    before = before or DeliveryInfoSnapshot()
    after = after or DeliveryInfoSnapshot()
    return _compare(((f, getattr(before, f), getattr(after, f)) for f in DELIVERY_FIELDS), epsilon)


def diff_modifiers(before: OrderItemSnapshot, after: OrderItemSnapshot, epsilon: float = DEFAULT_EPSILON) -> ModifiersDiff:
    before_map = {m.id: m for m in before.modifiers}
    after_map = {m.id: m for m in after.modifiers}
    price_changed = {
        mod_id: FieldChange(before=before_map[mod_id].price, after=mod.price)
        for mod_id, mod in after_map.items()
        if mod_id in before_map and not values_equal(before_map[mod_id].price, mod.price, epsilon)
    }
    added = tuple(mod_id for mod_id in after_map if mod_id not in before_map)
    removed = tuple(mod_id for mod_id in before_map if mod_id not in after_map)
    names = {}
    for mod_id in (*added, *removed, *price_changed):
        mod = after_map.get(mod_id) or before_map[mod_id]
        if mod.name:
            names[mod_id] = mod.name
    return ModifiersDiff(added=added, removed=removed, price_changed=price_changed, names=names)


def diff_customizations(before: OrderItemSnapshot, after: OrderItemSnapshot) -> CustomizationsDiff:
    # (customization_id, half, action) is the only identity a customization has,
    # so a changed half or action is a remove of the old tuple plus an add
    before_map = {c.key: c for c in before.pizza_customizations}
    after_map = {c.key: c for c in after.pizza_customizations}
    return CustomizationsDiff(
        added=tuple(c for key, c in after_map.items() if key not in before_map),
        removed=tuple(c for key, c in before_map.items() if key not in after_map),
    )


def diff_item(before: OrderItemSnapshot, after: OrderItemSnapshot, epsilon: float = DEFAULT_EPSILON) -> ItemDiff:
    return ItemDiff(
        item_id=after.id,
        description=after.description,
        fields=_compare(((f, getattr(before, f), getattr(after, f)) for f in ITEM_FIELDS), epsilon),
        modifiers_diff=diff_modifiers(before, after, epsilon),
        customizations_diff=diff_customizations(before, after),
    )


def diff_items(
    before_items: Iterable[OrderItemSnapshot],
    after_items: Iterable[OrderItemSnapshot],
    epsilon: float = DEFAULT_EPSILON,
) -> ItemSetDiff:
    """Match items by id, never by position."""
    before_map = {it.id: it for it in before_items}
    after_map = {it.id: it for it in after_items}

    added, modified = [], []
    for item_id, item in after_map.items():
        previous = before_map.get(item_id)
        if previous is None or previous.product_id != item.product_id:
            # a different product under the same id is a substitution
            added.append(item)
            continue
        item_diff = diff_item(previous, item, epsilon)
        if not item_diff.is_empty:
            modified.append(item_diff)

    removed = [
        item for item_id, item in before_map.items()
        if item_id not in after_map or after_map[item_id].product_id != item.product_id
    ]
    return ItemSetDiff(added=tuple(added), removed=tuple(removed), modified=tuple(modified))


def diff_adjustments(
    before_adjustments: Iterable[AdjustmentSnapshot],
    after_adjustments: Iterable[AdjustmentSnapshot],
    epsilon: float = DEFAULT_EPSILON,
) -> AdjustmentSetDiff:
    before_map = {a.id: a for a in before_adjustments}
    after_map = {a.id: a for a in after_adjustments}
    modified = []
    for adj_id, adj in after_map.items():
        previous = before_map.get(adj_id)
        if previous is None:
            continue
        fields = _compare(((f, getattr(previous, f), getattr(adj, f)) for f in ADJUSTMENT_FIELDS), epsilon)
        if fields:
            modified.append(AdjustmentChange(adjustment_id=adj_id, name=adj.name, fields=fields))
    return AdjustmentSetDiff(
        added=tuple(a for adj_id, a in after_map.items() if adj_id not in before_map),
        removed=tuple(a for adj_id, a in before_map.items() if adj_id not in after_map),
        modified=tuple(modified),
    )


def diff_orders(before: OrderSnapshot, after: OrderSnapshot, epsilon: float = DEFAULT_EPSILON) -> Diff:
    if before.id != after.id:
        raise ValueError(f"cannot diff different orders ({before.id} vs {after.id})")
    fields = diff_order_fields(before, after, epsilon)
    return Diff(
        fields=fields,
        table=TableChange(before=before.table, after=after.table) if "table_id" in fields else None,
        delivery_info=diff_delivery_info(before.delivery_info, after.delivery_info, epsilon),
        items=diff_items(before.items, after.items, epsilon),
        adjustments=diff_adjustments(before.adjustments, after.adjustments, epsilon),
    )
