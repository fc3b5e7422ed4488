"""
Display models for history entries.

``format_entry`` is pure: it never touches the database and only reads the
entry it is given. Labels and value formatting live in the lookup tables below.
"""
from datetime import datetime
from typing import Any, Iterable, Literal, Optional

from app.core.config import settings
from app.history.snapshots import (
    BatchPayload, CustomizationsDiff, Diff, DiffPayload, FieldChange, FrozenModel, HistoryEntry,
    ItemDeleted, ItemDiff, ItemInserted, ItemUpdated, ModifiersDiff, OrderSnapshot, PartialPayload,
    PizzaCustomizationSnapshot, SnapshotPayload, TableChange, TableRef,
)

FIELD_LABELS = {
    "order_type": "Order type",
    "order_status": "Order status",
    "notes": "Notes",
    "table_id": "Table",
    "customer_id": "Customer",
    "scheduled_at": "Scheduled for",
    "estimated_delivery_time": "Estimated delivery time",
    "is_from_whatsapp": "From WhatsApp",
    "subtotal": "Subtotal",
    "total": "Total",
    "recipient_name": "Recipient name",
    "recipient_phone": "Recipient phone",
    "full_address": "Address",
    "delivery_instructions": "Delivery instructions",
    "street": "Street",
    "number": "Number",
    "interior_number": "Interior number",
    "neighborhood": "Neighborhood",
    "city": "City",
    "state": "State",
    "zip_code": "ZIP code",
    "country": "Country",
    "latitude": "Latitude",
    "longitude": "Longitude",
    "quantity": "Quantity",
    "variant_id": "Variant",
    "variant_name": "Variant name",
    "base_price": "Unit price",
    "final_price": "Total price",
    "preparation_status": "Preparation status",
    "preparation_notes": "Preparation notes",
    "modifiers_added": "Modifiers added",
    "modifiers_removed": "Modifiers removed",
    "customizations_added": "Customizations added",
    "customizations_removed": "Customizations removed",
    "name": "Name",
    "is_percentage": "Percentage",
    "value": "Value",
    "amount": "Amount",
    "description": "Description",
}

ENUM_LABELS = {
    "order_type": {
        "DINE_IN": "Dine in",
        "TAKE_AWAY": "Take away",
        "DELIVERY": "Delivery",
    },
    "order_status": {
        "PENDING": "Pending",
        "IN_PROGRESS": "In progress",
        "IN_PREPARATION": "In preparation",
        "READY": "Ready",
        "IN_DELIVERY": "Out for delivery",
        "DELIVERED": "Delivered",
        "COMPLETED": "Completed",
        "CANCELLED": "Cancelled",
    },
    "preparation_status": {
        "PENDING": "Pending",
        "IN_PROGRESS": "In preparation",
        "READY": "Ready",
        "DELIVERED": "Delivered",
        "CANCELLED": "Cancelled",
    },
    "half": {
        "FULL": "whole",
        "HALF_1": "half 1",
        "HALF_2": "half 2",
    },
    "action": {
        "ADD": "add",
        "REMOVE": "remove",
    },
}

CURRENCY_FIELDS = {"subtotal", "total", "base_price", "final_price", "amount", "price"}
DATE_FIELDS = {"scheduled_at", "estimated_delivery_time"}
BOOL_FIELDS = {"is_from_whatsapp", "is_percentage"}
LONG_TEXT_FIELDS = {"notes", "preparation_notes", "full_address", "delivery_instructions", "description"}

# item fields shown for UPDATE sub-operations of a batch; prices stay in the stored diff only
BATCH_ITEM_FIELDS = ("quantity", "preparation_notes", "preparation_status")

ORDER_OPERATION_LABELS = {
    "INSERT": "Order created",
    "UPDATE": "Order modified",
    "DELETE": "Order deleted",
    "BATCH": "Multiple changes",
}
ITEM_OPERATION_LABELS = {
    "INSERT": "Item added",
    "UPDATE": "Item modified",
    "DELETE": "Item removed",
}

ABSENT = "-"


class ChangeLine(FrozenModel):
    field: str
    label: str
    before: str
    after: str
    layout: Literal["inline", "stacked"] = "inline"

class DisplayOperation(FrozenModel):
    operation: str
    label: str
    description: str
    changes: tuple[ChangeLine, ...] = ()

class DisplayEntry(FrozenModel):
    id: int
    order_id: int
    sequence: int
    operation: str
    title: str
    changed_by: Optional[str] = None
    changed_at: str
    summary: str = ""
    changes: tuple[ChangeLine, ...] = ()
    operations: tuple[DisplayOperation, ...] = ()
    items: tuple[str, ...] = ()
    notice: Optional[str] = None


def field_label(field: str) -> str:
    return FIELD_LABELS.get(field, field.replace("_", " ").capitalize())


def format_money(value: Any) -> str:
    try:
        return f"{settings.CURRENCY_SYMBOL}{float(value):.2f}"
    except (TypeError, ValueError):
        return str(value)


def format_date(value: Any) -> str:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    if isinstance(value, datetime):
        return value.strftime(settings.DISPLAY_DATE_FORMAT)
    return str(value)


def format_value(field: str, value: Any) -> str:
    if value is None:
        return ABSENT
    if field in ENUM_LABELS:
        return ENUM_LABELS[field].get(str(value), str(value))
    if field in CURRENCY_FIELDS:
        return format_money(value)
    if field in DATE_FIELDS:
        return format_date(value)
    if field in BOOL_FIELDS:
        return "Yes" if value else "No"
    if field == "table_id":
        if isinstance(value, TableRef):
            return value.name or f"Table {value.id}"
        return f"Table {value}"
    return str(value)


def change_line(field: str, before: str, after: str) -> ChangeLine:
    stacked = field in LONG_TEXT_FIELDS and max(len(before), len(after)) > settings.LONG_TEXT_THRESHOLD
    return ChangeLine(
        field=field, label=field_label(field), before=before, after=after,
        layout="stacked" if stacked else "inline",
    )


def field_lines(fields: dict[str, FieldChange], only: Optional[Iterable[str]] = None) -> list[ChangeLine]:
    names = [f for f in fields if only is None or f in only]
    return [change_line(f, format_value(f, fields[f].before), format_value(f, fields[f].after)) for f in names]


def table_line(change: TableChange) -> ChangeLine:
    return change_line("table_id", format_value("table_id", change.before), format_value("table_id", change.after))


def _joined(values: Iterable[str]) -> str:
    return ", ".join(values) or ABSENT


def describe_customization(c: PizzaCustomizationSnapshot) -> str:
    half = ENUM_LABELS["half"].get(c.half, c.half)
    action = ENUM_LABELS["action"].get(c.action, c.action)
    return f"{c.name or c.customization_id} ({half}, {action})"


def modifier_lines(diff: ModifiersDiff, with_prices: bool = True) -> list[ChangeLine]:
    lines = []
    if diff.added:
        lines.append(change_line("modifiers_added", ABSENT, _joined(map(diff.name_of, diff.added))))
    if diff.removed:
        lines.append(change_line("modifiers_removed", _joined(map(diff.name_of, diff.removed)), ABSENT))
    if with_prices:
        for modifier_id, change in diff.price_changed.items():
            lines.append(ChangeLine(
                field="modifier_price", label=f"{diff.name_of(modifier_id)} price",
                before=format_money(change.before), after=format_money(change.after),
            ))
    return lines


def customization_lines(diff: CustomizationsDiff) -> list[ChangeLine]:
    lines = []
    if diff.added:
        lines.append(change_line("customizations_added", ABSENT, _joined(map(describe_customization, diff.added))))
    if diff.removed:
        lines.append(change_line("customizations_removed", _joined(map(describe_customization, diff.removed)), ABSENT))
    return lines


def item_diff_lines(item: ItemDiff, allow_list: Optional[Iterable[str]] = None) -> list[ChangeLine]:
    lines = field_lines(item.fields, allow_list)
    lines += modifier_lines(item.modifiers_diff, with_prices=allow_list is None)
    lines += customization_lines(item.customizations_diff)
    return lines


def diff_lines(diff: Diff) -> tuple[list[ChangeLine], list[DisplayOperation]]:
    """Order-level lines and one display operation per item or adjustment change."""
    lines = field_lines(diff.fields)
    if diff.table is not None:
        lines = [table_line(diff.table) if line.field == "table_id" else line for line in lines]
    lines += field_lines(diff.delivery_info)
    operations = []
    for item in diff.items.added:
        operations.append(DisplayOperation(operation="INSERT", label=ITEM_OPERATION_LABELS["INSERT"],
                                           description=item_line(item)))
    for item_diff in diff.items.modified:
        operations.append(DisplayOperation(operation="UPDATE", label=ITEM_OPERATION_LABELS["UPDATE"],
                                           description=item_diff.description,
                                           changes=tuple(item_diff_lines(item_diff))))
    for item in diff.items.removed:
        operations.append(DisplayOperation(operation="DELETE", label=ITEM_OPERATION_LABELS["DELETE"],
                                           description=item_line(item)))
    for adj in diff.adjustments.added:
        operations.append(DisplayOperation(operation="INSERT", label="Adjustment added",
                                           description=f"{adj.name or adj.id}: {format_money(adj.amount)}"))
    for change in diff.adjustments.modified:
        operations.append(DisplayOperation(operation="UPDATE", label="Adjustment modified",
                                           description=change.name or str(change.adjustment_id),
                                           changes=tuple(field_lines(change.fields))))
    for adj in diff.adjustments.removed:
        operations.append(DisplayOperation(operation="DELETE", label="Adjustment removed",
                                           description=f"{adj.name or adj.id}: {format_money(adj.amount)}"))
    return lines, operations


def item_line(item) -> str:
    return f"{item.quantity}x {item.description}"


def snapshot_items(snapshot: OrderSnapshot) -> tuple[str, ...]:
    return tuple(item_line(it) for it in snapshot.items)


def batch_operations(payload: BatchPayload) -> list[DisplayOperation]:
    operations = []
    for op in payload.operations:
        label = ITEM_OPERATION_LABELS[op.operation]
        if isinstance(op, ItemUpdated):
            changes = item_diff_lines(op.item_diff, BATCH_ITEM_FIELDS)
            operations.append(DisplayOperation(operation=op.operation, label=label,
                                               description=op.item_description, changes=tuple(changes)))
        elif isinstance(op, (ItemInserted, ItemDeleted)):
            operations.append(DisplayOperation(operation=op.operation, label=label, description=item_line(op.item)))
    return operations


def format_entry(entry: HistoryEntry) -> DisplayEntry:
    payload = entry.payload
    fields = dict(
        id=entry.id,
        order_id=entry.order_id,
        sequence=entry.sequence,
        operation=entry.operation,
        title=ORDER_OPERATION_LABELS.get(entry.operation, entry.operation),
        changed_by=entry.changed_by,
        changed_at=format_date(entry.changed_at),
    )

    if isinstance(payload, SnapshotPayload):
        return DisplayEntry(**fields, summary=payload.summary, items=snapshot_items(payload.snapshot))

    if isinstance(payload, DiffPayload):
        lines, operations = diff_lines(payload.diff)
        return DisplayEntry(**fields, summary=payload.summary, changes=tuple(lines), operations=tuple(operations))

    if isinstance(payload, BatchPayload):
        lines = []
        if payload.order_changes is not None:
            lines, adjustments = diff_lines(payload.order_changes)
            operations = batch_operations(payload) + adjustments
        else:
            operations = batch_operations(payload)
        return DisplayEntry(**fields, summary=payload.summary, changes=tuple(lines), operations=tuple(operations))

    if isinstance(payload, PartialPayload):
        if payload.missing == "before":
            notice = "Previous state unavailable; showing the order after the change."
        else:
            notice = "The order no longer exists; showing its state before the change."
        return DisplayEntry(**fields, items=snapshot_items(payload.snapshot), notice=notice)

    raise TypeError(f"unsupported history payload: {type(payload).__name__}")
