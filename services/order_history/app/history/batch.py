"""
Collapse the elementary changes of one logical write into one history entry.

A user editing an order touches several items in one transaction; an audit
reader sees that as one event. More than one item operation becomes a single
BATCH entry, anything smaller stays a plain UPDATE.
"""
from datetime import datetime
from typing import Optional, Sequence

from app.history.snapshots import (
    BatchPayload, Diff, DiffPayload, HistoryEntryDraft, HistoryOperation, ItemDeleted, ItemInserted,
    ItemOperation, ItemUpdated, OrderSnapshot,
)


def item_operations(diff: Diff) -> list[ItemOperation]:
    """Elementary per-item operations of a diff: inserts, then updates, then deletes."""
    return (
        [ItemInserted(item=item) for item in diff.items.added]
        + [ItemUpdated(item_diff=item_diff) for item_diff in diff.items.modified]
        + [ItemDeleted(item=item) for item in diff.items.removed]
    )


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def summarize(diff: Diff) -> str:
    parts = []
    order_fields = list(diff.fields) + list(diff.delivery_info)
    if order_fields:
        parts.append("Order: " + ", ".join(order_fields))
    adjustments = diff.adjustments
    if not adjustments.is_empty:
        parts.append(_plural(len(adjustments.added) + len(adjustments.removed) + len(adjustments.modified), "adjustment") + " changed")
    item_parts = []
    if diff.items.added:
        item_parts.append(f"{len(diff.items.added)} added")
    if diff.items.modified:
        item_parts.append(f"{len(diff.items.modified)} modified")
    if diff.items.removed:
        item_parts.append(f"{len(diff.items.removed)} removed")
    if item_parts:
        parts.append("Items: " + ", ".join(item_parts))
    return " | ".join(parts)


def summarize_snapshot(snapshot: OrderSnapshot, created: bool = True) -> str:
    verb = "created" if created else "deleted"
    return f"Order {verb} with {_plural(len(snapshot.items), 'item')}"


def aggregate(
    order_diff: Diff,
    item_ops: Optional[Sequence[ItemOperation]] = None,
    *,
    order_id: int,
    changed_by: Optional[str],
    changed_at: datetime,
) -> Optional[HistoryEntryDraft]:
    """
    Build the one history entry describing ``order_diff``.

    Returns ``None`` when nothing changed, an UPDATE carrying the whole diff
    when at most one item changed, and a BATCH otherwise. Header, delivery and
    adjustment changes that come with a batch are kept in ``order_changes``.
    """
    if item_ops is None:
        item_ops = item_operations(order_diff)
    if order_diff.is_empty and not item_ops:
        return None

    summary = summarize(order_diff)
    if len(item_ops) <= 1:
        return HistoryEntryDraft(
            order_id=order_id,
            operation=HistoryOperation.UPDATE.value,
            changed_by=changed_by,
            changed_at=changed_at,
            payload=DiffPayload(diff=order_diff, summary=summary),
        )

    order_changes = None
    if order_diff.has_order_changes:
        order_changes = Diff(
            fields=order_diff.fields,
            delivery_info=order_diff.delivery_info,
            adjustments=order_diff.adjustments,
        )
    return HistoryEntryDraft(
        order_id=order_id,
        operation=HistoryOperation.BATCH.value,
        changed_by=changed_by,
        changed_at=changed_at,
        payload=BatchPayload(operations=tuple(item_ops), order_changes=order_changes, summary=summary),
    )
