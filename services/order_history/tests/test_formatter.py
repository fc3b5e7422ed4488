from datetime import datetime, timezone

from app.history.formatter import format_entry, format_value
from app.history.snapshots import (
    BatchPayload, Diff, DiffPayload, FieldChange, HistoryEntry, ItemDeleted, ItemDiff, ItemInserted,
    ItemSetDiff, ItemUpdated, ModifiersDiff, OrderItemSnapshot, OrderSnapshot, PartialPayload,
    PizzaCustomizationSnapshot, CustomizationsDiff, SnapshotPayload, TableChange, TableRef,
)

AT = datetime(2026, 10, 19, 18, 45, tzinfo=timezone.utc)


def entry(operation, payload, **kw):
    return HistoryEntry(id=1, order_id=9, sequence=1, operation=operation, changed_by="u-7",
                        changed_at=AT, payload=payload, **kw)


def item(item_id=1, **kw):
    kw.setdefault("product_name", "Pizza")
    return OrderItemSnapshot(id=item_id, product_id="P-PIZZA", **kw)


class TestValues:
    def test_currency(self):
        assert format_value("total", 12.5) == "$12.50"

    def test_enum_labels(self):
        assert format_value("order_status", "IN_PREPARATION") == "In preparation"
        assert format_value("order_type", "TAKE_AWAY") == "Take away"
        assert format_value("preparation_status", "UNKNOWN") == "UNKNOWN"

    def test_absent_and_bool(self):
        assert format_value("notes", None) == "-"
        assert format_value("is_from_whatsapp", True) == "Yes"

    def test_dates_from_stored_strings(self):
        assert format_value("scheduled_at", "2026-10-19T20:00:00+00:00") == "19/10/2026 20:00"

    def test_table(self):
        assert format_value("table_id", 4) == "Table 4"
        assert format_value("table_id", TableRef(id=4, name="Terrace 4")) == "Terrace 4"
        assert format_value("table_id", TableRef(id=4)) == "Table 4"


class TestUpdate:
    def test_header_change_is_inline(self):
        diff = Diff(fields={"order_status": FieldChange(before="PENDING", after="READY")})
        display = format_entry(entry("UPDATE", DiffPayload(diff=diff, summary="Order: order_status")))
        assert display.title == "Order modified"
        assert display.changed_at == "19/10/2026 18:45"
        (line,) = display.changes
        assert (line.label, line.before, line.after, line.layout) == ("Order status", "Pending", "Ready", "inline")

    def test_table_move_shows_table_names(self):
        diff = Diff(
            fields={"table_id": FieldChange(before=4, after=9)},
            table=TableChange(before=TableRef(id=4, name="Terrace 4"), after=TableRef(id=9)),
        )
        (line,) = format_entry(entry("UPDATE", DiffPayload(diff=diff))).changes
        assert (line.label, line.before, line.after) == ("Table", "Terrace 4", "Table 9")

    def test_modifiers_shown_by_name(self):
        item_diff = ItemDiff(item_id=1, description="Pizza", modifiers_diff=ModifiersDiff(
            added=("M2",), removed=("M9",), price_changed={"M1": FieldChange(before=1.0, after=1.5)},
            names={"M2": "Olives", "M1": "Bacon"},
        ))
        (op,) = format_entry(entry("UPDATE", DiffPayload(diff=Diff(items=ItemSetDiff(modified=(item_diff,)))))).operations
        assert [(c.label, c.before, c.after) for c in op.changes] == [
            ("Modifiers added", "-", "Olives"),
            ("Modifiers removed", "M9", "-"),
            ("Bacon price", "$1.00", "$1.50"),
        ]

    def test_long_text_is_stacked(self):
        long_note = "Please ring the bell twice and leave it with the doorman"
        diff = Diff(fields={"notes": FieldChange(before="short", after=long_note)})
        (line,) = format_entry(entry("UPDATE", DiffPayload(diff=diff))).changes
        assert line.layout == "stacked"
        assert line.after == long_note

    def test_top_level_update_shows_prices(self):
        item_diff = ItemDiff(item_id=1, description="Pizza", fields={
            "quantity": FieldChange(before=1, after=2),
            "final_price": FieldChange(before=10.0, after=20.0),
        })
        diff = Diff(items=ItemSetDiff(modified=(item_diff,)))
        (op,) = format_entry(entry("UPDATE", DiffPayload(diff=diff))).operations
        assert op.label == "Item modified"
        assert [c.field for c in op.changes] == ["quantity", "final_price"]
        assert op.changes[1].after == "$20.00"


class TestBatch:
    def test_sub_operations_use_allow_list(self):
        updated = ItemDiff(
            item_id=3, description="Pizza (Large)",
            fields={
                "quantity": FieldChange(before=1, after=2),
                "final_price": FieldChange(before=12.0, after=24.0),
                "preparation_notes": FieldChange(before=None, after="well done"),
            },
            modifiers_diff=ModifiersDiff(added=("M2",), price_changed={"M1": FieldChange(before=1.0, after=1.5)}),
            customizations_diff=CustomizationsDiff(added=(
                PizzaCustomizationSnapshot(customization_id="C1", name="Pepperoni", half="HALF_1", action="ADD"),
            )),
        )
        payload = BatchPayload(operations=(
            ItemInserted(item=item(1, quantity=2)),
            ItemUpdated(item_diff=updated),
            ItemDeleted(item=item(2, product_name="Soda")),
        ), summary="Items: 1 added, 1 modified, 1 removed")
        display = format_entry(entry("BATCH", payload))

        assert display.title == "Multiple changes"
        assert [op.label for op in display.operations] == ["Item added", "Item modified", "Item removed"]
        assert display.operations[0].description == "2x Pizza"
        changes = display.operations[1].changes
        assert [c.field for c in changes] == [
            "quantity", "preparation_notes", "modifiers_added", "customizations_added",
        ]
        assert changes[3].after == "Pepperoni (half 1, add)"

    def test_batch_with_order_changes(self):
        payload = BatchPayload(
            operations=(ItemInserted(item=item(1)), ItemDeleted(item=item(2))),
            order_changes=Diff(fields={"total": FieldChange(before=10.0, after=0.0)}),
        )
        display = format_entry(entry("BATCH", payload))
        assert [(c.field, c.before, c.after) for c in display.changes] == [("total", "$10.00", "$0.00")]


class TestSnapshots:
    def test_insert_lists_items(self):
        snapshot = OrderSnapshot(id=9, items=(item(1, quantity=2, variant_name="Large"),))
        display = format_entry(entry("INSERT", SnapshotPayload(snapshot=snapshot, summary="Order created with 1 item")))
        assert display.title == "Order created"
        assert display.items == ("2x Pizza (Large)",)
        assert display.summary == "Order created with 1 item"

    def test_partial_has_notice(self):
        display = format_entry(entry("UPDATE", PartialPayload(snapshot=OrderSnapshot(id=9), missing="before")))
        assert display.notice.startswith("Previous state unavailable")
