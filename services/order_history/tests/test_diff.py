"""
Tests for the structural order diff.

Covers header fields, delivery info, the item set (identity, substitution,
modifiers, pizza customizations) and adjustments.
"""
import pytest

from app.history.diff import diff_items, diff_orders, values_equal
from app.history.snapshots import (
    AdjustmentSnapshot, DeliveryInfoSnapshot, FieldChange, ModifierSnapshot, OrderItemSnapshot,
    OrderSnapshot, PizzaCustomizationSnapshot, TableRef,
)


def make_item(item_id=1, product_id="P-PIZZA", **kw):
    kw.setdefault("product_name", "Pizza")
    kw.setdefault("quantity", 1)
    kw.setdefault("base_price", 10.0)
    kw.setdefault("final_price", 10.0)
    return OrderItemSnapshot(id=item_id, product_id=product_id, **kw)


def make_order(*items, **kw):
    kw.setdefault("id", 7)
    kw.setdefault("order_type", "DINE_IN")
    kw.setdefault("order_status", "PENDING")
    return OrderSnapshot(items=tuple(items), **kw)


# ── equality rules ───────────────────────────────────────────────────

class TestValuesEqual:
    def test_absent_equals_absent(self):
        assert values_equal(None, None)

    def test_absent_is_not_empty_or_zero(self):
        assert not values_equal(None, "")
        assert not values_equal(None, 0)
        assert not values_equal("", None)

    def test_numbers_within_epsilon(self):
        assert values_equal(10.0, 10.0000001)
        assert not values_equal(10.0, 10.01)

    def test_strings_trimmed(self):
        assert values_equal("extra cheese ", "extra cheese")
        assert not values_equal("Extra cheese", "extra cheese")

    def test_bool_is_not_a_number(self):
        assert not values_equal(True, 1.0000001)


# ── header and delivery ──────────────────────────────────────────────

class TestOrderFields:
    def test_identical_snapshots_give_empty_diff(self):
        before = make_order(make_item(1), make_item(2, "P-SODA", product_name="Soda"), notes="window seat")
        after = make_order(make_item(1), make_item(2, "P-SODA", product_name="Soda"), notes="window seat")
        diff = diff_orders(before, after)
        assert diff.is_empty
        assert diff.fields == {}
        assert diff.delivery_info == {}
        assert diff.items.is_empty

    def test_changed_status_reported_with_both_values(self):
        diff = diff_orders(make_order(order_status="PENDING"), make_order(order_status="READY"))
        assert diff.fields == {"order_status": FieldChange(before="PENDING", after="READY")}

    def test_price_below_epsilon_not_reported(self):
        diff = diff_orders(make_order(total=25.5), make_order(total=25.5 + 1e-9))
        assert "total" not in diff.fields

    def test_price_above_epsilon_reported_exactly(self):
        diff = diff_orders(make_order(total=25.5), make_order(total=26.0))
        assert diff.fields["total"] == FieldChange(before=25.5, after=26.0)

    def test_notes_cleared_to_empty_string_is_a_change(self):
        diff = diff_orders(make_order(notes=None), make_order(notes=""))
        assert diff.fields["notes"] == FieldChange(before=None, after="")

    def test_different_orders_rejected(self):
        with pytest.raises(ValueError):
            diff_orders(make_order(id=1), make_order(id=2))

    def test_table_move_keeps_both_tables(self):
        before = make_order(table=TableRef(id=4, name="Terrace 4"))
        after = make_order(table=TableRef(id=9, name="Bar 9"))
        diff = diff_orders(before, after)
        assert diff.fields == {"table_id": FieldChange(before=4, after=9)}
        assert diff.table.before.name == "Terrace 4"
        assert diff.table.after.name == "Bar 9"

    def test_unchanged_table_has_no_table_change(self):
        table = TableRef(id=4, name="Terrace 4")
        assert diff_orders(make_order(table=table), make_order(table=table, notes="x")).table is None

    def test_delivery_added(self):
        """No delivery info before, a phone number after."""
        after = make_order(delivery_info=DeliveryInfoSnapshot(recipient_phone="555-0100"))
        diff = diff_orders(make_order(), after)
        assert diff.delivery_info == {"recipient_phone": FieldChange(before=None, after="555-0100")}
        assert diff.fields == {}

    def test_delivery_removed_reports_every_set_field(self):
        before = make_order(delivery_info=DeliveryInfoSnapshot(recipient_name="Ana", city="Mérida"))
        diff = diff_orders(before, make_order())
        assert set(diff.delivery_info) == {"recipient_name", "city"}
        assert diff.delivery_info["city"].after is None


# ── items ────────────────────────────────────────────────────────────

class TestItems:
    def test_reordering_is_not_a_change(self):
        a, b, c = make_item(1), make_item(2, quantity=3), make_item(3, "P-SODA")
        diff = diff_orders(make_order(a, b, c), make_order(c, a, b))
        assert diff.items.is_empty

    def test_partitions_are_disjoint(self):
        before = [make_item(1), make_item(2), make_item(3)]
        after = [make_item(2, quantity=2), make_item(3), make_item(4)]
        items = diff_items(before, after)
        added = {it.id for it in items.added}
        removed = {it.id for it in items.removed}
        modified = {d.item_id for d in items.modified}
        assert added == {4}
        assert removed == {1}
        assert modified == {2}
        assert not (added & removed) and not (added & modified) and not (removed & modified)

    def test_unchanged_item_never_listed_as_modified(self):
        items = diff_items([make_item(1), make_item(2)], [make_item(1), make_item(2, quantity=5)])
        assert [d.item_id for d in items.modified] == [2]
        assert items.modified[0].fields == {"quantity": FieldChange(before=1, after=5)}

    def test_product_substitution_is_remove_plus_add(self):
        before = make_item(1, "P-PIZZA")
        after = make_item(1, "P-CALZONE", product_name="Calzone")
        items = diff_items([before], [after])
        assert items.modified == ()
        assert items.added == (after,)
        assert items.removed == (before,)

    def test_added_modifier(self):
        """M2 added next to M1; quantity untouched."""
        before = make_item(1, quantity=2, modifiers=(ModifierSnapshot(id="M1", name="Bacon"),))
        after = make_item(1, quantity=2, modifiers=(
            ModifierSnapshot(id="M1", name="Bacon"), ModifierSnapshot(id="M2", name="Olives"),
        ))
        items = diff_items([before], [after])
        (item_diff,) = items.modified
        assert item_diff.modifiers_diff.added == ("M2",)
        assert item_diff.modifiers_diff.removed == ()
        assert "quantity" not in item_diff.fields
        assert item_diff.modifiers_diff.name_of("M2") == "Olives"

    def test_modifier_price_change(self):
        before = make_item(1, modifiers=(ModifierSnapshot(id="M1", price=1.5),))
        after = make_item(1, modifiers=(ModifierSnapshot(id="M1", price=2.0),))
        (item_diff,) = diff_items([before], [after]).modified
        assert item_diff.modifiers_diff.price_changed == {"M1": FieldChange(before=1.5, after=2.0)}
        assert item_diff.modifiers_diff.name_of("M1") == "M1"

    def test_removed_modifier_keeps_its_name(self):
        before = make_item(1, modifiers=(ModifierSnapshot(id="M3", name="Extra cheese"),))
        (item_diff,) = diff_items([before], [make_item(1)]).modified
        assert item_diff.modifiers_diff.removed == ("M3",)
        assert item_diff.modifiers_diff.names == {"M3": "Extra cheese"}

    def test_customization_half_change_is_remove_plus_add(self):
        old = PizzaCustomizationSnapshot(customization_id="C-PEP", name="Pepperoni", half="FULL", action="ADD")
        new = PizzaCustomizationSnapshot(customization_id="C-PEP", name="Pepperoni", half="HALF_1", action="ADD")
        (item_diff,) = diff_items(
            [make_item(1, pizza_customizations=(old,))], [make_item(1, pizza_customizations=(new,))],
        ).modified
        assert item_diff.customizations_diff.added == (new,)
        assert item_diff.customizations_diff.removed == (old,)
        assert item_diff.fields == {}

    def test_item_description_uses_variant(self):
        (item_diff,) = diff_items(
            [make_item(1, variant_name="Large")], [make_item(1, variant_name="Large", quantity=2)],
        ).modified
        assert item_diff.description == "Pizza (Large)"


class TestAdjustments:
    def test_added_removed_and_modified(self):
        tip = AdjustmentSnapshot(id=1, name="Tip", value=10, amount=5.0)
        promo = AdjustmentSnapshot(id=2, name="Promo", amount=-3.0)
        bigger_tip = AdjustmentSnapshot(id=1, name="Tip", value=10, amount=6.0)
        service = AdjustmentSnapshot(id=3, name="Service", amount=2.0)
        diff = diff_orders(make_order(adjustments=(tip, promo)), make_order(adjustments=(bigger_tip, service)))
        assert diff.adjustments.added == (service,)
        assert diff.adjustments.removed == (promo,)
        (change,) = diff.adjustments.modified
        assert change.adjustment_id == 1
        assert change.fields == {"amount": FieldChange(before=5.0, after=6.0)}
        assert diff.has_order_changes
