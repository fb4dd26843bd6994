# Overview: Pytest coverage for batch grouping and first-expired-first-out allocation.

from datetime import date, datetime

from pharmapos.services.checkout_service import SaleItem
from pharmapos.services.fefo_service import (
    DEFAULT_REORDER_LEVEL,
    batch_notes_for_sale,
    group_by_name,
    is_expired_batch,
    plan_deductions,
)
from pharmapos.services.inventory_service import InventorySnapshotItem


NOW = datetime(2026, 10, 19, 9, 30)


def sold(product_id, quantity, expiry, name="Paracetamol", price=50000):
    return SaleItem(
        product_id=product_id,
        name=name,
        quantity=quantity,
        unit_price_cents=price,
        line_total_cents=quantity * price,
        expiry_date=expiry,
    )


def batch(product_id, stock, expiry, price=50000, name="Paracetamol", reorder=0, **extra):
    return InventorySnapshotItem(
        product_id=product_id,
        name=name,
        branch_stock=stock,
        unit_price_cents=price,
        selling_price_cents=price,
        expiry_date=expiry,
        reorder_level=reorder,
        **extra,
    )


class TestExpiry:
    def test_expiry_date_itself_is_expired(self):
        assert is_expired_batch(date(2026, 10, 19), NOW) is True
        assert is_expired_batch(date(2026, 10, 20), NOW) is False

    def test_no_expiry_never_expires(self):
        assert is_expired_batch(None, NOW) is False


class TestGroupByName:
    def test_batches_group_case_insensitively(self):
        items = [
            batch("p2", 5, date(2027, 6, 1), price=55000),
            batch("p1", 3, date(2027, 3, 1), name="paracetamol "),
            batch("i1", 8, date(2027, 1, 1), name="Ibuprofen", price=30000),
        ]

        groups = {g.name.strip().lower(): g for g in group_by_name(items, NOW)}

        para = groups["paracetamol"]
        assert para.total_stock == 8
        assert para.earliest_batch.product_id == "p1"
        assert para.display_price_cents == 50000
        assert (para.lowest_price_cents, para.highest_price_cents) == (50000, 55000)
        assert para.has_multiple_batches is True
        assert groups["ibuprofen"].has_multiple_batches is False

    def test_expired_batches_are_flagged_but_not_counted(self):
        items = [
            batch("old", 40, date(2026, 1, 1)),
            batch("new", 4, date(2027, 1, 1)),
        ]

        (group,) = group_by_name(items, NOW)

        assert group.total_stock == 4
        assert group.has_expired_batch is True
        assert group.earliest_batch.product_id == "new"
        assert group.has_multiple_batches is False

    def test_low_stock_uses_default_reorder_level(self):
        (group,) = group_by_name([batch("p1", DEFAULT_REORDER_LEVEL, date(2027, 1, 1))], NOW)
        assert group.has_low_stock is True

    def test_barcode_falls_back_to_any_batch(self):
        items = [
            batch("p1", 2, date(2027, 1, 1)),
            batch("p2", 2, date(2028, 1, 1), barcode_id="6151100012345"),
        ]
        (group,) = group_by_name(items, NOW)
        assert group.barcode_id == "6151100012345"


class TestPlanDeductions:
    def test_earliest_expiry_is_drawn_first(self):
        items = [
            batch("late", 10, date(2027, 9, 1)),
            batch("early", 2, date(2027, 3, 1)),
            batch("undated", 10, None),
        ]

        plan = plan_deductions(items, "Paracetamol", 5, NOW)

        assert [(d.item.product_id, d.quantity) for d in plan.deductions] == [("early", 2), ("late", 3)]
        assert plan.shortfall == 0
        assert plan.used_multiple_batches is True
        assert plan.batch_notes == ["2x exp Mar 27", "3x exp Sep 27"]

    def test_shortfall_when_valid_stock_runs_out(self):
        items = [
            batch("expired", 50, date(2026, 5, 1)),
            batch("ok", 3, date(2027, 3, 1)),
        ]

        plan = plan_deductions(items, "Paracetamol", 5, NOW)

        assert plan.total_deducted == 3
        assert plan.shortfall == 2

    def test_undated_batch_note(self):
        plan = plan_deductions([batch("u", 4, None)], "Paracetamol", 1, NOW)
        assert plan.batch_notes == ["1x no expiry"]

    def test_unknown_product_plans_nothing(self):
        plan = plan_deductions([batch("p1", 4, date(2027, 1, 1))], "Aspirin", 1, NOW)
        assert plan.deductions == ()
        assert plan.shortfall == 1


class TestBatchNotesForSale:
    def test_only_multi_batch_products_get_notes(self):
        items = [
            sold("p2", 2, date(2027, 9, 1)),
            sold("p1", 2, date(2027, 3, 1)),
            sold("i1", 1, date(2027, 9, 1), name="Ibuprofen"),
        ]

        notes = batch_notes_for_sale(items)

        assert notes == ["Paracetamol: 2x exp Mar 27, 2x exp Sep 27"]

    def test_notes_come_from_the_sold_batches_not_remaining_stock(self):
        # First batch is sold out by this sale; it still gets its note
        items = [sold("p1", 2, date(2026, 12, 18)), sold("p2", 1, date(2027, 8, 15))]
        assert batch_notes_for_sale(items) == ["Paracetamol: 2x exp Dec 26, 1x exp Aug 27"]

    def test_undated_batch_listed_last(self):
        items = [sold("p2", 1, None), sold("p1", 3, date(2027, 1, 5), name="PARACETAMOL")]
        assert batch_notes_for_sale(items) == ["PARACETAMOL: 3x exp Jan 27, 1x no expiry"]

    def test_single_batch_sale_has_no_notes(self):
        assert batch_notes_for_sale([sold("p1", 4, date(2027, 3, 1))]) == []
