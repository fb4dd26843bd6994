# Overview: Pytest coverage for the sale reconciliation engine (gates, commit, post-commit).

"""
Checkout Reconciliation Tests

Covers:
- Expiry gate blocks online and offline, cart unchanged
- Stock gate (online) names every short item, never clamps
- Price drift correction and disclosure
- Offline commits go to the outbox and decrement the local cache
- Double submission guard and idempotent retry after a network failure
"""

import pytest
from datetime import timedelta

from conftest import PHARMACY_ID, medication_row
from pharmapos.models import OfflineSale
from pharmapos.services.cart_service import CartStore
from pharmapos.services.checkout_service import (
    CheckoutError,
    CheckoutInProgressError,
    CustomerSelection,
    ExpiredItemError,
    SaleCommitError,
    StockIssuesError,
)
from pharmapos.services.inventory_service import InventorySnapshotItem, read_cache
from pharmapos.time_utils import utcnow


def cart_item(product_id, name, selling_cents, stock=10, unit_cents=None, expiry=None):
    return InventorySnapshotItem(
        product_id=product_id,
        name=name,
        branch_stock=stock,
        unit_price_cents=unit_cents if unit_cents is not None else selling_cents,
        selling_price_cents=selling_cents,
        expiry_date=expiry or (utcnow().date() + timedelta(days=365)),
    )


class TestExampleScenarios:
    def test_price_drift_is_applied_and_disclosed(self, engine, backend):
        """Paracetamol added at 500, now 600 with stock 10: total 1200 and a notice."""
        backend.medications = [medication_row("para", "Paracetamol", 10, 450, selling_price=600)]
        cart = CartStore()
        cart.add_item(cart_item("para", "Paracetamol", 50000), 2)

        result = engine.checkout(cart)

        assert result.sale.total_cents == 120000
        assert result.sale.items[0].unit_price_cents == 60000
        assert "Paracetamol: 500 → 600" in result.notice
        assert len(result.price_changes) == 1

        sent = backend.commit_calls[0]
        assert sent["items"] == [{"product_id": "para", "quantity": 2, "unit_price": 600}]
        assert sent["total"] == 1200
        assert sent["force_offline"] is False
        assert cart.is_empty()

    def test_short_stock_blocks_and_leaves_cart_unchanged(self, engine, backend):
        """Amoxicillin x5 with fresh stock 2 is blocked."""
        backend.medications = [medication_row("amox", "Amoxicillin", 2, 1200)]
        cart = CartStore()
        cart.add_item(cart_item("amox", "Amoxicillin", 120000), 5)

        with pytest.raises(StockIssuesError) as exc_info:
            engine.checkout(cart)

        assert "only 2 left (you have 5 in cart)" in str(exc_info.value)
        assert cart.get_line("amox").quantity == 5
        assert backend.commit_calls == []


class TestStockGate:
    def test_every_short_item_is_named(self, engine, backend):
        backend.medications = [
            medication_row("a", "Amoxicillin", 2, 1200),
            medication_row("b", "Ibuprofen", 0, 300),
        ]
        cart = CartStore()
        cart.add_item(cart_item("a", "Amoxicillin", 120000), 5)
        cart.add_item(cart_item("b", "Ibuprofen", 30000), 1)
        cart.add_item(cart_item("c", "Vitamin C", 10000), 1)

        with pytest.raises(StockIssuesError) as exc_info:
            engine.checkout(cart)

        message = str(exc_info.value)
        assert "Amoxicillin: only 2 left (you have 5 in cart)" in message
        assert "Ibuprofen: out of stock (you have 1 in cart)" in message
        assert "Vitamin C: no longer available" in message
        assert len(exc_info.value.issues) == 3
        assert len(cart) == 3

    def test_exact_stock_is_allowed(self, engine, backend):
        backend.medications = [medication_row("a", "Amoxicillin", 5, 1200)]
        cart = CartStore()
        cart.add_item(cart_item("a", "Amoxicillin", 120000), 5)

        result = engine.checkout(cart)
        assert result.sale.receipt_id == "RCP-0001"


class TestExpiryGate:
    def test_expired_line_blocks_online(self, engine, backend):
        backend.medications = [medication_row("old", "Cough Syrup", 10, 800)]
        cart = CartStore()
        cart.add_item(cart_item("old", "Cough Syrup", 80000, expiry=utcnow().date() - timedelta(days=1)), 2)

        with pytest.raises(ExpiredItemError) as exc_info:
            engine.checkout(cart)

        assert "Cough Syrup expired on" in str(exc_info.value)
        assert cart.get_line("old").quantity == 2
        assert backend.requests == []

    def test_expired_line_blocks_offline(self, engine, connectivity, db_session):
        connectivity.set_offline(True)
        cart = CartStore()
        cart.add_item(cart_item("old", "Cough Syrup", 80000, expiry=utcnow().date() - timedelta(days=30)))

        with pytest.raises(ExpiredItemError):
            engine.checkout(cart)

        assert len(cart) == 1
        assert db_session.query(OfflineSale).count() == 0

    def test_expiring_today_counts_as_expired(self, engine):
        cart = CartStore()
        cart.add_item(cart_item("x", "Eye Drops", 5000, expiry=utcnow().date()))
        engine.clock = lambda: utcnow().replace(hour=12, minute=0)

        with pytest.raises(ExpiredItemError):
            engine.checkout(cart)


class TestOfflineCommit:
    def _seed_cache(self, inventory, backend):
        backend.medications = [
            medication_row("a", "Amoxicillin", 2, 1200),
            medication_row("b", "Ibuprofen", 10, 300),
        ]
        inventory.sellable_items()

    def test_over_quantity_commits_to_outbox(self, engine, inventory, backend, connectivity, db_session):
        self._seed_cache(inventory, backend)
        connectivity.set_offline(True)
        requests_before = len(backend.requests)

        cart = CartStore()
        cart.add_item(cart_item("a", "Amoxicillin", 120000), 5)
        cart.add_item(cart_item("b", "Ibuprofen", 30000), 3)

        result = engine.checkout(cart)

        assert result.sale.offline is True
        assert result.sale.receipt_id.startswith("OFF-")
        assert len(backend.requests) == requests_before

        row = db_session.query(OfflineSale).one()
        assert row.local_receipt_id == result.sale.receipt_id
        assert row.payload["force_offline"] is True
        assert row.total_cents == 5 * 120000 + 3 * 30000

    def test_local_stock_updated_once_per_line(self, engine, inventory, backend, connectivity, monkeypatch):
        self._seed_cache(inventory, backend)
        connectivity.set_offline(True)
        calls = []
        monkeypatch.setattr(inventory, "update_local_stock", lambda pid, qty: calls.append((pid, qty)))

        cart = CartStore()
        cart.add_item(cart_item("a", "Amoxicillin", 120000), 5)
        cart.add_item(cart_item("b", "Ibuprofen", 30000), 3)
        engine.checkout(cart)

        assert calls == [("a", 5), ("b", 3)]

    def test_local_cache_is_decremented_and_floored(self, engine, inventory, backend, connectivity):
        self._seed_cache(inventory, backend)
        connectivity.set_offline(True)

        cart = CartStore()
        cart.add_item(cart_item("a", "Amoxicillin", 120000), 5)
        cart.add_item(cart_item("b", "Ibuprofen", 30000), 3)
        engine.checkout(cart)

        stock = {item.product_id: item.branch_stock for item in read_cache(PHARMACY_ID, None)}
        assert stock == {"a": 0, "b": 7}

    def test_offline_skips_price_drift(self, engine, inventory, backend, connectivity):
        self._seed_cache(inventory, backend)
        connectivity.set_offline(True)

        cart = CartStore()
        cart.add_item(cart_item("b", "Ibuprofen", 99900), 1)
        result = engine.checkout(cart)

        assert result.price_changes == ()
        assert result.sale.total_cents == 99900


class TestCommitFailures:
    def test_network_failure_preserves_cart_and_retry_reuses_key(self, engine, backend):
        backend.medications = [medication_row("para", "Paracetamol", 10, 500)]
        backend.commit_failures = ["unavailable"]
        cart = CartStore()
        cart.add_item(cart_item("para", "Paracetamol", 50000), 2)

        with pytest.raises(SaleCommitError) as exc_info:
            engine.checkout(cart)
        assert exc_info.value.retryable is True
        assert cart.get_line("para").quantity == 2

        result = engine.checkout(cart)

        first, second = backend.commit_calls
        assert first["idempotency_key"] == second["idempotency_key"]
        assert result.sale.receipt_id == "RCP-0001"

    def test_changed_cart_gets_new_key(self, engine, backend):
        backend.medications = [medication_row("para", "Paracetamol", 10, 500)]
        backend.commit_failures = ["unavailable"]
        cart = CartStore()
        cart.add_item(cart_item("para", "Paracetamol", 50000), 2)

        with pytest.raises(SaleCommitError):
            engine.checkout(cart)
        cart.increment_quantity("para")
        engine.checkout(cart)

        first, second = backend.commit_calls
        assert first["idempotency_key"] != second["idempotency_key"]

    def test_backend_rejection_is_readable_and_not_retryable(self, engine, backend):
        backend.medications = [medication_row("para", "Paracetamol", 10, 500)]
        backend.commit_failures = [(400, {"code": "P0001", "message": "Insufficient stock for Paracetamol"})]
        cart = CartStore()
        cart.add_item(cart_item("para", "Paracetamol", 50000), 2)

        with pytest.raises(SaleCommitError) as exc_info:
            engine.checkout(cart)

        assert exc_info.value.retryable is False
        assert str(exc_info.value) == "Insufficient stock for Paracetamol"
        assert len(cart) == 1

    def test_raw_backend_codes_are_not_shown(self, engine, backend):
        backend.medications = [medication_row("para", "Paracetamol", 10, 500)]
        backend.commit_failures = [(409, {"code": "23505", "message": "duplicate key value violates unique constraint"})]
        cart = CartStore()
        cart.add_item(cart_item("para", "Paracetamol", 50000), 1)

        with pytest.raises(SaleCommitError) as exc_info:
            engine.checkout(cart)

        assert "23505" not in str(exc_info.value)
        assert "duplicate key" not in str(exc_info.value)

    def test_snapshot_fetch_failure_is_transient(self, engine, backend):
        backend.unreachable = True
        cart = CartStore()
        cart.add_item(cart_item("para", "Paracetamol", 50000), 1)

        with pytest.raises(SaleCommitError) as exc_info:
            engine.checkout(cart)

        assert exc_info.value.retryable is True
        assert len(cart) == 1


class TestCheckoutRules:
    def test_empty_cart_is_rejected(self, engine):
        with pytest.raises(CheckoutError):
            engine.checkout(CartStore())

    def test_invalid_payment_method(self, engine):
        cart = CartStore()
        cart.add_item(cart_item("para", "Paracetamol", 50000))
        with pytest.raises(CheckoutError):
            engine.checkout(cart, payment_method="cheque")

    def test_second_checkout_while_in_flight_is_refused(self, engine):
        cart = CartStore()
        cart.add_item(cart_item("para", "Paracetamol", 50000))

        engine.guard.lock.acquire()
        try:
            with pytest.raises(CheckoutInProgressError):
                engine.checkout(cart)
        finally:
            engine.guard.lock.release()
        assert len(cart) == 1

    def test_cart_edits_are_refused_while_the_sale_commits(self, engine, backend, monkeypatch):
        backend.medications = [medication_row("para", "Paracetamol", 10, 500)]
        cart = CartStore()
        cart.add_item(cart_item("para", "Paracetamol", 50000), 2)
        commit = engine.committer.commit
        refused = []

        def commit_while_cashier_edits(request, key):
            try:
                with engine.guard.exclusive():
                    cart.clear_cart()
            except CheckoutInProgressError:
                refused.append(True)
            return commit(request, key)

        monkeypatch.setattr(engine.committer, "commit", commit_while_cashier_edits)

        result = engine.checkout(cart)

        assert refused == [True]
        assert [item.quantity for item in result.sale.items] == [2]
        assert not engine.in_flight
        with engine.guard.exclusive():
            assert engine.in_flight

        assert len(cart) == 1

    def test_request_carries_session_and_customer(self, engine, backend):
        backend.medications = [medication_row("para", "Paracetamol", 10, 500)]
        cart = CartStore()
        cart.add_item(cart_item("para", "Paracetamol", 50000))

        result = engine.checkout(
            cart,
            payment_method="transfer",
            customer=CustomerSelection(patient_id="pat-1", patient_name="Chidi", free_text_name="typed"),
            prescription_images=["rx/1.jpg"],
        )

        sent = backend.commit_calls[0]
        assert sent["pharmacy_id"] == PHARMACY_ID
        assert sent["customer_id"] == "pat-1"
        assert sent["customer_name"] == "Chidi"
        assert sent["staff_name"] == "Ada Obi"
        assert sent["shift_id"] == "shift-9"
        assert sent["payment_method"] == "transfer"
        assert sent["prescription_images"] == ["rx/1.jpg"]
        assert result.sale.customer_name == "Chidi"

    def test_free_text_customer_when_no_patient_selected(self, engine, backend):
        backend.medications = [medication_row("para", "Paracetamol", 10, 500)]
        cart = CartStore()
        cart.add_item(cart_item("para", "Paracetamol", 50000))

        engine.checkout(cart, customer=CustomerSelection(free_text_name="Walk-in Bola"))

        sent = backend.commit_calls[0]
        assert sent["customer_id"] is None
        assert sent["customer_name"] == "Walk-in Bola"

    def test_cart_can_be_retained(self, engine, backend):
        backend.medications = [medication_row("para", "Paracetamol", 10, 500)]
        cart = CartStore()
        cart.add_item(cart_item("para", "Paracetamol", 50000))

        engine.checkout(cart, clear_cart=False)
        assert len(cart) == 1

    def test_low_stock_advisory(self, engine, backend):
        backend.medications = [medication_row("para", "Paracetamol", 6, 500, reorder_level=5)]
        cart = CartStore()
        cart.add_item(cart_item("para", "Paracetamol", 50000), 2)

        result = engine.checkout(cart)
        assert result.low_stock == ("Paracetamol",)

    def test_total_matches_lines_after_correction(self, engine, backend):
        backend.medications = [
            medication_row("a", "Amoxicillin", 10, 1000, selling_price=1250),
            medication_row("b", "Ibuprofen", 10, 300),
        ]
        cart = CartStore()
        cart.add_item(cart_item("a", "Amoxicillin", 120000), 3)
        cart.add_item(cart_item("b", "Ibuprofen", 30000), 2)

        result = engine.checkout(cart)

        assert result.sale.total_cents == sum(i.line_total_cents for i in result.sale.items)
        assert result.sale.total_cents == 3 * 125000 + 2 * 30000
