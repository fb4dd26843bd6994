# Overview: Sale reconciliation engine - validates a cart against fresh stock and commits it.

"""
Checkout / Sale Reconciliation

WHY: The cart is built from prices and stock seen minutes ago. At commit
time the engine re-reads the branch's stock and decides, per attempt:

1. ExpiryGate: any expired line blocks the sale. Always runs, offline too:
   selling expired stock is a compliance violation regardless of
   connectivity.
2. StockGate (online only): missing, zero-stock and short lines block the
   sale. Every issue is reported in one message. Quantities are never
   clamped; the cashier adjusts the cart.
3. PriceDriftCheck (online only): changed prices are applied to the cart
   and disclosed. Never blocks.
4. Commit: total is recomputed from the corrected prices and the request
   goes to the backend (online) or the local outbox (offline).
5. Post-commit: offline sales decrement the local stock cache.

The engine holds no ambient state: pharmacy, branch, staff and shift come
from the CheckoutContext passed to the constructor.

DOUBLE SUBMISSION: one checkout at a time per till (non-blocking lock).
Cart edits on the till take the same lock, so the cart cannot change under
a commit.
A failed commit retried with an identical payload reuses its idempotency
key, so the backend can recognise a duplicate if the first call did land.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
import hashlib
import json
import threading
import uuid

from pharmapos.time_utils import start_of_day, to_utc_z, utcnow
from pharmapos.validation import cents_to_amount, format_amount
from .backend_client import BackendRejected, BackendUnavailable
from .cart_service import CartLine, CartStore
from .inventory_service import InventorySnapshot, InventorySnapshotProvider
from .offline_sync_service import SaleCommitter


# =============================================================================
# PAYMENT METHODS (CONSTANTS)
# =============================================================================

PAYMENT_METHOD_CASH = "cash"
PAYMENT_METHOD_TRANSFER = "transfer"
PAYMENT_METHOD_POS = "pos"

VALID_PAYMENT_METHODS = [
    PAYMENT_METHOD_CASH,
    PAYMENT_METHOD_TRANSFER,
    PAYMENT_METHOD_POS,
]


# =============================================================================
# ERRORS
# =============================================================================

class CheckoutError(Exception):
    """Raised for checkout errors. The message is shown to the cashier as-is."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ExpiredItemError(CheckoutError):
    """Blocking: a line in the cart is past its expiry date."""
    def __init__(self, line: CartLine):
        expiry = line.product.expiry_date.isoformat() if line.product.expiry_date else None
        super().__init__(
            f"{line.product.name} expired on {expiry}. Remove it from the cart to continue.",
            details={"product_id": line.product_id, "name": line.product.name, "expiry_date": expiry},
        )
        self.product_id = line.product_id


class StockIssuesError(CheckoutError):
    """Blocking: one or more lines exceed the branch's current stock."""
    def __init__(self, issues: list["StockIssue"]):
        lines = "\n".join(f"- {issue.message}" for issue in issues)
        noun = "item" if len(issues) == 1 else "items"
        super().__init__(
            f"Cannot complete sale. Stock changed for {len(issues)} {noun}:\n{lines}",
            details={"issues": [issue.to_dict() for issue in issues]},
        )
        self.issues = issues


class CheckoutInProgressError(CheckoutError):
    """A checkout is already running for this till."""


class SaleCommitError(CheckoutError):
    """
    The backend could not be reached (retryable) or rejected the sale.
    Either way nothing was committed and the cart is preserved.
    """
    def __init__(self, message: str, *, retryable: bool, details: dict | None = None):
        super().__init__(message, details)
        self.retryable = retryable


# =============================================================================
# VALUE OBJECTS
# =============================================================================

@dataclass(frozen=True)
class CheckoutContext:
    """Who is selling, where. Built per request; never looked up ambiently."""
    pharmacy_id: str
    branch_id: str | None = None
    staff_name: str | None = None
    shift_id: str | None = None
    register_id: str | None = None
    currency: str = "NGN"


@dataclass(frozen=True)
class CustomerSelection:
    """
    Either a selected patient record (id + name) or a free-text name typed
    by the cashier. A selected patient wins.
    """
    patient_id: str | None = None
    patient_name: str | None = None
    free_text_name: str | None = None

    def resolve(self) -> tuple[str | None, str | None]:
        if self.patient_id:
            return self.patient_id, self.patient_name or self.free_text_name
        return None, self.free_text_name


@dataclass(frozen=True)
class StockIssue:
    product_id: str
    name: str
    requested: int
    available: int | None  # None: no longer in the branch's inventory

    @property
    def message(self) -> str:
        if self.available is None:
            return f"{self.name}: no longer available"
        if self.available <= 0:
            return f"{self.name}: out of stock (you have {self.requested} in cart)"
        return f"{self.name}: only {self.available} left (you have {self.requested} in cart)"

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "requested": self.requested,
            "available": self.available,
            "message": self.message,
        }


@dataclass(frozen=True)
class PriceChange:
    product_id: str
    name: str
    old_price_cents: int
    new_price_cents: int

    @property
    def message(self) -> str:
        return f"{self.name}: {format_amount(self.old_price_cents)} → {format_amount(self.new_price_cents)}"

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "old_price_cents": self.old_price_cents,
            "new_price_cents": self.new_price_cents,
            "message": self.message,
        }


@dataclass(frozen=True)
class SaleItem:
    product_id: str
    name: str
    quantity: int
    unit_price_cents: int
    line_total_cents: int
    expiry_date: date | None = None
    batch_number: str | None = None
    dispensing_unit: str | None = None

    @classmethod
    def from_line(cls, line: CartLine) -> "SaleItem":
        return cls(
            product_id=line.product_id,
            name=line.product.name,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
            line_total_cents=line.line_total_cents,
            expiry_date=line.product.expiry_date,
            batch_number=line.product.batch_number,
            dispensing_unit=line.product.dispensing_unit,
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "batch_number": self.batch_number,
            "dispensing_unit": self.dispensing_unit,
        }


@dataclass(frozen=True)
class FinalizedSale:
    """The unit of truth sent to the backend and to the receipt emitter."""
    receipt_id: str
    items: tuple[SaleItem, ...]
    total_cents: int
    payment_method: str
    timestamp: datetime
    staff_name: str | None = None
    customer_id: str | None = None
    customer_name: str | None = None
    shift_id: str | None = None
    offline: bool = False

    def to_dict(self) -> dict:
        return {
            "receipt_id": self.receipt_id,
            "items": [item.to_dict() for item in self.items],
            "total_cents": self.total_cents,
            "payment_method": self.payment_method,
            "timestamp": to_utc_z(self.timestamp),
            "staff_name": self.staff_name,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "shift_id": self.shift_id,
            "offline": self.offline,
        }


@dataclass(frozen=True)
class CheckoutResult:
    sale: FinalizedSale
    price_changes: tuple[PriceChange, ...] = ()
    low_stock: tuple[str, ...] = ()

    @property
    def notice(self) -> str | None:
        """Non-blocking disclosure of every price that changed since add-time."""
        if not self.price_changes:
            return None
        changes = "; ".join(change.message for change in self.price_changes)
        return f"Prices updated since items were added: {changes}"

    def to_dict(self) -> dict:
        return {
            "sale": self.sale.to_dict(),
            "price_changes": [change.to_dict() for change in self.price_changes],
            "notice": self.notice,
            "low_stock": list(self.low_stock),
        }


# =============================================================================
# ENGINE
# =============================================================================

def check_expiry(lines: list[CartLine], now: datetime) -> None:
    """
    Block on the first expired line. A date-only expiry means the start
    of that day, so stock is unsellable on its expiry date.
    """
    for line in lines:
        expiry = line.product.expiry_date
        if expiry is not None and start_of_day(expiry) < now:
            raise ExpiredItemError(line)


def build_sale_request(
    context: CheckoutContext,
    lines: list[CartLine],
    *,
    payment_method: str,
    customer: CustomerSelection,
    prescription_images: tuple[str, ...] = (),
    offline: bool = False,
) -> dict:
    """Body of the complete_sale RPC (or of an outbox row when offline)."""
    customer_id, customer_name = customer.resolve()
    total_cents = sum(line.line_total_cents for line in lines)
    return {
        "pharmacy_id": context.pharmacy_id,
        "branch_id": context.branch_id,
        "items": [
            {
                "product_id": line.product_id,
                "quantity": line.quantity,
                "unit_price": cents_to_amount(line.unit_price_cents),
            }
            for line in lines
        ],
        "total": cents_to_amount(total_cents),
        "total_cents": total_cents,
        "customer_id": customer_id,
        "customer_name": customer_name,
        "shift_id": context.shift_id,
        "staff_name": context.staff_name,
        "payment_method": payment_method,
        "prescription_images": list(prescription_images),
        "force_offline": offline,
    }


def _fingerprint(request: dict) -> str:
    encoded = json.dumps(request, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class SubmissionGuard:
    """
    Per-till double-submission state, shared by every engine built for the
    till: the in-flight lock and the idempotency key of the last failed
    commit attempt.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self._last_attempt: tuple[str, str] | None = None

    @property
    def in_flight(self) -> bool:
        return self.lock.locked()

    @contextmanager
    def exclusive(self):
        """
        Hold the till for one checkout or one cart edit. Raises
        CheckoutInProgressError instead of waiting.
        """
        if not self.lock.acquire(blocking=False):
            raise CheckoutInProgressError("This sale is already being processed. Please wait.")
        try:
            yield
        finally:
            self.lock.release()

    def key_for(self, request: dict) -> str:
        """Same payload as the last unfinished attempt: same key."""
        fingerprint = _fingerprint(request)
        if self._last_attempt and self._last_attempt[0] == fingerprint:
            return self._last_attempt[1]
        key = uuid.uuid4().hex
        self._last_attempt = (fingerprint, key)
        return key

    def settle(self) -> None:
        self._last_attempt = None


@dataclass
class SaleReconciliationEngine:
    context: CheckoutContext
    inventory: InventorySnapshotProvider
    committer: SaleCommitter
    clock: object = utcnow
    guard: SubmissionGuard = field(default_factory=SubmissionGuard)

    @property
    def in_flight(self) -> bool:
        return self.guard.in_flight

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def check_expiry(self, cart: CartStore) -> None:
        check_expiry(cart.items, self.clock())

    def check_stock(self, cart: CartStore, snapshot: InventorySnapshot) -> None:
        issues = []
        for line in cart.items:
            item = snapshot.get(line.product_id)
            if item is None:
                issues.append(StockIssue(line.product_id, line.product.name, line.quantity, None))
            elif item.branch_stock < line.quantity:
                issues.append(StockIssue(line.product_id, line.product.name, line.quantity, item.branch_stock))
        if issues:
            raise StockIssuesError(issues)

    def apply_price_drift(self, cart: CartStore, snapshot: InventorySnapshot) -> list[PriceChange]:
        """Overwrite stale working prices with fresh ones; report each change."""
        changes = []
        for line in cart.items:
            item = snapshot.get(line.product_id)
            if item is None:
                continue
            if item.price_cents != line.unit_price_cents:
                changes.append(PriceChange(
                    product_id=line.product_id,
                    name=line.product.name,
                    old_price_cents=line.unit_price_cents,
                    new_price_cents=item.price_cents,
                ))
            if (item.selling_price_cents, item.unit_price_cents) != (
                line.product.selling_price_cents, line.product.unit_price_cents
            ):
                cart.reprice(line.product_id, item.selling_price_cents, item.unit_price_cents)
        return changes

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def build_request(
        self,
        lines: list[CartLine],
        *,
        payment_method: str,
        customer: CustomerSelection,
        prescription_images: tuple[str, ...],
        offline: bool,
    ) -> dict:
        return build_sale_request(
            self.context,
            lines,
            payment_method=payment_method,
            customer=customer,
            prescription_images=prescription_images,
            offline=offline,
        )

    def checkout(
        self,
        cart: CartStore,
        *,
        payment_method: str = PAYMENT_METHOD_CASH,
        customer: CustomerSelection | None = None,
        prescription_images: tuple[str, ...] | list[str] = (),
        clear_cart: bool = True,
    ) -> CheckoutResult:
        """
        Run the gates and commit. Raises a CheckoutError subclass when the
        sale cannot proceed; the cart is left as it was (apart from price
        corrections, which always reflect the truth).
        """
        with self.guard.exclusive():
            return self._checkout_locked(
                cart,
                payment_method=payment_method,
                customer=customer or CustomerSelection(),
                prescription_images=tuple(prescription_images),
                clear_cart=clear_cart,
            )

    def _checkout_locked(
        self,
        cart: CartStore,
        *,
        payment_method: str,
        customer: CustomerSelection,
        prescription_images: tuple[str, ...],
        clear_cart: bool,
    ) -> CheckoutResult:
        if cart.is_empty():
            raise CheckoutError("Cart is empty")
        if payment_method not in VALID_PAYMENT_METHODS:
            raise CheckoutError(
                f"Invalid payment method: {payment_method}. Must be one of {VALID_PAYMENT_METHODS}"
            )

        self.check_expiry(cart)

        offline = self.inventory.offline
        snapshot = None
        price_changes: list[PriceChange] = []
        if not offline:
            try:
                snapshot = self.inventory.snapshot_for([line.product_id for line in cart.items])
            except BackendUnavailable as exc:
                raise SaleCommitError(str(exc), retryable=True, details=exc.details) from exc
            except BackendRejected as exc:
                raise SaleCommitError(str(exc), retryable=False, details=exc.details) from exc
            self.check_stock(cart, snapshot)
            price_changes = self.apply_price_drift(cart, snapshot)

        lines = cart.items
        request = self.build_request(
            lines,
            payment_method=payment_method,
            customer=customer,
            prescription_images=prescription_images,
            offline=offline,
        )
        idempotency_key = self.guard.key_for(request)

        try:
            receipt_id = self.committer.commit(request, idempotency_key)
        except BackendUnavailable as exc:
            raise SaleCommitError(str(exc), retryable=True, details=exc.details) from exc
        except BackendRejected as exc:
            self.guard.settle()
            raise SaleCommitError(str(exc), retryable=False, details=exc.details) from exc
        self.guard.settle()

        customer_id, customer_name = customer.resolve()
        sale = FinalizedSale(
            receipt_id=receipt_id,
            items=tuple(SaleItem.from_line(line) for line in lines),
            total_cents=request["total_cents"],
            payment_method=payment_method,
            timestamp=self.clock(),
            staff_name=self.context.staff_name,
            customer_id=customer_id,
            customer_name=customer_name,
            shift_id=self.context.shift_id,
            offline=offline,
        )

        if offline:
            for line in lines:
                self.inventory.update_local_stock(line.product_id, line.quantity)

        low_stock: list[str] = []
        if snapshot is not None:
            for line in lines:
                item = snapshot.get(line.product_id)
                if item is not None and item.branch_stock - line.quantity <= item.reorder_level:
                    low_stock.append(line.product.name)

        if clear_cart:
            cart.clear_cart()

        return CheckoutResult(sale=sale, price_changes=tuple(price_changes), low_stock=tuple(low_stock))
