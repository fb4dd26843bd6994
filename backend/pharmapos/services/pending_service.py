# Overview: Credit (pay-at-cashier) invoices stored as backend pending transactions.

"""
Pending Invoices

WHY: At busy counters the dispenser builds the cart and prints an UNPAID
slip; the customer pays at the cashier, who scans the slip's barcode (or
types the PH-XXX short code) and completes it with a payment method.
Paying commits the slip's lines as a sale at the printed prices; stock
is only checked and decremented by the backend at that point.

Invoices are branch-scoped. Only `pending` invoices can be found, completed
or cancelled; the backend update is conditional on status=pending so two
cashiers cannot complete the same slip.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
import re
import secrets
import string
import time

from pharmapos.time_utils import parse_iso_datetime, to_utc_z, utcnow
from pharmapos.validation import (
    ValidationError,
    cents_to_amount,
    first_present,
    require_text,
    to_cents,
    to_date,
    to_int,
    to_text,
)
from .backend_client import BackendRejected, BackendUnavailable, SupabaseClient
from .cart_service import CartLine, CartStore, ProductSnapshot
from .checkout_service import (
    VALID_PAYMENT_METHODS,
    CheckoutContext,
    CustomerSelection,
    FinalizedSale,
    SaleCommitError,
    SaleItem,
    build_sale_request,
    check_expiry,
)
from .offline_sync_service import SaleCommitter


# =============================================================================
# STATUS (CONSTANTS)
# =============================================================================

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

SHORT_CODE_PREFIX = "PH-"
SHORT_CODE_ALPHABET = string.ascii_uppercase + string.digits
SHORT_CODE_LENGTH = 3

# Search terms are interpolated into a PostgREST filter
_SEARCH_TERM_RE = re.compile(r"^[A-Za-z0-9-]{2,64}$")


class PendingInvoiceError(Exception):
    """Raised for pending invoice errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def generate_short_code() -> str:
    """Human-typeable code printed large on the slip, e.g. "PH-7KQ"."""
    return SHORT_CODE_PREFIX + "".join(
        secrets.choice(SHORT_CODE_ALPHABET) for _ in range(SHORT_CODE_LENGTH)
    )


def _base36(value: int) -> str:
    digits = string.digits + string.ascii_uppercase
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


def generate_barcode() -> str:
    """Millisecond timestamp in base 36 plus 6 random characters, uppercase."""
    suffix = "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(6))
    return _base36(int(time.time() * 1000)) + suffix


# =============================================================================
# PARSE BOUNDARY
# =============================================================================

def _serialize_line(line: CartLine) -> dict:
    product = line.product
    return {
        "medication": {
            "id": line.product_id,
            "name": product.name,
            "unit_price": cents_to_amount(product.unit_price_cents),
            "selling_price": (
                cents_to_amount(product.selling_price_cents)
                if product.selling_price_cents is not None else None
            ),
            "dispensing_unit": product.dispensing_unit,
            "batch_number": product.batch_number,
            "expiry_date": product.expiry_date.isoformat() if product.expiry_date else None,
        },
        "quantity": line.quantity,
    }


@dataclass(frozen=True)
class PendingInvoiceLine:
    product_id: str
    name: str
    quantity: int
    price_cents: int
    expiry_date: date | None = None
    batch_number: str | None = None
    dispensing_unit: str | None = None

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.price_cents

    def to_cart_line(self) -> CartLine:
        """The line as sold: the price printed on the slip is the price charged."""
        return CartLine(
            product_id=self.product_id,
            product=ProductSnapshot(
                name=self.name,
                unit_price_cents=self.price_cents,
                expiry_date=self.expiry_date,
                batch_number=self.batch_number,
                dispensing_unit=self.dispensing_unit,
            ),
            quantity=self.quantity,
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "price_cents": self.price_cents,
            "line_total_cents": self.line_total_cents,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "batch_number": self.batch_number,
            "dispensing_unit": self.dispensing_unit,
        }


def _parse_line(data: dict) -> PendingInvoiceLine:
    if not isinstance(data, dict):
        raise ValidationError("Invoice line must be an object")
    medication = data.get("medication") or {}
    unit_price = to_cents(medication.get("unit_price"), "unit_price") or 0
    selling_price = to_cents(medication.get("selling_price"), "selling_price")
    return PendingInvoiceLine(
        product_id=require_text(medication.get("id"), "medication.id"),
        name=require_text(medication.get("name"), "medication.name"),
        quantity=to_int(data.get("quantity"), "quantity", minimum=1) or 1,
        price_cents=selling_price if selling_price is not None else unit_price,
        expiry_date=to_date(medication.get("expiry_date"), "expiry_date"),
        batch_number=to_text(medication.get("batch_number")),
        dispensing_unit=to_text(medication.get("dispensing_unit")),
    )


@dataclass(frozen=True)
class PendingInvoice:
    id: str
    short_code: str
    barcode: str
    items: tuple[PendingInvoiceLine, ...]
    total_cents: int
    status: str
    pharmacy_id: str | None = None
    branch_id: str | None = None
    payment_method: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict) -> "PendingInvoice":
        if not isinstance(row, dict):
            raise ValidationError("Pending transaction must be an object")
        items = row.get("items") or []
        if not isinstance(items, list):
            raise ValidationError("items must be a list")
        total_cents = to_cents(first_present(row, ("total_amount", "total")), "total_amount")
        lines = tuple(_parse_line(item) for item in items)
        return cls(
            id=require_text(row.get("id"), "id"),
            short_code=require_text(row.get("short_code"), "short_code"),
            barcode=to_text(row.get("barcode")) or "",
            items=lines,
            total_cents=total_cents if total_cents is not None else sum(l.line_total_cents for l in lines),
            status=to_text(row.get("status")) or STATUS_PENDING,
            pharmacy_id=to_text(row.get("pharmacy_id")),
            branch_id=to_text(row.get("branch_id")),
            payment_method=to_text(row.get("payment_method")),
            created_at=parse_iso_datetime(to_text(row.get("created_at"))),
            completed_at=parse_iso_datetime(to_text(row.get("completed_at"))),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "short_code": self.short_code,
            "barcode": self.barcode,
            "items": [line.to_dict() for line in self.items],
            "total_cents": self.total_cents,
            "status": self.status,
            "pharmacy_id": self.pharmacy_id,
            "branch_id": self.branch_id,
            "payment_method": self.payment_method,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
        }


@dataclass(frozen=True)
class PaidInvoice:
    invoice: PendingInvoice
    sale: FinalizedSale

    def to_dict(self) -> dict:
        return {
            "invoice": self.invoice.to_dict(),
            "sale": self.sale.to_dict(),
        }


# =============================================================================
# SERVICE
# =============================================================================

class PendingInvoiceService:
    def __init__(
        self,
        client: SupabaseClient,
        context: CheckoutContext,
        clock=utcnow,
        committer: SaleCommitter | None = None,
    ):
        self.client = client
        self.context = context
        self.clock = clock
        self.committer = committer or SaleCommitter(client)

    def create(self, cart: CartStore, *, clear_cart: bool = True) -> PendingInvoice:
        """
        Record the cart as an unpaid invoice. The expiry gate applies; stock
        is not checked or decremented until the invoice is paid.
        """
        lines = cart.items
        if not lines:
            raise PendingInvoiceError("Cart is empty")
        check_expiry(lines, self.clock())

        row = self.client.create_pending_transaction({
            "pharmacy_id": self.context.pharmacy_id,
            "branch_id": self.context.branch_id,
            "short_code": generate_short_code(),
            "barcode": generate_barcode(),
            "items": [_serialize_line(line) for line in lines],
            "total_amount": cents_to_amount(cart.get_total()),
            "status": STATUS_PENDING,
        })
        invoice = PendingInvoice.from_row(row)

        if clear_cart:
            cart.clear_cart()
        return invoice

    def find(self, term: str) -> PendingInvoice | None:
        """Look up a pending invoice by short code or barcode fragment."""
        term = (term or "").strip()
        if not _SEARCH_TERM_RE.match(term):
            raise PendingInvoiceError("Enter a short code or scan the invoice barcode", {"term": term})
        row = self.client.find_pending_transaction(
            self.context.pharmacy_id,
            term,
            branch_id=self.context.branch_id,
        )
        return PendingInvoice.from_row(row) if row else None

    def complete(self, invoice_id: str, payment_method: str) -> PaidInvoice:
        """
        Take payment for a pending invoice: commit its lines as a sale, then
        close the invoice.

        The invoice id is the sale's idempotency key, so paying again after a
        failed close returns the original receipt instead of selling twice.
        Raises SaleCommitError when the sale did not go through; the invoice
        stays pending.
        """
        if payment_method not in VALID_PAYMENT_METHODS:
            raise PendingInvoiceError(
                f"Invalid payment method: {payment_method}. Must be one of {VALID_PAYMENT_METHODS}"
            )
        row = self.client.get_pending_transaction(
            self.context.pharmacy_id,
            invoice_id,
            branch_id=self.context.branch_id,
        )
        if row is None:
            raise PendingInvoiceError("Invoice not found or already closed", {"invoice_id": invoice_id})
        invoice = PendingInvoice.from_row(row)
        if not invoice.items:
            raise PendingInvoiceError("Invoice has no items", {"invoice_id": invoice_id})

        lines = [item.to_cart_line() for item in invoice.items]
        check_expiry(lines, self.clock())

        request = build_sale_request(
            self.context,
            lines,
            payment_method=payment_method,
            customer=CustomerSelection(),
        )
        try:
            receipt_id = self.committer.commit(request, f"invoice-{invoice.id}")
        except BackendUnavailable as exc:
            raise SaleCommitError(str(exc), retryable=True, details=exc.details) from exc
        except BackendRejected as exc:
            raise SaleCommitError(str(exc), retryable=False, details=exc.details) from exc

        paid_at = self.clock()
        closed = self.client.update_pending_transaction(invoice.id, {
            "status": STATUS_COMPLETED,
            "payment_method": payment_method,
            "completed_at": to_utc_z(paid_at),
        })
        if closed is None:
            raise PendingInvoiceError(
                "Invoice not found or already closed",
                {"invoice_id": invoice_id, "receipt_id": receipt_id},
            )

        sale = FinalizedSale(
            receipt_id=receipt_id,
            items=tuple(SaleItem.from_line(line) for line in lines),
            total_cents=request["total_cents"],
            payment_method=payment_method,
            timestamp=paid_at,
            staff_name=self.context.staff_name,
            shift_id=self.context.shift_id,
        )
        return PaidInvoice(invoice=PendingInvoice.from_row(closed), sale=sale)

    def cancel(self, invoice_id: str) -> PendingInvoice:
        row = self.client.update_pending_transaction(invoice_id, {"status": STATUS_CANCELLED})
        if row is None:
            raise PendingInvoiceError("Invoice not found or already closed", {"invoice_id": invoice_id})
        return PendingInvoice.from_row(row)
