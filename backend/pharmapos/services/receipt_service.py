# Overview: Paid receipts and unpaid invoice slips rendered as printable HTML.

"""
Receipt / Invoice Emitter

Rendering is pure: ReceiptEmitter reads nothing and never modifies the
FinalizedSale passed in. load_branding is the one backend read (letterhead).
Output is an 80mm thermal-slip HTML document with every dynamic value
escaped by Jinja2 autoescape.
"""
from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

import barcode
from barcode.writer import SVGWriter
from flask import current_app
from jinja2 import Environment, PackageLoader, select_autoescape

from pharmapos.time_utils import utcnow
from .backend_client import BackendError, SupabaseClient
from .cart_service import CartLine
from .checkout_service import FinalizedSale


CURRENCY_SYMBOLS = {
    "NGN": "₦",
    "USD": "$",
    "GBP": "£",
}
DEFAULT_CURRENCY = "NGN"
DEFAULT_PHARMACY_NAME = "PharmaTrack Pharmacy"

PAYMENT_METHOD_LABELS = {
    "cash": "Cash",
    "transfer": "Bank Transfer",
    "pos": "POS",
}

STATUS_PAID = "PAID"
STATUS_UNPAID = "UNPAID"

_env = Environment(
    loader=PackageLoader("pharmapos", "templates"),
    autoescape=select_autoescape(["html"]),
)


class ReceiptError(Exception):
    """Raised when a receipt cannot be rendered."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def format_currency(cents: int, currency: str = DEFAULT_CURRENCY) -> str:
    """Whole units with thousands separators: 120000 NGN -> "₦1,200"."""
    symbol = CURRENCY_SYMBOLS.get((currency or DEFAULT_CURRENCY).upper(), CURRENCY_SYMBOLS[DEFAULT_CURRENCY])
    whole = int((Decimal(cents) / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return f"{symbol}{whole:,}"


def barcode_svg_data_uri(value: str) -> str | None:
    """Code128 barcode as an SVG data URI for an <img> tag."""
    if not value:
        return None
    code128 = barcode.get_barcode_class("code128")
    svg = code128(value, writer=SVGWriter()).render({
        "write_text": False,
        "module_width": 0.3,
        "module_height": 12.0,
        "quiet_zone": 2.0,
    })
    return "data:image/svg+xml;base64," + base64.b64encode(svg).decode("ascii")


def _safe_logo_url(value: str | None) -> str | None:
    if value and value.strip().lower().startswith(("https://", "http://")):
        return value.strip()
    return None


@dataclass(frozen=True)
class Branding:
    name: str = DEFAULT_PHARMACY_NAME
    address: str | None = None
    phone: str | None = None
    logo_url: str | None = None

    @classmethod
    def resolve(cls, pharmacy: dict | None = None, branch: dict | None = None,
                default_name: str = DEFAULT_PHARMACY_NAME) -> "Branding":
        """Branch letterhead fields override the pharmacy's, one field at a time."""
        pharmacy = pharmacy or {}
        branch = branch or {}

        def pick(key):
            value = branch.get(key) or pharmacy.get(key)
            return str(value).strip() if value else None

        return cls(
            name=pick("name") or default_name,
            address=pick("address"),
            phone=pick("phone"),
            logo_url=_safe_logo_url(pick("logo_url")),
        )


def load_branding(
    client: SupabaseClient,
    pharmacy_id: str,
    branch_id: str | None,
    *,
    offline: bool = False,
    default_name: str = DEFAULT_PHARMACY_NAME,
) -> Branding:
    """
    Letterhead for a receipt. A failed lookup falls back to the defaults:
    the sale is already committed and the slip must still print.
    """
    if offline:
        return Branding(name=default_name)
    try:
        pharmacy = client.fetch_pharmacy(pharmacy_id)
        branch = client.fetch_branch(branch_id) if branch_id else None
    except BackendError as exc:
        current_app.logger.warning("Letterhead lookup failed for pharmacy %s: %s", pharmacy_id, exc)
        return Branding(name=default_name)
    return Branding.resolve(pharmacy, branch, default_name=default_name)


def _unit_label(dispensing_unit: str | None) -> str | None:
    if dispensing_unit and dispensing_unit != "unit":
        return dispensing_unit
    return None


class ReceiptEmitter:
    def __init__(self, branding: Branding | None = None, currency: str = DEFAULT_CURRENCY):
        self.branding = branding or Branding()
        self.currency = currency

    def _render(self, **context) -> str:
        template = _env.get_template("receipt.html")
        return template.render(branding=self.branding, **context)

    def render_receipt(self, sale: FinalizedSale, *, batch_notes: list[str] | None = None) -> str:
        """Paid receipt for a committed sale."""
        lines = [
            {
                "name": item.name,
                "unit_label": _unit_label(item.dispensing_unit),
                "quantity": item.quantity,
                "price": format_currency(item.unit_price_cents, self.currency),
                "total": format_currency(item.line_total_cents, self.currency),
            }
            for item in sale.items
        ]
        return self._render(
            receipt_number=sale.receipt_id,
            issued_at=sale.timestamp.strftime("%d/%m/%y %H:%M"),
            customer_name=sale.customer_name,
            barcode_uri=barcode_svg_data_uri(sale.receipt_id),
            short_code=None,
            status=STATUS_PAID,
            lines=lines,
            total=format_currency(sale.total_cents, self.currency),
            payment_method_label=PAYMENT_METHOD_LABELS.get(sale.payment_method),
            offline=sale.offline,
            batch_notes=batch_notes or [],
            staff_name=sale.staff_name,
        )

    def render_invoice(
        self,
        lines: list[CartLine],
        *,
        short_code: str,
        barcode_value: str,
        receipt_number: str | None = None,
        customer_name: str | None = None,
        staff_name: str | None = None,
        issued_at: datetime | None = None,
        batch_notes: list[str] | None = None,
    ) -> str:
        """Unpaid slip the customer carries to the cashier."""
        if not short_code:
            raise ReceiptError("Invoice short code is required")
        rows = [
            {
                "name": line.product.name,
                "unit_label": _unit_label(line.product.dispensing_unit),
                "quantity": line.quantity,
                "price": format_currency(line.unit_price_cents, self.currency),
                "total": format_currency(line.line_total_cents, self.currency),
            }
            for line in lines
        ]
        total_cents = sum(line.line_total_cents for line in lines)
        return self._render(
            receipt_number=receipt_number or short_code,
            issued_at=(issued_at or utcnow()).strftime("%d/%m/%y %H:%M"),
            customer_name=customer_name,
            barcode_uri=barcode_svg_data_uri(barcode_value or short_code),
            short_code=short_code,
            status=STATUS_UNPAID,
            lines=rows,
            total=format_currency(total_cents, self.currency),
            payment_method_label=None,
            offline=False,
            batch_notes=batch_notes or [],
            staff_name=staff_name,
        )
