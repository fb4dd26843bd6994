"""
Cart Store - working set of line items for one in-progress sale.

WHY: The cart is local, synchronous state. No stock checks happen here;
sufficiency is decided at commit time against a fresh snapshot, so adding
an item never blocks on the network.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date

from pharmapos.validation import ValidationError, require_int, require_text, to_date, to_int, to_text
from .inventory_service import InventorySnapshotItem


class CartError(Exception):
    """Raised for cart operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


@dataclass(frozen=True)
class ProductSnapshot:
    """Price/expiry captured when the product was added to the cart."""
    name: str
    unit_price_cents: int
    selling_price_cents: int | None = None
    expiry_date: date | None = None
    barcode: str | None = None
    batch_number: str | None = None
    dispensing_unit: str | None = None

    @property
    def price_cents(self) -> int:
        if self.selling_price_cents is not None:
            return self.selling_price_cents
        return self.unit_price_cents

    @classmethod
    def from_inventory_item(cls, item: InventorySnapshotItem) -> "ProductSnapshot":
        return cls(
            name=item.name,
            unit_price_cents=item.unit_price_cents,
            selling_price_cents=item.selling_price_cents,
            expiry_date=item.expiry_date,
            barcode=item.barcode_id,
            batch_number=item.batch_number,
            dispensing_unit=item.dispensing_unit,
        )


@dataclass
class CartLine:
    product_id: str
    product: ProductSnapshot
    quantity: int

    @property
    def unit_price_cents(self) -> int:
        return self.product.price_cents

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.product.price_cents

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.product.name,
            "quantity": self.quantity,
            "unit_price_cents": self.product.unit_price_cents,
            "selling_price_cents": self.product.selling_price_cents,
            "price_cents": self.product.price_cents,
            "line_total_cents": self.line_total_cents,
            "expiry_date": self.product.expiry_date.isoformat() if self.product.expiry_date else None,
            "barcode": self.product.barcode,
            "batch_number": self.product.batch_number,
            "dispensing_unit": self.product.dispensing_unit,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CartLine":
        """Rebuild a line serialized by to_dict (held carts)."""
        if not isinstance(data, dict):
            raise ValidationError("Cart line must be an object")
        unit_price_cents = to_int(data.get("unit_price_cents"), "unit_price_cents", minimum=0)
        if unit_price_cents is None:
            raise ValidationError("unit_price_cents is required")
        product = ProductSnapshot(
            name=require_text(data.get("name"), "name"),
            unit_price_cents=unit_price_cents,
            selling_price_cents=to_int(data.get("selling_price_cents"), "selling_price_cents", minimum=0),
            expiry_date=to_date(data.get("expiry_date"), "expiry_date"),
            barcode=to_text(data.get("barcode")),
            batch_number=to_text(data.get("batch_number")),
            dispensing_unit=to_text(data.get("dispensing_unit")),
        )
        return cls(
            product_id=require_text(data.get("product_id"), "product_id"),
            product=product,
            quantity=require_int(data.get("quantity"), "quantity", minimum=1),
        )


class CartStore:
    """
    Mutable line items for one transaction, keyed by product id.

    Lines keep insertion order. last_item_id tracks the most recently touched
    line so keyboard shortcuts (+/-) can act on it.
    """

    def __init__(self):
        self._lines: dict[str, CartLine] = {}
        self._last_item_id: str | None = None

    def __len__(self) -> int:
        return len(self._lines)

    def __contains__(self, product_id: str) -> bool:
        return product_id in self._lines

    @property
    def items(self) -> list[CartLine]:
        """Copies of the lines; mutate through the store's operations only."""
        return [replace(line) for line in self._lines.values()]

    def is_empty(self) -> bool:
        return not self._lines

    def get_line(self, product_id: str) -> CartLine:
        line = self._lines.get(product_id)
        if line is None:
            raise CartError("Item not in cart", {"product_id": product_id})
        return line

    def add_item(self, product: InventorySnapshotItem, quantity: int = 1) -> CartLine:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise CartError("Quantity must be a whole number of at least 1", {"quantity": quantity})

        line = self._lines.get(product.product_id)
        if line is not None:
            line.quantity += quantity
        else:
            line = CartLine(
                product_id=product.product_id,
                product=ProductSnapshot.from_inventory_item(product),
                quantity=quantity,
            )
            self._lines[product.product_id] = line

        self._last_item_id = product.product_id
        return line

    def increment_quantity(self, product_id: str) -> CartLine:
        line = self.get_line(product_id)
        line.quantity += 1
        self._last_item_id = product_id
        return line

    def decrement_quantity(self, product_id: str) -> CartLine | None:
        """Returns the updated line, or None when it dropped below 1 and was removed."""
        line = self.get_line(product_id)
        if line.quantity <= 1:
            self.remove_item(product_id)
            return None
        line.quantity -= 1
        self._last_item_id = product_id
        return line

    def remove_item(self, product_id: str) -> None:
        self.get_line(product_id)
        del self._lines[product_id]
        if self._last_item_id == product_id:
            self._last_item_id = next(reversed(self._lines), None) if self._lines else None

    def clear_cart(self) -> None:
        self._lines.clear()
        self._last_item_id = None

    def reprice(self, product_id: str, selling_price_cents: int | None, unit_price_cents: int) -> CartLine:
        """Overwrite the working price of a line (price drift correction)."""
        line = self.get_line(product_id)
        line.product = replace(
            line.product,
            selling_price_cents=selling_price_cents,
            unit_price_cents=unit_price_cents,
        )
        return line

    def load(self, lines: list[CartLine]) -> None:
        """Replace the cart contents (resuming a held transaction)."""
        self.clear_cart()
        for line in lines:
            if line.product_id in self._lines:
                self._lines[line.product_id].quantity += line.quantity
            else:
                self._lines[line.product_id] = replace(line)
            self._last_item_id = line.product_id

    def get_total(self) -> int:
        return sum(line.line_total_cents for line in self._lines.values())

    def get_total_items(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    def get_last_item_id(self) -> str | None:
        return self._last_item_id

    def to_dict(self) -> dict:
        return {
            "items": [line.to_dict() for line in self._lines.values()],
            "total_cents": self.get_total(),
            "total_items": self.get_total_items(),
            "last_item_id": self._last_item_id,
        }
