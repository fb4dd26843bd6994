"""
FEFO (first-expired, first-out) helpers.

Each batch of a medication is its own catalog row. The till shows one entry
per product name and sells from the earliest-expiring valid batch first.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from pharmapos.time_utils import start_of_day, utcnow
from .inventory_service import InventorySnapshotItem


# Used when no valid batch carries a reorder level
DEFAULT_REORDER_LEVEL = 10


def normalize_name(name: str) -> str:
    return (name or "").strip().lower()


def is_expired_batch(expiry_date: date | None, now: datetime | None = None) -> bool:
    """A batch with no expiry date never expires; otherwise start-of-day < now."""
    if expiry_date is None:
        return False
    return start_of_day(expiry_date) < (now or utcnow())


def _expiry_sort_key(item: InventorySnapshotItem):
    # Undated batches sort last
    return (item.expiry_date is None, item.expiry_date or date.max)


@dataclass(frozen=True)
class GroupedProduct:
    name: str
    category: str | None
    total_stock: int
    lowest_price_cents: int
    highest_price_cents: int
    display_price_cents: int
    earliest_expiry: date | None
    batches: tuple[InventorySnapshotItem, ...]
    earliest_batch: InventorySnapshotItem
    has_multiple_batches: bool
    has_expired_batch: bool
    has_low_stock: bool
    barcode_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "category": self.category,
            "total_stock": self.total_stock,
            "lowest_price_cents": self.lowest_price_cents,
            "highest_price_cents": self.highest_price_cents,
            "display_price_cents": self.display_price_cents,
            "earliest_expiry": self.earliest_expiry.isoformat() if self.earliest_expiry else None,
            "batches": [batch.to_dict() for batch in self.batches],
            "earliest_batch_id": self.earliest_batch.product_id,
            "has_multiple_batches": self.has_multiple_batches,
            "has_expired_batch": self.has_expired_batch,
            "has_low_stock": self.has_low_stock,
            "barcode_id": self.barcode_id,
        }


def group_by_name(items: list[InventorySnapshotItem], now: datetime | None = None) -> list[GroupedProduct]:
    """Group batches by normalized name. Totals and prices count valid batches only."""
    now = now or utcnow()
    groups: dict[str, list[InventorySnapshotItem]] = {}
    for item in items:
        groups.setdefault(normalize_name(item.name), []).append(item)

    result = []
    for batches in groups.values():
        ordered = sorted(batches, key=_expiry_sort_key)
        valid = [b for b in ordered if not is_expired_batch(b.expiry_date, now)]
        earliest = valid[0] if valid else ordered[0]

        total_stock = sum(b.branch_stock for b in valid)
        prices = [b.price_cents for b in valid if b.price_cents > 0]
        if valid:
            reorder_level = sum(b.reorder_level for b in valid) / len(valid)
        else:
            reorder_level = 0
        if not reorder_level:
            reorder_level = DEFAULT_REORDER_LEVEL

        barcode_id = earliest.barcode_id or next((b.barcode_id for b in ordered if b.barcode_id), None)

        result.append(GroupedProduct(
            name=earliest.name,
            category=earliest.category,
            total_stock=total_stock,
            lowest_price_cents=min(prices) if prices else 0,
            highest_price_cents=max(prices) if prices else 0,
            display_price_cents=earliest.price_cents if valid else 0,
            earliest_expiry=earliest.expiry_date,
            batches=tuple(ordered),
            earliest_batch=earliest,
            has_multiple_batches=len(valid) > 1,
            has_expired_batch=any(is_expired_batch(b.expiry_date, now) for b in ordered),
            has_low_stock=total_stock <= reorder_level,
            barcode_id=barcode_id,
        ))
    return result


def batch_note(quantity: int, expiry_date: date | None) -> str:
    """Receipt note, e.g. "2x exp Mar 27"."""
    if expiry_date is None:
        return f"{quantity}x no expiry"
    return f"{quantity}x exp {expiry_date.strftime('%b %y')}"


@dataclass(frozen=True)
class BatchDeduction:
    item: InventorySnapshotItem
    quantity: int

    @property
    def note(self) -> str:
        return batch_note(self.quantity, self.item.expiry_date)


@dataclass(frozen=True)
class DeductionPlan:
    deductions: tuple[BatchDeduction, ...]
    requested: int

    @property
    def total_deducted(self) -> int:
        return sum(d.quantity for d in self.deductions)

    @property
    def shortfall(self) -> int:
        return self.requested - self.total_deducted

    @property
    def used_multiple_batches(self) -> bool:
        return len(self.deductions) > 1

    @property
    def batch_notes(self) -> list[str]:
        return [d.note for d in self.deductions]


def plan_deductions(
    items: list[InventorySnapshotItem],
    product_name: str,
    quantity: int,
    now: datetime | None = None,
) -> DeductionPlan:
    """Allocate `quantity` across valid in-stock batches of one product, earliest expiry first."""
    now = now or utcnow()
    key = normalize_name(product_name)
    candidates = sorted(
        (
            item for item in items
            if normalize_name(item.name) == key
            and item.branch_stock > 0
            and not is_expired_batch(item.expiry_date, now)
        ),
        key=_expiry_sort_key,
    )

    deductions = []
    remaining = quantity
    for batch in candidates:
        if remaining <= 0:
            break
        take = min(remaining, batch.branch_stock)
        deductions.append(BatchDeduction(item=batch, quantity=take))
        remaining -= take

    return DeductionPlan(deductions=tuple(deductions), requested=quantity)


def batch_notes_for_sale(items) -> list[str]:
    """
    Notes for products in a sale that were drawn from more than one batch.
    `items` are the committed SaleItems; each carries its own batch's
    product_id, expiry_date and quantity.
    """
    groups: dict[str, list] = {}
    for item in items:
        groups.setdefault(normalize_name(item.name), []).append(item)

    notes = []
    for batches in groups.values():
        if len({item.product_id for item in batches}) < 2:
            continue
        ordered = sorted(batches, key=_expiry_sort_key)
        notes.append(f"{ordered[0].name}: {', '.join(batch_note(i.quantity, i.expiry_date) for i in ordered)}")
    return notes
