# Overview: Branch-scoped inventory snapshots with a device-local offline cache.

"""
Inventory Snapshot Provider

WHY: The checkout gates need a recent, branch-scoped view of sellable stock.
Online, every read comes from the backend and rewrites the local cache.
Offline, the cache is served and optimistically decremented by local sales.

SNAPSHOTS ARE STALE BY DEFINITION: another till can sell the last unit after
the read. The backend re-validates every commit; this view is best effort.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
import threading

from ..extensions import db
from ..models import CachedInventoryItem
from pharmapos.time_utils import utcnow
from pharmapos.validation import (
    ValidationError,
    first_present,
    require_text,
    to_cents,
    to_date,
    to_int,
    to_text,
)
from .backend_client import SupabaseClient


@dataclass(frozen=True)
class InventorySnapshotItem:
    """Read-only, branch-scoped projection of one sellable batch."""
    product_id: str
    name: str
    branch_stock: int
    unit_price_cents: int
    selling_price_cents: int | None = None
    expiry_date: date | None = None
    reorder_level: int = 0
    batch_number: str | None = None
    barcode_id: str | None = None
    category: str | None = None
    dispensing_unit: str | None = None

    @property
    def price_cents(self) -> int:
        """Selling price when set, else unit price."""
        if self.selling_price_cents is not None:
            return self.selling_price_cents
        return self.unit_price_cents

    @property
    def is_sellable(self) -> bool:
        return self.branch_stock > 0

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "branch_stock": self.branch_stock,
            "unit_price_cents": self.unit_price_cents,
            "selling_price_cents": self.selling_price_cents,
            "price_cents": self.price_cents,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "reorder_level": self.reorder_level,
            "batch_number": self.batch_number,
            "barcode_id": self.barcode_id,
            "category": self.category,
            "dispensing_unit": self.dispensing_unit,
        }


@dataclass(frozen=True)
class InventorySnapshot:
    """Point-in-time read used by one checkout attempt."""
    items: dict[str, InventorySnapshotItem]
    offline: bool
    taken_at: datetime

    def get(self, product_id: str) -> InventorySnapshotItem | None:
        return self.items.get(product_id)


class Connectivity:
    """
    Device-wide online/offline flag.

    Toggled explicitly by the till UI (browser online/offline events) or by
    START_OFFLINE. A failed fetch does not flip it: the cashier sees the error
    and decides.
    """

    def __init__(self, offline: bool = False):
        self._offline = offline
        self._lock = threading.Lock()

    @property
    def offline(self) -> bool:
        return self._offline

    def set_offline(self, offline: bool) -> None:
        with self._lock:
            self._offline = bool(offline)


# =============================================================================
# PARSE BOUNDARY
# =============================================================================

def parse_inventory_item(row: dict, stock_row: dict | None = None) -> InventorySnapshotItem:
    """
    Convert one backend medication row (plus the optional branch_inventory
    row) into an InventorySnapshotItem.

    Column aliases are resolved here, once: branch stock comes from the
    branch row when present, otherwise from the central current_stock.
    """
    if not isinstance(row, dict):
        raise ValidationError("Inventory row must be an object")

    product_id = require_text(row.get("id"), "id")
    name = require_text(row.get("name"), "name")

    if stock_row is not None:
        stock_value = stock_row.get("current_stock")
        reorder_value = first_present(stock_row, ("reorder_level",))
        if reorder_value is None:
            reorder_value = row.get("reorder_level")
    else:
        stock_value = first_present(row, ("branch_stock", "current_stock"))
        reorder_value = first_present(row, ("branch_reorder_level", "reorder_level"))

    branch_stock = to_int(stock_value, "branch_stock") or 0
    unit_price_cents = to_cents(row.get("unit_price"), "unit_price")
    if unit_price_cents is None:
        raise ValidationError(f"{name} has no unit price", {"product_id": product_id})

    return InventorySnapshotItem(
        product_id=product_id,
        name=name,
        branch_stock=max(0, branch_stock),
        unit_price_cents=unit_price_cents,
        selling_price_cents=to_cents(row.get("selling_price"), "selling_price"),
        expiry_date=to_date(row.get("expiry_date"), "expiry_date"),
        reorder_level=to_int(reorder_value, "reorder_level") or 0,
        batch_number=to_text(row.get("batch_number")),
        barcode_id=to_text(row.get("barcode_id")),
        category=to_text(row.get("category")),
        dispensing_unit=to_text(row.get("dispensing_unit")),
    )


def fetch_branch_items(
    client: SupabaseClient,
    pharmacy_id: str,
    branch_id: str | None,
    *,
    product_ids: list[str] | None = None,
) -> list[InventorySnapshotItem]:
    """
    Read catalog rows with branch stock.

    Main branch (branch_id None) sells from the central stock on the
    medications table; other branches read their own branch_inventory rows.
    A medication with no branch row has zero stock at that branch.
    """
    rows = client.fetch_medications(pharmacy_id, product_ids=product_ids)
    if not branch_id:
        return [parse_inventory_item(row) for row in rows]

    stock_rows = client.fetch_branch_inventory(branch_id, product_ids=product_ids)
    by_product = {str(r.get("medication_id")): r for r in stock_rows}
    items = []
    for row in rows:
        stock_row = by_product.get(str(row.get("id")), {"current_stock": 0})
        items.append(parse_inventory_item(row, stock_row))
    return items


# =============================================================================
# LOCAL CACHE
# =============================================================================

def _cache_query(pharmacy_id: str, branch_id: str | None):
    return db.session.query(CachedInventoryItem).filter_by(
        pharmacy_id=pharmacy_id,
        branch_id=branch_id or "",
    )


def _from_cached(row: CachedInventoryItem) -> InventorySnapshotItem:
    return InventorySnapshotItem(
        product_id=row.product_id,
        name=row.name,
        branch_stock=row.branch_stock,
        unit_price_cents=row.unit_price_cents,
        selling_price_cents=row.selling_price_cents,
        expiry_date=row.expiry_date,
        reorder_level=row.reorder_level,
        batch_number=row.batch_number,
        barcode_id=row.barcode_id,
        category=row.category,
        dispensing_unit=row.dispensing_unit,
    )


def write_cache(pharmacy_id: str, branch_id: str | None, items: list[InventorySnapshotItem]) -> None:
    """Replace the cached rows for one (pharmacy, branch) with server truth."""
    now = utcnow()
    _cache_query(pharmacy_id, branch_id).delete(synchronize_session=False)
    for item in items:
        db.session.add(CachedInventoryItem(
            pharmacy_id=pharmacy_id,
            branch_id=branch_id or "",
            product_id=item.product_id,
            name=item.name,
            category=item.category,
            branch_stock=item.branch_stock,
            reorder_level=item.reorder_level,
            unit_price_cents=item.unit_price_cents,
            selling_price_cents=item.selling_price_cents,
            expiry_date=item.expiry_date,
            batch_number=item.batch_number,
            barcode_id=item.barcode_id,
            dispensing_unit=item.dispensing_unit,
            cached_at=now,
        ))
    db.session.commit()


def read_cache(pharmacy_id: str, branch_id: str | None) -> list[InventorySnapshotItem]:
    rows = _cache_query(pharmacy_id, branch_id).order_by(CachedInventoryItem.name).all()
    return [_from_cached(row) for row in rows]


def clear_cache(pharmacy_id: str | None = None) -> int:
    query = db.session.query(CachedInventoryItem)
    if pharmacy_id:
        query = query.filter_by(pharmacy_id=pharmacy_id)
    deleted = query.delete(synchronize_session=False)
    db.session.commit()
    return deleted


# =============================================================================
# PROVIDER
# =============================================================================

@dataclass
class InventorySnapshotProvider:
    """
    Supplies the branch's sellable stock, tagged offline/online.

    Requires an application context (the cache is a SQLAlchemy table).
    """
    client: SupabaseClient
    pharmacy_id: str
    branch_id: str | None
    connectivity: Connectivity = field(default_factory=Connectivity)

    @property
    def offline(self) -> bool:
        return self.connectivity.offline

    def sellable_items(self) -> list[InventorySnapshotItem]:
        """
        Current sellable (stock > 0) list.

        Online: fetched and cached. Offline: served from the cache.
        Raises BackendUnavailable/BackendRejected when an online fetch fails.
        """
        if self.offline:
            items = read_cache(self.pharmacy_id, self.branch_id)
        else:
            items = fetch_branch_items(self.client, self.pharmacy_id, self.branch_id)
            write_cache(self.pharmacy_id, self.branch_id, items)
        return [item for item in items if item.is_sellable]

    def refresh(self) -> list[InventorySnapshotItem]:
        """Force a fetch (ignored offline: returns the cache)."""
        return self.sellable_items()

    def snapshot_for(self, product_ids: list[str]) -> InventorySnapshot:
        """
        Fresh read of specific products, zero-stock rows included, for the
        checkout gates. Offline it returns the cached view without fetching.
        """
        if self.offline:
            cached = {item.product_id: item for item in read_cache(self.pharmacy_id, self.branch_id)}
            items = {pid: cached[pid] for pid in product_ids if pid in cached}
            return InventorySnapshot(items=items, offline=True, taken_at=utcnow())

        fresh = fetch_branch_items(
            self.client,
            self.pharmacy_id,
            self.branch_id,
            product_ids=list(product_ids),
        )
        return InventorySnapshot(
            items={item.product_id: item for item in fresh},
            offline=False,
            taken_at=utcnow(),
        )

    def get_item(self, product_id: str) -> InventorySnapshotItem | None:
        """Look up one product: cache first, then (online) a fresh fetch."""
        row = _cache_query(self.pharmacy_id, self.branch_id).filter_by(product_id=product_id).first()
        if row is not None:
            return _from_cached(row)
        if self.offline:
            return None
        for item in self.sellable_items():
            if item.product_id == product_id:
                return item
        return None

    def update_local_stock(self, product_id: str, quantity_sold: int) -> None:
        """Optimistically decrement the cached copy after an offline sale."""
        row = _cache_query(self.pharmacy_id, self.branch_id).filter_by(product_id=product_id).first()
        if row is None:
            return
        row.branch_stock = max(0, row.branch_stock - quantity_sold)
        db.session.commit()

    def find_by_barcode(self, barcode: str) -> InventorySnapshotItem | None:
        """Works offline: scans the cached sellable list."""
        if not barcode:
            return None
        row = (
            _cache_query(self.pharmacy_id, self.branch_id)
            .filter_by(barcode_id=barcode.strip())
            .filter(CachedInventoryItem.branch_stock > 0)
            .first()
        )
        return _from_cached(row) if row else None

    def search_by_name(self, query: str) -> list[InventorySnapshotItem]:
        """Name/category substring search over the cache (< 2 chars returns everything)."""
        items = [item for item in read_cache(self.pharmacy_id, self.branch_id) if item.is_sellable]
        if not query or len(query.strip()) < 2:
            return items
        needle = query.strip().lower()
        return [
            item for item in items
            if needle in item.name.lower() or (item.category and needle in item.category.lower())
        ]

    def cache_age_minutes(self) -> int | None:
        cached_at = (
            db.session.query(db.func.min(CachedInventoryItem.cached_at))
            .filter(
                CachedInventoryItem.pharmacy_id == self.pharmacy_id,
                CachedInventoryItem.branch_id == (self.branch_id or ""),
            )
            .scalar()
        )
        if cached_at is None:
            return None
        if cached_at.tzinfo is not None:
            cached_at = cached_at.replace(tzinfo=None)
        return int((utcnow() - cached_at).total_seconds() // 60)
