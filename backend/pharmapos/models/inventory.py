from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z


class CachedInventoryItem(db.Model):
    """
    Device-local copy of a branch's sellable stock.

    WHY: The till keeps selling when the backend is unreachable. Every online
    fetch rewrites the rows for its (pharmacy, branch); offline sales decrement
    branch_stock here so the same device does not oversell before the next
    sync.

    MULTI-TENANT: Rows are always read and written scoped by pharmacy_id and
    branch_id. branch_id is "" for single-location pharmacies.
    """
    __tablename__ = "cached_inventory_items"
    __table_args__ = (
        db.UniqueConstraint("pharmacy_id", "branch_id", "product_id", name="uq_cached_inventory_scope_product"),
        db.Index("ix_cached_inventory_scope_name", "pharmacy_id", "branch_id", "name"),
        db.Index("ix_cached_inventory_barcode", "pharmacy_id", "barcode_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    pharmacy_id = db.Column(db.String(64), nullable=False, index=True)
    branch_id = db.Column(db.String(64), nullable=False, default="")

    # Backend identity (uuid string from the medications table)
    product_id = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(120), nullable=True)

    branch_stock = db.Column(db.Integer, nullable=False, default=0)
    reorder_level = db.Column(db.Integer, nullable=False, default=0)

    # Prices in cents; selling price is optional and falls back to unit price
    unit_price_cents = db.Column(db.Integer, nullable=False)
    selling_price_cents = db.Column(db.Integer, nullable=True)

    expiry_date = db.Column(db.Date, nullable=True)
    batch_number = db.Column(db.String(64), nullable=True)
    barcode_id = db.Column(db.String(128), nullable=True)
    dispensing_unit = db.Column(db.String(32), nullable=True)

    cached_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return (
            f"<CachedInventoryItem product_id={self.product_id!r} name={self.name!r} "
            f"branch_stock={self.branch_stock}>"
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "pharmacy_id": self.pharmacy_id,
            "branch_id": self.branch_id or None,
            "name": self.name,
            "category": self.category,
            "branch_stock": self.branch_stock,
            "reorder_level": self.reorder_level,
            "unit_price_cents": self.unit_price_cents,
            "selling_price_cents": self.selling_price_cents,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "batch_number": self.batch_number,
            "barcode_id": self.barcode_id,
            "dispensing_unit": self.dispensing_unit,
            "cached_at": to_utc_z(self.cached_at),
        }
