from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z


class HeldTransaction(db.Model):
    """
    A cart parked by a cashier without committing a sale.

    Append/remove only: rows are created by hold and deleted by resume or
    discard, never edited in place. Holding never touches inventory or the
    backend, so a held cart can go stale; the normal checkout gates apply
    when it is resumed and committed.
    """
    __tablename__ = "held_transactions"
    __table_args__ = (
        db.Index("ix_held_transactions_scope_held_at", "pharmacy_id", "branch_id", "held_at"),
    )

    # e.g. "held_1760832000000_k3j9x0abc"
    id = db.Column(db.String(64), primary_key=True)
    pharmacy_id = db.Column(db.String(64), nullable=False, index=True)
    branch_id = db.Column(db.String(64), nullable=False, default="")
    register_id = db.Column(db.String(64), nullable=True)

    customer_name = db.Column(db.String(255), nullable=False, default="")
    total_cents = db.Column(db.Integer, nullable=False)

    # Serialized CartLine dicts (see cart_service.CartLine.to_dict)
    items = db.Column(db.JSON, nullable=False)

    held_by = db.Column(db.String(255), nullable=True)
    held_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<HeldTransaction id={self.id!r} customer={self.customer_name!r} total_cents={self.total_cents}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pharmacy_id": self.pharmacy_id,
            "branch_id": self.branch_id or None,
            "register_id": self.register_id,
            "customer_name": self.customer_name,
            "total_cents": self.total_cents,
            "items": self.items,
            "item_count": sum(int(item.get("quantity", 0)) for item in self.items or []),
            "held_by": self.held_by,
            "held_at": to_utc_z(self.held_at),
        }
