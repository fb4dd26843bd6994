from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z


class OfflineSale(db.Model):
    """
    Outbox row for a sale committed while the till was offline.

    LIFECYCLE:
    1. PENDING: Written at offline commit time (this is the commit's success)
    2. SYNCING: Being replayed against the backend
    3. FAILED: Backend rejected the replay; kept with the reason for review
    Rows are deleted once the backend accepts them.

    The idempotency_key is generated once, at commit time, and sent on every
    replay so a sale is never recorded twice.
    """
    __tablename__ = "offline_sales"
    __table_args__ = (
        db.Index("ix_offline_sales_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    idempotency_key = db.Column(db.String(64), nullable=False, unique=True)

    # Local receipt number printed on the offline receipt (e.g. "OFF-1A2B3C4D")
    local_receipt_id = db.Column(db.String(64), nullable=False, unique=True)

    pharmacy_id = db.Column(db.String(64), nullable=False, index=True)
    branch_id = db.Column(db.String(64), nullable=False, default="")

    # Sale commit request body, as sent to the backend
    payload = db.Column(db.JSON, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)  # PENDING, SYNCING, FAILED
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<OfflineSale id={self.id} receipt={self.local_receipt_id!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "idempotency_key": self.idempotency_key,
            "local_receipt_id": self.local_receipt_id,
            "pharmacy_id": self.pharmacy_id,
            "branch_id": self.branch_id or None,
            "total_cents": self.total_cents,
            "item_count": len(self.payload.get("items", [])) if self.payload else 0,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
            "last_attempt_at": to_utc_z(self.last_attempt_at),
        }
