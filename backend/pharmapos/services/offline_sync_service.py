# Overview: Offline sale outbox and replay on reconnect.

"""
Offline Sale Outbox

WHY: Offline mode is a degraded-trust state. Sales still complete at the
till; they are written to a local outbox and replayed when the backend is
reachable again. The backend is the judge: it re-validates every replayed
sale and may reject it.

RECONNECT POLICY:
- Replay oldest first, one sale per request, with the idempotency key that
  was generated at the offline commit (a replay can never double-record).
- Accepted: the outbox row is deleted.
- Rejected: the row is marked FAILED with the backend's reason and kept for
  a manager to review. Nothing is dropped silently.
- Network failure: the run stops, the row goes back to PENDING.
- The next online inventory fetch overwrites the local stock cache, which
  discards the optimistic offline decrements in favour of server truth.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import secrets
import threading

from flask import current_app

from ..extensions import db
from ..models import OfflineSale
from pharmapos.time_utils import utcnow
from pharmapos.validation import first_present, to_text
from .backend_client import BackendRejected, BackendUnavailable, SupabaseClient
from .concurrency import run_with_retry


OUTBOX_STATUS_PENDING = "PENDING"
OUTBOX_STATUS_SYNCING = "SYNCING"
OUTBOX_STATUS_FAILED = "FAILED"

MISSING_RECEIPT_MESSAGE = (
    "The sale was sent but no receipt number came back. "
    "Check sales history before trying again."
)

_sync_lock = threading.Lock()


def _local_receipt_id() -> str:
    return f"OFF-{secrets.token_hex(4).upper()}"


def parse_receipt_id(result: dict) -> str:
    """Receipt id out of a sale commit response (the backend names it a few ways)."""
    receipt_id = to_text(first_present(result, ("receipt_id", "receiptId", "id")))
    if receipt_id is None:
        raise BackendRejected(MISSING_RECEIPT_MESSAGE, 502, {"reason": "missing receipt_id"})
    return receipt_id


def enqueue_offline_sale(request: dict, idempotency_key: str) -> OfflineSale:
    """Write an offline commit to the outbox. Committing this row is the sale's success."""
    def _op():
        existing = db.session.query(OfflineSale).filter_by(idempotency_key=idempotency_key).first()
        if existing:
            return existing

        row = OfflineSale(
            idempotency_key=idempotency_key,
            local_receipt_id=_local_receipt_id(),
            pharmacy_id=request["pharmacy_id"],
            branch_id=request.get("branch_id") or "",
            payload=request,
            total_cents=request["total_cents"],
            status=OUTBOX_STATUS_PENDING,
            attempts=0,
            created_at=utcnow(),
        )
        db.session.add(row)
        db.session.commit()
        return row

    return run_with_retry(_op)


def list_outbox(pharmacy_id: str | None = None, status: str | None = None) -> list[OfflineSale]:
    query = db.session.query(OfflineSale)
    if pharmacy_id:
        query = query.filter_by(pharmacy_id=pharmacy_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(OfflineSale.created_at.asc(), OfflineSale.id.asc()).all()


def pending_count(pharmacy_id: str | None = None) -> int:
    query = db.session.query(OfflineSale).filter(
        OfflineSale.status.in_([OUTBOX_STATUS_PENDING, OUTBOX_STATUS_SYNCING])
    )
    if pharmacy_id:
        query = query.filter_by(pharmacy_id=pharmacy_id)
    return query.count()


@dataclass
class SyncReport:
    synced: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)
    remaining: int = 0
    stopped_reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "synced": self.synced,
            "failed": self.failed,
            "remaining": self.remaining,
            "stopped_reason": self.stopped_reason,
        }


def sync_offline_sales(
    client: SupabaseClient,
    *,
    pharmacy_id: str | None = None,
    include_failed: bool = True,
) -> SyncReport:
    """
    Replay outbox rows against the backend.

    Only one sync runs at a time per process; a concurrent call returns
    immediately with stopped_reason set.
    """
    report = SyncReport()
    if not _sync_lock.acquire(blocking=False):
        report.stopped_reason = "A sync is already running"
        report.remaining = pending_count(pharmacy_id)
        return report

    logger = current_app.logger
    try:
        statuses = [OUTBOX_STATUS_PENDING, OUTBOX_STATUS_SYNCING]
        if include_failed:
            statuses.append(OUTBOX_STATUS_FAILED)

        query = db.session.query(OfflineSale).filter(OfflineSale.status.in_(statuses))
        if pharmacy_id:
            query = query.filter_by(pharmacy_id=pharmacy_id)
        rows = query.order_by(OfflineSale.created_at.asc(), OfflineSale.id.asc()).all()

        for row in rows:
            row.status = OUTBOX_STATUS_SYNCING
            row.attempts = (row.attempts or 0) + 1
            row.last_attempt_at = utcnow()
            db.session.commit()

            try:
                result = client.commit_sale(row.payload, row.idempotency_key)
                receipt_id = parse_receipt_id(result)
            except BackendUnavailable as exc:
                row.status = OUTBOX_STATUS_PENDING
                row.last_error = str(exc)
                db.session.commit()
                report.stopped_reason = str(exc)
                logger.warning("Offline sale sync stopped at %s: backend unreachable", row.local_receipt_id)
                break
            except BackendRejected as exc:
                row.status = OUTBOX_STATUS_FAILED
                row.last_error = str(exc)[:500]
                db.session.commit()
                report.failed.append({
                    "local_receipt_id": row.local_receipt_id,
                    "error": str(exc),
                })
                logger.warning(
                    "Offline sale %s rejected by backend: %s (details=%s)",
                    row.local_receipt_id, exc, exc.details,
                )
                continue

            report.synced.append({
                "local_receipt_id": row.local_receipt_id,
                "receipt_id": receipt_id,
            })
            logger.info("Offline sale %s synced as receipt %s", row.local_receipt_id, receipt_id)
            db.session.delete(row)
            db.session.commit()

        report.remaining = pending_count(pharmacy_id)
        return report
    finally:
        _sync_lock.release()


class SaleCommitter:
    """
    Routes a sale commit request: online to the backend RPC, offline to the
    outbox. Returns the receipt id either way.
    """

    def __init__(self, client: SupabaseClient):
        self.client = client

    def commit(self, request: dict, idempotency_key: str) -> str:
        if request.get("force_offline"):
            return enqueue_offline_sale(request, idempotency_key).local_receipt_id
        result = self.client.commit_sale(request, idempotency_key)
        return parse_receipt_id(result)
