# Overview: Flask API routes for the offline sale outbox.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_till_context
from ..errors import SERVICE_ERRORS, service_error_response
from ..services import offline_sync_service
from ..services.till_service import get_connectivity
from ..validation import to_bool


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.get("/outbox")
@require_till_context
def list_outbox_route():
    """
    Offline sales waiting to sync (and rejected ones kept for review).

    Query params:
    - status: PENDING | SYNCING | FAILED
    """
    status = request.args.get("status")
    if status and status.upper() not in {
        offline_sync_service.OUTBOX_STATUS_PENDING,
        offline_sync_service.OUTBOX_STATUS_SYNCING,
        offline_sync_service.OUTBOX_STATUS_FAILED,
    }:
        return jsonify({"error": "Invalid status"}), 400

    rows = offline_sync_service.list_outbox(g.pharmacy_id, status.upper() if status else None)
    return jsonify({
        "sales": [row.to_dict() for row in rows],
        "pending": offline_sync_service.pending_count(g.pharmacy_id),
    }), 200


@sync_bp.post("")
@require_till_context
def sync_route():
    """
    Replay the outbox against the server, oldest first.

    Body: {"include_failed": true} (optional)
    Refused while the device is in offline mode.
    """
    if get_connectivity().offline:
        return jsonify({"error": "Device is offline. Go online before syncing."}), 409

    try:
        data = request.get_json(silent=True) or {}
        report = offline_sync_service.sync_offline_sales(
            g.backend,
            pharmacy_id=g.pharmacy_id,
            include_failed=to_bool(data.get("include_failed", True)) if isinstance(data, dict) else True,
        )
        return jsonify(report.to_dict()), 200

    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to sync offline sales")
        return jsonify({"error": "Internal server error"}), 500
