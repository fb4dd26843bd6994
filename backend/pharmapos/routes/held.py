# Overview: Flask API routes for listing and discarding held carts.

from flask import Blueprint, current_app, g, jsonify

from ..decorators import require_till_context
from ..errors import SERVICE_ERRORS, service_error_response
from ..services import held_service


held_bp = Blueprint("held", __name__, url_prefix="/api/held")


@held_bp.get("")
@require_till_context
def list_held_route():
    """Held carts for the caller's pharmacy and branch, newest first."""
    held = held_service.list_held(g.pharmacy_id, g.branch_id)
    return jsonify({"held": [h.to_dict() for h in held], "count": len(held)}), 200


@held_bp.delete("")
@require_till_context
def clear_held_route():
    try:
        deleted = held_service.clear_all(g.pharmacy_id, g.branch_id)
    except Exception:
        current_app.logger.exception("Failed to clear held transactions")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"deleted": deleted}), 200


@held_bp.delete("/<held_id>")
@require_till_context
def delete_held_route(held_id: str):
    try:
        held_service.delete(held_id, pharmacy_id=g.pharmacy_id, branch_id=g.branch_id)
    except SERVICE_ERRORS as e:
        return service_error_response(e)
    return jsonify({"deleted": held_id}), 200
