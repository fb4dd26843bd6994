# Overview: Flask API routes for the branch's sellable stock (online or cached).

# backend/pharmapos/routes/inventory.py
"""Inventory API routes"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_till_context
from ..errors import SERVICE_ERRORS, service_error_response
from ..services import fefo_service
from ..services.till_service import build_inventory


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _inventory_body(inventory, items) -> dict:
    return {
        "items": [item.to_dict() for item in items],
        "offline": inventory.offline,
        "cache_age_minutes": inventory.cache_age_minutes(),
    }


@inventory_bp.get("")
@require_till_context
def list_inventory_route():
    """
    Sellable (stock > 0) items for the branch.

    Query params:
    - q: name/category search over the cached list (2+ characters)

    Online, the list is fetched and the local cache rewritten. Offline, the
    cache is served. A failed online fetch is a 503, not a silent fallback.
    """
    try:
        inventory = build_inventory(g.backend, g.checkout_context)
        query = request.args.get("q")
        if query:
            items = inventory.search_by_name(query)
        else:
            items = inventory.sellable_items()
        return jsonify(_inventory_body(inventory, items)), 200

    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/grouped")
@require_till_context
def grouped_inventory_route():
    """One entry per product name, batches in expiry order (till product grid)."""
    try:
        inventory = build_inventory(g.backend, g.checkout_context)
        groups = fefo_service.group_by_name(inventory.sellable_items())
        groups.sort(key=lambda group: group.name.lower())
        return jsonify({
            "products": [group.to_dict() for group in groups],
            "offline": inventory.offline,
        }), 200

    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to group inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/barcode/<code>")
@require_till_context
def barcode_lookup_route(code: str):
    """Scanner lookup against the cached list; works offline."""
    inventory = build_inventory(g.backend, g.checkout_context)
    item = inventory.find_by_barcode(code)
    if item is None:
        return jsonify({"error": "Product not found"}), 404
    return jsonify({"item": item.to_dict()}), 200


@inventory_bp.post("/refresh")
@require_till_context
def refresh_inventory_route():
    try:
        inventory = build_inventory(g.backend, g.checkout_context)
        items = inventory.refresh()
        return jsonify(_inventory_body(inventory, items)), 200

    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to refresh inventory")
        return jsonify({"error": "Internal server error"}), 500
