# Overview: Flask API routes for one register's cart, checkout, hold and invoice flow.

# backend/pharmapos/routes/tills.py
"""Till API routes: cart edits, checkout, hold/resume and pay-at-cashier invoices"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_till_context
from ..errors import SERVICE_ERRORS, service_error_response
from ..services import fefo_service, held_service
from ..services.checkout_service import CustomerSelection
from ..services.receipt_service import ReceiptEmitter, load_branding
from ..services.till_service import (
    build_engine,
    build_inventory,
    build_pending_service,
    get_connectivity,
    get_registry,
)
from ..validation import (
    ValidationError,
    require_int,
    require_json_object,
    require_text,
    to_bool,
    to_int,
    to_text,
)


tills_bp = Blueprint("tills", __name__, url_prefix="/api/tills")


def _till(register_id: str):
    return get_registry().get(g.pharmacy_id, g.branch_id, register_id)


def _cart_response(till, status: int = 200, **extra):
    body = {
        "cart": till.cart.to_dict(),
        "offline": get_connectivity().offline,
    }
    body.update(extra)
    return jsonify(body), status


def _emitter(offline: bool) -> ReceiptEmitter:
    branding = load_branding(
        g.backend,
        g.pharmacy_id,
        g.branch_id,
        offline=offline,
        default_name=current_app.config["PHARMACY_NAME"],
    )
    return ReceiptEmitter(branding, currency=g.checkout_context.currency)


@tills_bp.get("")
@require_till_context
def list_tills_route():
    """Registers this service holds in memory for the caller's pharmacy and branch, with their carts."""
    tills = [
        till.to_dict()
        for till in get_registry().all()
        if till.pharmacy_id == g.pharmacy_id and (till.branch_id or None) == (g.branch_id or None)
    ]
    tills.sort(key=lambda t: t["register_id"])
    return jsonify({"tills": tills, "offline": get_connectivity().offline}), 200


# =============================================================================
# CART
# =============================================================================

@tills_bp.get("/<register_id>/cart")
@require_till_context
def get_cart_route(register_id: str):
    till = _till(register_id)
    return _cart_response(till, checkout_in_progress=till.guard.in_flight)


@tills_bp.delete("/<register_id>/cart")
@require_till_context
def clear_cart_route(register_id: str):
    till = _till(register_id)
    try:
        with till.guard.exclusive():
            till.cart.clear_cart()
    except SERVICE_ERRORS as e:
        return service_error_response(e)
    return _cart_response(till)


@tills_bp.post("/<register_id>/cart/items")
@require_till_context
def add_item_route(register_id: str):
    """
    Add a product by id or scanned barcode.

    Body: {"product_id": "..."} or {"barcode": "..."}, optional "quantity" (default 1)
    No stock check here; stock is validated at checkout.
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        quantity = to_int(data.get("quantity"), "quantity", minimum=1) or 1
        product_id = to_text(data.get("product_id"))
        barcode = to_text(data.get("barcode"))
        if not product_id and not barcode:
            return jsonify({"error": "product_id or barcode required"}), 400

        inventory = build_inventory(g.backend, g.checkout_context)
        if product_id:
            item = inventory.get_item(product_id)
        else:
            item = inventory.find_by_barcode(barcode)
        if item is None:
            return jsonify({"error": "Product not found"}), 404

        till = _till(register_id)
        with till.guard.exclusive():
            line = till.cart.add_item(item, quantity)
        return _cart_response(till, 201, line=line.to_dict())

    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add item to cart")
        return jsonify({"error": "Internal server error"}), 500


@tills_bp.post("/<register_id>/cart/items/by-name")
@require_till_context
def add_item_by_name_route(register_id: str):
    """
    Add a product by name, first-expired first-out across its valid batches.

    Body: {"name": "Paracetamol 500mg", "quantity": 3}
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        name = require_text(data.get("name"), "name")
        quantity = require_int(data.get("quantity", 1), "quantity", minimum=1)

        inventory = build_inventory(g.backend, g.checkout_context)
        plan = fefo_service.plan_deductions(inventory.sellable_items(), name, quantity)
        if not plan.deductions:
            return jsonify({"error": f"{name}: no unexpired stock"}), 404
        if plan.shortfall > 0:
            return jsonify({
                "error": f"{name}: only {plan.total_deducted} available (you asked for {quantity})",
                "details": {"available": plan.total_deducted, "requested": quantity},
            }), 409

        till = _till(register_id)
        with till.guard.exclusive():
            for deduction in plan.deductions:
                till.cart.add_item(deduction.item, deduction.quantity)

        return _cart_response(
            till,
            201,
            batch_notes=plan.batch_notes if plan.used_multiple_batches else [],
        )

    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add item by name")
        return jsonify({"error": "Internal server error"}), 500


@tills_bp.post("/<register_id>/cart/items/<product_id>/increment")
@require_till_context
def increment_item_route(register_id: str, product_id: str):
    till = _till(register_id)
    try:
        with till.guard.exclusive():
            till.cart.increment_quantity(product_id)
    except SERVICE_ERRORS as e:
        return service_error_response(e)
    return _cart_response(till)


@tills_bp.post("/<register_id>/cart/items/<product_id>/decrement")
@require_till_context
def decrement_item_route(register_id: str, product_id: str):
    """Decrementing a quantity of 1 removes the line."""
    till = _till(register_id)
    try:
        with till.guard.exclusive():
            line = till.cart.decrement_quantity(product_id)
    except SERVICE_ERRORS as e:
        return service_error_response(e)
    return _cart_response(till, removed=line is None)


@tills_bp.delete("/<register_id>/cart/items/<product_id>")
@require_till_context
def remove_item_route(register_id: str, product_id: str):
    till = _till(register_id)
    try:
        with till.guard.exclusive():
            till.cart.remove_item(product_id)
    except SERVICE_ERRORS as e:
        return service_error_response(e)
    return _cart_response(till)


# =============================================================================
# CHECKOUT
# =============================================================================

def _customer_from(data: dict) -> CustomerSelection:
    patient = data.get("patient")
    if patient is not None and not isinstance(patient, dict):
        raise ValidationError("patient must be an object")
    patient = patient or {}
    return CustomerSelection(
        patient_id=to_text(patient.get("id")),
        patient_name=to_text(patient.get("name")),
        free_text_name=to_text(data.get("customer_name")),
    )


@tills_bp.post("/<register_id>/checkout")
@require_till_context
def checkout_route(register_id: str):
    """
    Validate the cart against fresh stock and commit the sale.

    Body:
    {
        "payment_method": "cash" | "transfer" | "pos",
        "patient": {"id": "...", "name": "..."},     (optional)
        "customer_name": "...",                      (optional free text)
        "prescription_images": ["..."],              (optional)
        "clear_cart": true                           (optional)
    }

    Returns 201 with the sale, any price-change notice and the receipt HTML.
    409: expired item or stock changed (cart unchanged, every issue listed)
    503: server unreachable (cart unchanged, retry)
    502: server rejected the sale (cart unchanged)
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        images = data.get("prescription_images") or []
        if not isinstance(images, list) or not all(isinstance(i, str) for i in images):
            return jsonify({"error": "prescription_images must be a list of strings"}), 400

        till = _till(register_id)
        engine = build_engine(g.backend, g.checkout_context, till)
        result = engine.checkout(
            till.cart,
            payment_method=to_text(data.get("payment_method")) or "cash",
            customer=_customer_from(data),
            prescription_images=images,
            clear_cart=to_bool(data.get("clear_cart", True)),
        )

        sale = result.sale
        batch_notes = fefo_service.batch_notes_for_sale(sale.items)
        receipt_html = _emitter(sale.offline).render_receipt(sale, batch_notes=batch_notes)

        current_app.logger.info(
            "Sale %s committed at register %s (%s, total_cents=%s)",
            sale.receipt_id, register_id, "offline" if sale.offline else "online", sale.total_cents,
        )
        body = result.to_dict()
        body["batch_notes"] = batch_notes
        body["receipt_html"] = receipt_html
        body["cart"] = till.cart.to_dict()
        return jsonify(body), 201

    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to check out")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# HOLD / RESUME
# =============================================================================

@tills_bp.post("/<register_id>/hold")
@require_till_context
def hold_route(register_id: str):
    """Body: {"customer_name": "..."} (optional)"""
    try:
        data = require_json_object(request.get_json(silent=True))
        till = _till(register_id)
        with till.guard.exclusive():
            held = held_service.hold(
                till.cart,
                data.get("customer_name"),
                pharmacy_id=g.pharmacy_id,
                branch_id=g.branch_id,
                register_id=register_id,
                held_by=g.checkout_context.staff_name,
            )
        return _cart_response(till, 201, held=held.to_dict())

    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to hold transaction")
        return jsonify({"error": "Internal server error"}), 500


@tills_bp.post("/<register_id>/held/<held_id>/resume")
@require_till_context
def resume_route(register_id: str, held_id: str):
    """Replaces the till's cart with the held one."""
    try:
        till = _till(register_id)
        with till.guard.exclusive():
            held = held_service.resume(held_id, till.cart, pharmacy_id=g.pharmacy_id, branch_id=g.branch_id)
        return _cart_response(till, resumed=held.to_dict())

    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to resume held transaction")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAY-AT-CASHIER INVOICE
# =============================================================================

@tills_bp.post("/<register_id>/invoice")
@require_till_context
def create_invoice_route(register_id: str):
    """
    Turn the cart into an unpaid invoice and return the slip.

    Body: {"customer_name": "...", "clear_cart": true} (both optional)
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        till = _till(register_id)
        with till.guard.exclusive():
            lines = till.cart.items
            invoice = build_pending_service(g.backend, g.checkout_context).create(
                till.cart,
                clear_cart=to_bool(data.get("clear_cart", True)),
            )
        slip = _emitter(offline=False).render_invoice(
            lines,
            short_code=invoice.short_code,
            barcode_value=invoice.barcode,
            customer_name=to_text(data.get("customer_name")),
            staff_name=g.checkout_context.staff_name,
            issued_at=invoice.created_at,
        )
        return _cart_response(till, 201, invoice=invoice.to_dict(), invoice_html=slip)

    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create invoice")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# CONNECTIVITY
# =============================================================================

@tills_bp.put("/<register_id>/connectivity")
@require_till_context
def set_connectivity_route(register_id: str):
    """
    Body: {"offline": true|false}

    Device-wide: every register on this till service switches together.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or "offline" not in data:
        return jsonify({"error": "offline required"}), 400

    connectivity = get_connectivity()
    connectivity.set_offline(to_bool(data["offline"]))
    current_app.logger.info(
        "Register %s switched device to %s mode", register_id, "offline" if connectivity.offline else "online",
    )
    return jsonify({"offline": connectivity.offline}), 200
