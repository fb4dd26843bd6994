# Overview: Flask API routes for the cashier side of pay-at-cashier invoices.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_till_context
from ..errors import SERVICE_ERRORS, service_error_response
from ..services import fefo_service
from ..services.receipt_service import ReceiptEmitter, load_branding
from ..services.till_service import build_pending_service
from ..validation import require_json_object, to_text


invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


@invoices_bp.get("/lookup")
@require_till_context
def lookup_invoice_route():
    """Find a pending invoice by short code (PH-XXX) or scanned barcode: ?q=..."""
    try:
        invoice = build_pending_service(g.backend, g.checkout_context).find(request.args.get("q", ""))
        if invoice is None:
            return jsonify({"error": "No pending invoice matches that code"}), 404
        return jsonify({"invoice": invoice.to_dict()}), 200

    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to look up invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.post("/<invoice_id>/complete")
@require_till_context
def complete_invoice_route(invoice_id: str):
    """
    Take payment for an invoice: the sale is committed, then the invoice is
    closed.

    Body: {"payment_method": "cash" | "transfer" | "pos"}

    Returns 200 with the closed invoice, the sale and the PAID receipt HTML.
    503: server unreachable (invoice still pending, retry)
    502: server rejected the sale (invoice still pending)
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        payment_method = to_text(data.get("payment_method"))
        if not payment_method:
            return jsonify({"error": "payment_method required"}), 400

        paid = build_pending_service(g.backend, g.checkout_context).complete(invoice_id, payment_method)
        sale = paid.sale

        branding = load_branding(
            g.backend,
            g.pharmacy_id,
            g.branch_id,
            default_name=current_app.config["PHARMACY_NAME"],
        )
        batch_notes = fefo_service.batch_notes_for_sale(sale.items)
        receipt_html = ReceiptEmitter(branding, currency=g.checkout_context.currency).render_receipt(
            sale,
            batch_notes=batch_notes,
        )

        current_app.logger.info(
            "Invoice %s paid by %s as sale %s (total_cents=%s)",
            paid.invoice.short_code, payment_method, sale.receipt_id, sale.total_cents,
        )
        body = paid.to_dict()
        body["batch_notes"] = batch_notes
        body["receipt_html"] = receipt_html
        return jsonify(body), 200

    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to complete invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.post("/<invoice_id>/cancel")
@require_till_context
def cancel_invoice_route(invoice_id: str):
    try:
        invoice = build_pending_service(g.backend, g.checkout_context).cancel(invoice_id)
        return jsonify({"invoice": invoice.to_dict()}), 200

    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel invoice")
        return jsonify({"error": "Internal server error"}), 500
