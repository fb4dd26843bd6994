# Overview: Request decorators that establish till session context for API routes.

from functools import wraps
from flask import current_app, g, jsonify, request

from .services.checkout_service import CheckoutContext
from .services.till_service import build_client


def _header(name: str) -> str | None:
    value = request.headers.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def require_till_context(f):
    """
    Require a cashier session and establish the till context.

    The bearer token is the cashier's backend session; it is forwarded to the
    backend as-is (row-level security there scopes every read and write).

    Sets the following Flask g attributes:
    - g.access_token: The cashier's backend token
    - g.pharmacy_id: Tenant (pharmacy) ID - REQUIRED
    - g.branch_id: Branch ID (None = main branch)
    - g.checkout_context: CheckoutContext built from the headers
    - g.backend: SupabaseClient for this request (closed afterwards)

    Returns 401 without a bearer token and 400 without X-Pharmacy-Id.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        if not token:
            return jsonify({"error": "Authentication required"}), 401

        pharmacy_id = _header("X-Pharmacy-Id")
        if not pharmacy_id:
            return jsonify({"error": "X-Pharmacy-Id header is required"}), 400

        g.access_token = token
        g.pharmacy_id = pharmacy_id
        g.branch_id = _header("X-Branch-Id")
        g.checkout_context = CheckoutContext(
            pharmacy_id=pharmacy_id,
            branch_id=g.branch_id,
            staff_name=_header("X-Staff-Name"),
            shift_id=_header("X-Shift-Id"),
            register_id=kwargs.get("register_id"),
            currency=(_header("X-Currency") or current_app.config["DEFAULT_CURRENCY"]).upper(),
        )

        g.backend = build_client(token)
        try:
            return f(*args, **kwargs)
        finally:
            g.backend.close()

    return decorated_function
