# Overview: Maps service exceptions to JSON error responses.

from flask import jsonify

from .services.backend_client import BackendRejected, BackendUnavailable
from .services.cart_service import CartError
from .services.checkout_service import (
    CheckoutError,
    CheckoutInProgressError,
    ExpiredItemError,
    SaleCommitError,
    StockIssuesError,
)
from .services.held_service import HeldTransactionError, HeldTransactionNotFound
from .services.pending_service import PendingInvoiceError
from .services.receipt_service import ReceiptError
from .validation import ValidationError


# Handled by service_error_response; anything else is a 500
SERVICE_ERRORS = (
    BackendUnavailable,
    BackendRejected,
    CartError,
    CheckoutError,
    HeldTransactionError,
    PendingInvoiceError,
    ReceiptError,
    ValidationError,
)


def status_for(exc: Exception) -> int:
    """
    409: blocking validation (expired, short stock, already submitting)
    503: backend unreachable, retry
    502: backend rejected
    404: held transaction not found
    400: anything else the caller can fix
    """
    if isinstance(exc, HeldTransactionNotFound):
        return 404
    if isinstance(exc, (ExpiredItemError, StockIssuesError, CheckoutInProgressError)):
        return 409
    if isinstance(exc, SaleCommitError):
        return 503 if exc.retryable else 502
    if isinstance(exc, BackendUnavailable):
        return 503
    if isinstance(exc, BackendRejected):
        return 502
    return 400


def service_error_response(exc: Exception):
    body = {"error": str(exc), "details": getattr(exc, "details", {}) or {}}
    status = status_for(exc)
    if status == 503:
        body["retryable"] = True
    return jsonify(body), status
