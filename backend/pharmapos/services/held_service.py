"""
Held-Transaction Store

A cashier can park a cart (customer stepped away, went to fetch money) and
serve the next customer. Held carts live in the device-local database,
scoped by pharmacy and branch. Holding never touches inventory or the
backend; a resumed cart goes through the normal checkout gates.
"""
from __future__ import annotations

import secrets
import string
import time

from ..extensions import db
from ..models import HeldTransaction
from pharmapos.time_utils import utcnow
from pharmapos.validation import ValidationError, to_text
from .cart_service import CartLine, CartStore


_ID_ALPHABET = string.ascii_lowercase + string.digits


class HeldTransactionError(Exception):
    """Raised for held-transaction errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class HeldTransactionNotFound(HeldTransactionError):
    pass


def _generate_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"held_{int(time.time() * 1000)}_{suffix}"


def _scoped(pharmacy_id: str, branch_id: str | None):
    return db.session.query(HeldTransaction).filter_by(
        pharmacy_id=pharmacy_id,
        branch_id=branch_id or "",
    )


def hold(
    cart: CartStore,
    customer_name: str | None,
    *,
    pharmacy_id: str,
    branch_id: str | None = None,
    register_id: str | None = None,
    held_by: str | None = None,
) -> HeldTransaction:
    """Park the cart and clear it. Returns the new held transaction."""
    if cart.is_empty():
        raise HeldTransactionError("Cannot hold an empty cart")

    held = HeldTransaction(
        id=_generate_id(),
        pharmacy_id=pharmacy_id,
        branch_id=branch_id or "",
        register_id=register_id,
        customer_name=to_text(customer_name) or "Walk-in customer",
        total_cents=cart.get_total(),
        items=[line.to_dict() for line in cart.items],
        held_by=held_by,
        held_at=utcnow(),
    )
    db.session.add(held)
    db.session.commit()

    cart.clear_cart()
    return held


def get_held(held_id: str, *, pharmacy_id: str, branch_id: str | None = None) -> HeldTransaction:
    held = _scoped(pharmacy_id, branch_id).filter_by(id=held_id).first()
    if held is None:
        raise HeldTransactionNotFound("Held transaction not found", {"held_id": held_id})
    return held


def resume(held_id: str, cart: CartStore, *, pharmacy_id: str, branch_id: str | None = None) -> HeldTransaction:
    """
    Remove the held transaction and load its lines into `cart`, replacing
    whatever was there. The row is only deleted once its lines parsed.
    """
    held = get_held(held_id, pharmacy_id=pharmacy_id, branch_id=branch_id)
    try:
        lines = [CartLine.from_dict(item) for item in held.items or []]
    except ValidationError as exc:
        raise HeldTransactionError(f"Held transaction is corrupted: {exc}", {"held_id": held_id})

    cart.load(lines)
    db.session.delete(held)
    db.session.commit()
    return held


def delete(held_id: str, *, pharmacy_id: str, branch_id: str | None = None) -> None:
    held = get_held(held_id, pharmacy_id=pharmacy_id, branch_id=branch_id)
    db.session.delete(held)
    db.session.commit()


def list_held(pharmacy_id: str, branch_id: str | None = None) -> list[HeldTransaction]:
    """Newest first."""
    return (
        _scoped(pharmacy_id, branch_id)
        .order_by(HeldTransaction.held_at.desc(), HeldTransaction.id.desc())
        .all()
    )


def clear_all(pharmacy_id: str | None = None, branch_id: str | None = None) -> int:
    """Discard every held cart in scope (all scopes when pharmacy_id is None)."""
    if pharmacy_id:
        query = _scoped(pharmacy_id, branch_id)
    else:
        query = db.session.query(HeldTransaction)
    deleted = query.delete(synchronize_session=False)
    db.session.commit()
    return deleted
