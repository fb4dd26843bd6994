"""
Parse-and-validate boundary.

Backend rows and request bodies arrive as loosely-typed JSON. These helpers
coerce them once, at the edge, into the plain Python values the services
work with (ints, cents, dates). Anything that cannot be coerced raises
ValidationError with a message that is safe to show to a cashier.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

from pharmapos.time_utils import parse_iso_date


# Maximum price: 9,999,999.99 in major units (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def first_present(payload: dict, keys: Iterable[str]) -> Any:
    """Return the first non-None value among `keys` (backend column aliases)."""
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def to_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def require_text(value: Any, field: str) -> str:
    text = to_text(value)
    if text is None:
        raise ValidationError(f"{field} is required")
    return text


def to_int(value: Any, field: str, *, minimum: int | None = None) -> int | None:
    """
    Strict integer coercion. Accepts ints and digit strings; also accepts
    floats that are whole numbers (JSON numbers from PostgREST often are).
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"{field} must be a whole number")
        result = int(value)
    else:
        stripped = str(value).strip()
        if "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field} must be a plain integer")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be at least {minimum}")
    return result


def require_int(value: Any, field: str, *, minimum: int | None = None) -> int:
    result = to_int(value, field, minimum=minimum)
    if result is None:
        raise ValidationError(f"{field} is required")
    return result


def to_cents(value: Any, field: str) -> int | None:
    """
    Convert a major-unit amount (500, 499.5, "1,200.00") to integer cents.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        if isinstance(value, (int, float)):
            amount = Decimal(str(value))
        else:
            amount = Decimal(str(value).strip().replace(",", ""))
    except InvalidOperation:
        raise ValidationError(f"{field} must be a number")

    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number")

    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents < 0:
        raise ValidationError(f"{field} cannot be negative")
    if cents > MAX_PRICE_CENTS:
        raise ValidationError(f"{field} is too large")
    return cents


def cents_to_amount(cents: int) -> float | int:
    """Major-unit JSON number for the backend (whole amounts stay ints)."""
    if cents % 100 == 0:
        return cents // 100
    return float(Decimal(cents) / 100)


def to_date(value: Any, field: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return parse_iso_date(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date")


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def require_json_object(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def format_amount(cents: int) -> str:
    """Plain major-unit amount for messages: 50000 -> "500", 49950 -> "499.50"."""
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    if frac == 0:
        return f"{sign}{whole:,}"
    return f"{sign}{whole:,}.{frac:02d}"
