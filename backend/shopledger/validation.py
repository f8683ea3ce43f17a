from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import ValidationError


# Maximum money value: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical amounts
MAX_AMOUNT_CENTS = 999_999_999

CENT = Decimal("0.01")


def parse_money_cents(
    value: Any,
    field: str,
    *,
    allow_zero: bool = True,
    allow_negative: bool = False,
) -> int:
    """
    Convert a decimal amount ("12.50", 12.5, 12) to integer cents.

    Rejects booleans, scientific notation, more than two decimal places,
    and magnitudes above MAX_AMOUNT_CENTS. Negatives are rejected unless
    allow_negative is set, for callers that range-check the sign themselves.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a decimal amount", details={"field": field})

    raw = value.strip() if isinstance(value, str) else str(value)
    if not raw or "e" in raw.lower():
        raise ValidationError(f"{field} must be a plain decimal amount", details={"field": field})

    try:
        amount = Decimal(raw)
    except InvalidOperation:
        raise ValidationError(f"{field} must be a decimal amount", details={"field": field})

    if not amount.is_finite():
        raise ValidationError(f"{field} must be a decimal amount", details={"field": field})
    if amount != amount.quantize(CENT):
        raise ValidationError(f"{field} allows at most two decimal places", details={"field": field})
    if amount < 0 and not allow_negative:
        raise ValidationError(f"{field} cannot be negative", details={"field": field})
    if amount == 0 and not allow_zero:
        raise ValidationError(f"{field} must be greater than zero", details={"field": field})

    cents = int(amount * 100)
    if abs(cents) > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} exceeds maximum amount", details={"field": field})
    return cents


def optional_money_cents(payload: dict, field: str) -> int | None:
    value = payload.get(field)
    if value is None or value == "":
        return None
    return parse_money_cents(value, field)


def parse_int(value: Any, field: str, *, minimum: int | None = None) -> int:
    """Strict integer coercion: no floats, decimals or scientific notation."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", details={"field": field})
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped or "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field} must be an integer", details={"field": field})
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer", details={"field": field})
    else:
        raise ValidationError(f"{field} must be an integer", details={"field": field})

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be at least {minimum}", details={"field": field})
    return result


def optional_int(payload: dict, field: str, *, minimum: int | None = None) -> int | None:
    value = payload.get(field)
    if value is None or value == "":
        return None
    return parse_int(value, field, minimum=minimum)


def require_fields(payload: dict, *fields: str) -> None:
    missing = [f for f in fields if payload.get(f) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )


def clean_str(value: Any, field: str, *, max_length: int) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters", details={"field": field})
    return text


def cents_to_str(cents: int | None) -> str | None:
    """Render cents as a 2-decimal string ("1250" -> "12.50")."""
    if cents is None:
        return None
    return str((Decimal(cents) / 100).quantize(CENT))
