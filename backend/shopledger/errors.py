# Overview: Typed domain errors shared by services and routes.

"""
Domain error taxonomy.

Every error a service raises on purpose is a DomainError subclass, so the
API layer can branch on `code` and return `status_code` without parsing
messages. Infrastructure failures are NOT wrapped here; they propagate and
the transaction is rolled back by the unit-of-work helper.
"""

from __future__ import annotations


class DomainError(Exception):
    """Base class for expected business failures."""

    code = "domain_error"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class ValidationError(DomainError, ValueError):
    """400-level input problem (field-level detail in `details`)."""

    code = "validation_error"
    status_code = 400


class NotFoundError(DomainError):
    code = "not_found"
    status_code = 404


class InsufficientStockError(DomainError):
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, product_id: int, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}",
            details={
                "product_id": product_id,
                "requested": requested,
                "available": available,
            },
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class PurchaseBlockedError(DomainError):
    """Credit purchase refused because the customer's credit period expired."""

    code = "purchase_blocked"
    status_code = 403

    def __init__(self, customer_id: int, reason: str = "credit_period_expired"):
        super().__init__(
            "Customer credit period has expired. Settle outstanding credit first.",
            details={"customer_id": customer_id, "reason": reason},
        )
        self.customer_id = customer_id
        self.reason = reason


class InvalidSettlementError(DomainError):
    code = "invalid_settlement"
    status_code = 400

    def __init__(self, message: str, *, amount_cents: int, max_amount_cents: int):
        super().__init__(
            message,
            details={
                "amount_cents": amount_cents,
                "min_amount_cents": 1,
                "max_amount_cents": max_amount_cents,
            },
        )
        self.amount_cents = amount_cents
        self.max_amount_cents = max_amount_cents


class InvalidStateError(DomainError):
    """409-level lifecycle conflict (e.g. receiving a received order)."""

    code = "invalid_state"
    status_code = 409


class ConcurrencyConflictError(DomainError):
    """Lock or version contention that survived the boundary retry."""

    code = "concurrency_conflict"
    status_code = 503


class ConflictError(DomainError):
    """409-level uniqueness conflict (e.g., duplicate product code)."""

    code = "conflict"
    status_code = 409
