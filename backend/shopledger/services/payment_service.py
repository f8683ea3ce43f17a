# Overview: Payment records against sales; later partial payments toward a sale's due amount.

"""
Payment Service

WHY: Checkout records the cash and card portions of a sale as payments. A
sale that was not fully paid at checkout can be paid down later; those
payments reduce the sale's due amount.

DESIGN PRINCIPLES:
- Payments are immutable rows (kind SALE or SETTLEMENT)
- The credit portion of a sale is a charge on the customer's credit ledger,
  not a payment
- Credit settlements are pooled per customer (see settlement_service)
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..events import SalePaymentRecorded, dispatch_after_commit
from ..extensions import db
from ..models import Customer, Payment, Sale
from shopledger.time_utils import normalize_utc, utcnow
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry


logger = logging.getLogger(__name__)


# =============================================================================
# PAYMENT KINDS (CONSTANTS)
# =============================================================================

PAYMENT_KIND_SALE = "SALE"
PAYMENT_KIND_SETTLEMENT = "SETTLEMENT"


# =============================================================================
# PAYMENT METHODS (CONSTANTS)
# =============================================================================

METHOD_CASH = "cash"
METHOD_CARD = "card"
METHOD_CREDIT = "credit"
METHOD_BANK_TRANSFER = "bank_transfer"
METHOD_MOBILE_MONEY = "mobile_money"

VALID_PAYMENT_METHODS = [
    METHOD_CASH,
    METHOD_CARD,
    METHOD_CREDIT,
    METHOD_BANK_TRANSFER,
    METHOD_MOBILE_MONEY,
]

# Tenders that actually bring money in; "credit" is a charge, never a payment.
TENDER_METHODS = [m for m in VALID_PAYMENT_METHODS if m != METHOD_CREDIT]

# A sale splits its paid amount into cash and card portions only.
SALE_TENDER_METHODS = [METHOD_CASH, METHOD_CARD]


def validate_tender_method(method: str | None, allowed: list[str] = TENDER_METHODS) -> str:
    method = method or METHOD_CASH
    if method not in allowed:
        raise ValidationError(
            f"Invalid payment method: {method}. Must be one of {allowed}",
            details={"field": "payment_method"},
        )
    return method


def record_sale_payment(
    sale_id: int,
    amount_cents: int,
    *,
    payment_method: str = METHOD_CASH,
    reference_number: str | None = None,
    notes: str | None = None,
    payment_date: date | None = None,
    user_id: int | None = None,
    now: datetime | None = None,
    dispatcher=None,
) -> Payment:
    """
    Record a later payment toward an approved sale's due amount.

    The amount lands in the sale's cash or card portion, so
    cash + card + credit == paid holds after every payment.

    Args:
        sale_id: Sale being paid
        amount_cents: 0 < amount <= sale.due_amount_cents
        payment_method: cash or card

    Raises:
        NotFoundError: sale does not exist
        InvalidStateError: sale is not approved
        ValidationError: bad amount or method
    """
    method = validate_tender_method(payment_method, SALE_TENDER_METHODS)
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
        raise ValidationError("Payment amount must be greater than zero", details={"field": "amount"})
    now = normalize_utc(now) or utcnow()

    def _op():
        begin_write_transaction()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if sale is None:
            raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
        if sale.status != "approved":
            raise InvalidStateError("Payments can only be recorded on approved sales", details={"status": sale.status})
        if amount_cents > sale.due_amount_cents:
            raise ValidationError(
                "Payment exceeds amount due",
                details={"amount_cents": amount_cents, "due_amount_cents": sale.due_amount_cents},
            )

        payment = Payment(
            kind=PAYMENT_KIND_SALE,
            sale_id=sale.id,
            customer_id=sale.customer_id,
            amount_cents=amount_cents,
            payment_method=method,
            payment_date=payment_date or now.date(),
            reference_number=reference_number,
            notes=notes,
            recorded_by_user_id=user_id,
            created_at=now,
        )
        db.session.add(payment)

        sale.paid_amount_cents += amount_cents
        sale.due_amount_cents -= amount_cents
        if method == METHOD_CASH:
            sale.cash_amount_cents += amount_cents
        else:
            sale.card_amount_cents += amount_cents

        if sale.customer_id is not None:
            customer = lock_for_update(db.session.query(Customer).filter_by(id=sale.customer_id)).first()
            if method == METHOD_CASH:
                customer.cash_balance_cents += amount_cents
            else:
                customer.card_balance_cents += amount_cents

        db.session.flush()
        event = SalePaymentRecorded(
            sale_id=sale.id,
            customer_id=sale.customer_id,
            amount_cents=amount_cents,
            payment_id=payment.id,
        )
        db.session.commit()
        return payment, [event]

    payment, events = run_with_retry(_op)
    logger.info("Payment %s of %d cents recorded on sale %s", payment.id, amount_cents, sale_id)
    dispatch_after_commit(dispatcher, events)
    return payment


def get_sale_payments(sale_id: int) -> list[Payment]:
    return (
        db.session.query(Payment)
        .filter_by(sale_id=sale_id)
        .order_by(Payment.id)
        .all()
    )
