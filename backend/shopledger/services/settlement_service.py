# Overview: Credit settlement; a customer pays down outstanding credit.

"""
Settlement Service

A settlement is one atomic step: validate the amount, reduce the customer's
outstanding spend and credit balance, record a SETTLEMENT payment, and
re-evaluate the credit period. Paying down to exactly zero closes the
exceed episode and restores purchasing.

Settlements are pooled: the payment is not allocated to any particular sale.
Two identical requests are two settlements; callers de-duplicate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from ..events import CreditSettled, dispatch_after_commit
from ..extensions import db
from ..models import Payment
from shopledger.time_utils import normalize_utc, utcnow
from .concurrency import begin_write_transaction, run_with_retry
from .credit_service import CreditSnapshot, _settle_locked, lock_customer
from .payment_service import PAYMENT_KIND_SETTLEMENT, validate_tender_method


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementResult:
    payment: Payment
    snapshot: CreditSnapshot

    def to_dict(self) -> dict:
        return {
            "payment": self.payment.to_dict(),
            "credit": self.snapshot.to_dict(),
        }


def settle_credit(
    customer_id: int,
    amount_cents: int,
    *,
    payment_method: str | None = None,
    reference_number: str | None = None,
    notes: str | None = None,
    payment_date: date | None = None,
    user_id: int | None = None,
    now: datetime | None = None,
    dispatcher=None,
) -> SettlementResult:
    """
    Settle part or all of a customer's outstanding credit.

    Raises:
        NotFoundError: customer does not exist
        InvalidSettlementError: amount <= 0 or amount > outstanding spend
        ValidationError: payment method is not a tender (e.g. "credit")
    """
    method = validate_tender_method(payment_method)
    now = normalize_utc(now) or utcnow()

    def _op():
        begin_write_transaction()
        customer = lock_customer(customer_id)
        update = _settle_locked(customer, amount_cents, now=now)

        payment = Payment(
            kind=PAYMENT_KIND_SETTLEMENT,
            sale_id=None,
            customer_id=customer.id,
            amount_cents=amount_cents,
            payment_method=method,
            payment_date=payment_date or now.date(),
            reference_number=reference_number,
            notes=notes,
            recorded_by_user_id=user_id,
            created_at=now,
        )
        db.session.add(payment)
        db.session.flush()

        events = list(update.events)
        events.append(CreditSettled(customer_id=customer.id, amount_cents=amount_cents, payment_id=payment.id))
        db.session.commit()
        return SettlementResult(payment, update.snapshot), events

    result, events = run_with_retry(_op)
    logger.info(
        "Customer %s settled %d cents; outstanding now %d",
        customer_id, amount_cents, result.snapshot.current_credit_spend_cents,
    )
    dispatch_after_commit(dispatcher, events)
    return result
