# Overview: Customer registration, profile and credit-policy edits, and credit reports.

"""
Customer Service

WHY: Customers are created with a generated code and an empty credit ledger.
Editing the credit limit or the credit period changes what the credit
state machine decides, so those edits re-run it inside the same locked
transaction.

REPORTS:
- expired credit: period expired and spend still outstanding
- approaching limit: spend above threshold * limit, not above the limit
- transaction history: sales and payments, newest first, cached per customer
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import or_

from ..errors import NotFoundError, ValidationError
from ..events import dispatch_after_commit
from ..extensions import cache, db
from ..models import Customer, Payment, Sale
from ..validation import clean_str, parse_int, parse_money_cents, require_fields
from shopledger.time_utils import normalize_utc, to_utc_z, utcnow
from .concurrency import begin_write_transaction, run_with_retry
from .credit_service import lock_customer, reevaluate_locked
from .document_service import DOC_CUSTOMER, next_document_number


logger = logging.getLogger(__name__)


CUSTOMER_STATUSES = ("active", "inactive")

_CONTACT_FIELDS = {
    "name": 255,
    "contact_number": 32,
    "email": 255,
    "address": 255,
}


def _validate_period(value) -> int:
    days = parse_int(value, "credit_period_days", minimum=1)
    allowed = current_app.config.get("ALLOWED_CREDIT_PERIOD_DAYS")
    if allowed and days not in allowed:
        raise ValidationError(
            f"credit_period_days must be one of {list(allowed)}",
            details={"field": "credit_period_days", "allowed": list(allowed)},
        )
    return days


def _validate_status(value) -> str:
    if value not in CUSTOMER_STATUSES:
        raise ValidationError(f"status must be one of {list(CUSTOMER_STATUSES)}", details={"field": "status"})
    return value


def transactions_cache_key(customer_id: int) -> str:
    return f"customer_transactions_{customer_id}"


def create_customer(data: dict) -> Customer:
    """
    Register a customer.

    Args:
        data: name (required), contact_number, email, address, status,
            credit_limit (decimal amount), credit_period_days

    Returns:
        Customer with a generated CUST code and a zero credit ledger
    """
    require_fields(data, "name")
    fields = {key: clean_str(data.get(key), key, max_length=size) for key, size in _CONTACT_FIELDS.items()}
    if not fields["name"]:
        raise ValidationError("name is required", details={"field": "name"})

    credit_limit = 0
    if data.get("credit_limit") not in (None, ""):
        credit_limit = parse_money_cents(data["credit_limit"], "credit_limit")

    period = current_app.config.get("DEFAULT_CREDIT_PERIOD_DAYS", 30)
    if data.get("credit_period_days") not in (None, ""):
        period = _validate_period(data["credit_period_days"])

    status = _validate_status(data.get("status") or "active")

    def _op():
        begin_write_transaction()
        customer = Customer(
            customer_code=next_document_number(DOC_CUSTOMER),
            status=status,
            credit_limit_cents=credit_limit,
            current_credit_spend_cents=0,
            credit_balance_cents=0,
            net_balance_cents=0,
            credit_period_days=period,
            **fields,
        )
        db.session.add(customer)
        db.session.commit()
        return customer

    customer = run_with_retry(_op)
    logger.info("Created customer %s (%s)", customer.id, customer.customer_code)
    return customer


def update_customer(
    customer_id: int,
    data: dict,
    *,
    now: datetime | None = None,
    dispatcher=None,
) -> Customer:
    """
    Edit contact fields, status, credit limit or credit period.

    The credit state machine is re-evaluated afterwards; lowering the limit
    under the outstanding spend opens an exceed episode.
    """
    now = normalize_utc(now) or utcnow()

    changes = {}
    for key, size in _CONTACT_FIELDS.items():
        if key in data:
            changes[key] = clean_str(data[key], key, max_length=size)
    if "name" in changes and not changes["name"]:
        raise ValidationError("name cannot be empty", details={"field": "name"})
    if "status" in data:
        changes["status"] = _validate_status(data["status"])
    if "credit_limit" in data:
        changes["credit_limit_cents"] = parse_money_cents(data["credit_limit"], "credit_limit")
    if "credit_period_days" in data:
        changes["credit_period_days"] = _validate_period(data["credit_period_days"])

    def _op():
        begin_write_transaction()
        customer = lock_customer(customer_id)
        for key, value in changes.items():
            setattr(customer, key, value)

        events = []
        if "credit_limit_cents" in changes or "credit_period_days" in changes:
            events = reevaluate_locked(customer, now=now).events
        db.session.commit()
        return customer, events

    customer, events = run_with_retry(_op)
    logger.info("Updated customer %s: %s", customer_id, sorted(changes))
    dispatch_after_commit(dispatcher, events)
    return customer


def get_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError(f"Customer {customer_id} not found", details={"customer_id": customer_id})
    return customer


def search_customers(query: str | None = None, *, status: str | None = None, limit: int = 50) -> list[Customer]:
    """Match name, customer code, contact number or email (case-insensitive)."""
    q = db.session.query(Customer)
    if query:
        pattern = f"%{query.strip()}%"
        q = q.filter(or_(
            Customer.name.ilike(pattern),
            Customer.customer_code.ilike(pattern),
            Customer.contact_number.ilike(pattern),
            Customer.email.ilike(pattern),
        ))
    if status:
        q = q.filter(Customer.status == status)
    return q.order_by(Customer.name, Customer.id).limit(limit).all()


def get_expired_credit_customers(now: datetime | None = None) -> list[Customer]:
    now = normalize_utc(now) or utcnow()
    return (
        db.session.query(Customer)
        .filter(
            Customer.credit_period_expires_at.isnot(None),
            Customer.credit_period_expires_at < now,
            Customer.current_credit_spend_cents > 0,
        )
        .order_by(Customer.credit_period_expires_at, Customer.id)
        .all()
    )


def get_customers_approaching_limit(threshold=None) -> list[Customer]:
    """
    Customers whose spend is above threshold * limit but not above the limit.

    The threshold is compared in integer per-mille so no float rounding
    leaks into the money comparison.
    """
    if threshold is None:
        threshold = current_app.config.get("CREDIT_WARNING_THRESHOLD", 0.8)
    ratio = Decimal(str(threshold))
    if ratio <= 0 or ratio > 1:
        raise ValidationError("threshold must be in (0, 1]", details={"field": "threshold"})
    per_mille = int(ratio * 1000)

    return (
        db.session.query(Customer)
        .filter(
            Customer.credit_limit_cents > 0,
            Customer.current_credit_spend_cents <= Customer.credit_limit_cents,
            Customer.current_credit_spend_cents * 1000 > Customer.credit_limit_cents * per_mille,
        )
        .order_by(Customer.id)
        .all()
    )


def get_transaction_history(customer_id: int, limit: int = 100) -> list[dict]:
    """
    Sales and payments for one customer, newest first.

    Cached under customer_transactions_<id>; sale and payment events name
    that key, so the dispatcher clears it.
    """
    key = transactions_cache_key(customer_id)
    cached = cache.get(key)
    if cached is not None:
        return cached

    get_customer(customer_id)

    sales = (
        db.session.query(Sale)
        .filter(Sale.customer_id == customer_id)
        .order_by(Sale.id.desc())
        .limit(limit)
        .all()
    )
    payments = (
        db.session.query(Payment)
        .filter(Payment.customer_id == customer_id)
        .order_by(Payment.id.desc())
        .limit(limit)
        .all()
    )

    entries = [
        {
            "type": "sale",
            "id": sale.id,
            "reference": sale.bill_number,
            "status": sale.status,
            "payment_method": sale.payment_method,
            "amount_cents": sale.total_amount_cents,
            "credit_amount_cents": sale.credit_amount_cents,
            "occurred_at": sale.approved_at or sale.created_at,
        }
        for sale in sales
    ]
    entries.extend(
        {
            "type": "payment",
            "id": payment.id,
            "kind": payment.kind,
            "reference": payment.reference_number,
            "payment_method": payment.payment_method,
            "amount_cents": payment.amount_cents,
            "occurred_at": payment.created_at,
        }
        for payment in payments
    )
    entries.sort(key=lambda e: (normalize_utc(e["occurred_at"]) or datetime.min, e["type"], e["id"]), reverse=True)

    history = []
    for entry in entries[:limit]:
        entry["occurred_at"] = to_utc_z(entry["occurred_at"])
        history.append(entry)

    cache.set(key, history)
    return history
