# Overview: Credit ledger; customer borrowing limit and the credit-period state machine.

"""
Customer Credit Ledger

STATES:
- NORMAL: no open exceed episode; purchases on credit allowed
- LIMIT_REACHED: spend went above the limit, period timer running, still allowed
- EXPIRED: now > credit_period_expires_at; credit purchases blocked

TRANSITIONS (all computed by next_state, a pure function):
- NORMAL -> LIMIT_REACHED when spend crosses above the limit. Sets
  reached_at = now and expires_at = now + credit_period_days.
- LIMIT_REACHED -> EXPIRED purely by time. Evaluated lazily whenever a
  decision depends on it; nothing runs in the background.
- any -> NORMAL when spend returns to exactly 0. Clears both timestamps.
- A partial settlement that leaves spend above 0 keeps the episode (and its
  timer) open, even if spend drops back under the limit.

Ledger commands (_charge_locked, _settle_locked) mutate a customer row the
caller has already locked and return a LedgerUpdate (snapshot + events). The
public functions own the transaction and dispatch events after commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ..errors import (
    InvalidSettlementError,
    NotFoundError,
    PurchaseBlockedError,
    ValidationError,
)
from ..events import CreditExceeded, dispatch_after_commit
from ..extensions import db
from ..models import Customer
from shopledger.time_utils import normalize_utc, to_utc_z, utcnow, whole_days_between
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry


logger = logging.getLogger(__name__)


# =============================================================================
# CREDIT STATES (CONSTANTS)
# =============================================================================

CREDIT_STATE_NORMAL = "NORMAL"
CREDIT_STATE_LIMIT_REACHED = "LIMIT_REACHED"
CREDIT_STATE_EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class CreditPeriodState:
    state: str
    limit_reached_at: datetime | None = None
    expires_at: datetime | None = None

    @property
    def can_purchase(self) -> bool:
        return self.state != CREDIT_STATE_EXPIRED


NORMAL = CreditPeriodState(CREDIT_STATE_NORMAL)


def next_state(
    current: CreditPeriodState,
    *,
    now: datetime,
    spend_cents: int,
    limit_cents: int,
    period_days: int,
) -> CreditPeriodState:
    """
    Total transition function of the credit-period state machine.

    Depends only on its arguments; callers persist the result if they are
    writing, or just read it if they are not.
    """
    if period_days <= 0:
        raise ValueError(f"credit period must be a positive day count, got {period_days}")

    if spend_cents <= 0:
        return NORMAL

    reached_at = current.limit_reached_at
    expires_at = current.expires_at

    if reached_at is None:
        if spend_cents <= limit_cents:
            return NORMAL
        reached_at = now
        expires_at = now + timedelta(days=period_days)
    elif expires_at is None:
        expires_at = reached_at + timedelta(days=period_days)

    if now > expires_at:
        return CreditPeriodState(CREDIT_STATE_EXPIRED, reached_at, expires_at)
    return CreditPeriodState(CREDIT_STATE_LIMIT_REACHED, reached_at, expires_at)


def stored_period_state(customer: Customer) -> CreditPeriodState:
    """The persisted timestamps, before any lazy evaluation."""
    if customer.credit_limit_reached_at is None:
        return NORMAL
    return CreditPeriodState(
        CREDIT_STATE_LIMIT_REACHED,
        normalize_utc(customer.credit_limit_reached_at),
        normalize_utc(customer.credit_period_expires_at),
    )


def evaluate(customer: Customer, now: datetime) -> CreditPeriodState:
    return next_state(
        stored_period_state(customer),
        now=now,
        spend_cents=customer.current_credit_spend_cents,
        limit_cents=customer.credit_limit_cents,
        period_days=customer.credit_period_days,
    )


def _store_period_state(customer: Customer, state: CreditPeriodState) -> None:
    customer.credit_limit_reached_at = state.limit_reached_at
    customer.credit_period_expires_at = state.expires_at


# =============================================================================
# SNAPSHOTS
# =============================================================================

@dataclass(frozen=True)
class CreditSnapshot:
    customer_id: int
    credit_limit_cents: int
    current_credit_spend_cents: int
    credit_balance_cents: int
    net_balance_cents: int
    state: str
    can_purchase: bool
    limit_reached_at: datetime | None
    expires_at: datetime | None

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "credit_limit_cents": self.credit_limit_cents,
            "current_credit_spend_cents": self.current_credit_spend_cents,
            "credit_balance_cents": self.credit_balance_cents,
            "net_balance_cents": self.net_balance_cents,
            "state": self.state,
            "can_purchase": self.can_purchase,
            "credit_limit_reached_at": to_utc_z(self.limit_reached_at),
            "credit_period_expires_at": to_utc_z(self.expires_at),
        }


@dataclass
class LedgerUpdate:
    snapshot: CreditSnapshot
    events: list = field(default_factory=list)


def _snapshot(customer: Customer, state: CreditPeriodState) -> CreditSnapshot:
    return CreditSnapshot(
        customer_id=customer.id,
        credit_limit_cents=customer.credit_limit_cents,
        current_credit_spend_cents=customer.current_credit_spend_cents,
        credit_balance_cents=customer.credit_balance_cents,
        net_balance_cents=customer.net_balance_cents,
        state=state.state,
        can_purchase=state.can_purchase,
        limit_reached_at=state.limit_reached_at,
        expires_at=state.expires_at,
    )


@dataclass(frozen=True)
class CreditStatus:
    customer_id: int
    state: str
    can_purchase: bool
    days_remaining: int | None
    days_overdue: int | None
    credit_limit_cents: int
    current_credit_spend_cents: int
    available_credit_cents: int
    limit_reached_at: datetime | None
    expires_at: datetime | None

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "state": self.state,
            "can_purchase": self.can_purchase,
            "days_remaining": self.days_remaining,
            "days_overdue": self.days_overdue,
            "credit_limit_cents": self.credit_limit_cents,
            "current_credit_spend_cents": self.current_credit_spend_cents,
            "available_credit_cents": self.available_credit_cents,
            "credit_limit_reached_at": to_utc_z(self.limit_reached_at),
            "credit_period_expires_at": to_utc_z(self.expires_at),
        }


def build_status(customer: Customer, now: datetime) -> CreditStatus:
    state = evaluate(customer, now)

    days_remaining = None
    days_overdue = None
    if state.state == CREDIT_STATE_LIMIT_REACHED:
        days_remaining = whole_days_between(now, state.expires_at)
    elif state.state == CREDIT_STATE_EXPIRED:
        days_overdue = whole_days_between(state.expires_at, now)

    return CreditStatus(
        customer_id=customer.id,
        state=state.state,
        can_purchase=state.can_purchase,
        days_remaining=days_remaining,
        days_overdue=days_overdue,
        credit_limit_cents=customer.credit_limit_cents,
        current_credit_spend_cents=customer.current_credit_spend_cents,
        available_credit_cents=max(customer.credit_limit_cents - customer.current_credit_spend_cents, 0),
        limit_reached_at=state.limit_reached_at,
        expires_at=state.expires_at,
    )


# =============================================================================
# LEDGER COMMANDS (caller holds the customer row lock)
# =============================================================================

def lock_customer(customer_id: int) -> Customer:
    customer = lock_for_update(db.session.query(Customer).filter_by(id=customer_id)).first()
    if customer is None:
        raise NotFoundError(f"Customer {customer_id} not found", details={"customer_id": customer_id})
    return customer


def _charge_locked(customer: Customer, amount_cents: int, *, now: datetime) -> LedgerUpdate:
    if amount_cents <= 0:
        raise ValidationError("Credit charge must be greater than zero", details={"field": "credit_amount"})

    before = evaluate(customer, now)
    if before.state == CREDIT_STATE_EXPIRED:
        logger.warning("Credit purchase blocked for customer %s: period expired %s", customer.id, before.expires_at)
        raise PurchaseBlockedError(customer.id)

    customer.current_credit_spend_cents += amount_cents
    customer.credit_balance_cents += amount_cents
    customer.net_balance_cents = customer.credit_balance_cents

    after = next_state(
        before,
        now=now,
        spend_cents=customer.current_credit_spend_cents,
        limit_cents=customer.credit_limit_cents,
        period_days=customer.credit_period_days,
    )
    _store_period_state(customer, after)

    events = []
    if before.limit_reached_at is None and after.limit_reached_at is not None:
        exceeded = customer.current_credit_spend_cents - customer.credit_limit_cents
        logger.info(
            "Customer %s exceeded credit limit by %d cents; period expires %s",
            customer.id, exceeded, after.expires_at,
        )
        events.append(CreditExceeded(customer_id=customer.id, exceeded_amount_cents=exceeded))

    return LedgerUpdate(_snapshot(customer, after), events)


def _settle_locked(customer: Customer, amount_cents: int, *, now: datetime) -> LedgerUpdate:
    outstanding = customer.current_credit_spend_cents

    if amount_cents <= 0:
        raise InvalidSettlementError(
            "Settlement amount must be greater than zero",
            amount_cents=amount_cents,
            max_amount_cents=outstanding,
        )
    if amount_cents > outstanding:
        raise InvalidSettlementError(
            "Settlement amount exceeds outstanding credit",
            amount_cents=amount_cents,
            max_amount_cents=outstanding,
        )

    customer.current_credit_spend_cents -= amount_cents
    customer.credit_balance_cents -= amount_cents
    customer.net_balance_cents = customer.credit_balance_cents

    after = evaluate(customer, now)
    _store_period_state(customer, after)

    if after.state == CREDIT_STATE_NORMAL and outstanding > 0:
        logger.info("Customer %s credit fully settled; period reset", customer.id)

    return LedgerUpdate(_snapshot(customer, after))


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def apply_credit_charge(
    customer_id: int,
    amount_cents: int,
    *,
    now: datetime | None = None,
    dispatcher=None,
) -> CreditSnapshot:
    """
    Add a credit charge outside of a sale (e.g. an opening balance).

    Raises:
        PurchaseBlockedError: credit period expired
        ValidationError: non-positive amount
    """
    now = normalize_utc(now) or utcnow()

    def _op():
        begin_write_transaction()
        customer = lock_customer(customer_id)
        update = _charge_locked(customer, amount_cents, now=now)
        db.session.commit()
        return update

    update = run_with_retry(_op)
    dispatch_after_commit(dispatcher, update.events)
    return update.snapshot


def settle(
    customer_id: int,
    amount_cents: int,
    *,
    now: datetime | None = None,
    dispatcher=None,
) -> CreditSnapshot:
    """
    Reduce outstanding credit without recording a payment.

    Use settlement_service.settle_credit for customer payments; this is the
    bare ledger operation.
    """
    now = normalize_utc(now) or utcnow()

    def _op():
        begin_write_transaction()
        customer = lock_customer(customer_id)
        update = _settle_locked(customer, amount_cents, now=now)
        db.session.commit()
        return update

    update = run_with_retry(_op)
    dispatch_after_commit(dispatcher, update.events)
    return update.snapshot


def get_credit_status(customer_id: int, *, now: datetime | None = None) -> CreditStatus:
    """Pure read: re-evaluates expiry lazily, never writes."""
    now = normalize_utc(now) or utcnow()
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError(f"Customer {customer_id} not found", details={"customer_id": customer_id})
    return build_status(customer, now)


def reevaluate_locked(customer: Customer, *, now: datetime) -> LedgerUpdate:
    """
    Re-run the state machine after credit-limit or period edits.

    Lowering the limit below the outstanding spend opens an episode just as a
    charge would.
    """
    before = stored_period_state(customer)
    after = evaluate(customer, now)
    _store_period_state(customer, after)

    events = []
    if before.limit_reached_at is None and after.limit_reached_at is not None:
        events.append(CreditExceeded(
            customer_id=customer.id,
            exceeded_amount_cents=customer.current_credit_spend_cents - customer.credit_limit_cents,
        ))
    return LedgerUpdate(_snapshot(customer, after), events)
