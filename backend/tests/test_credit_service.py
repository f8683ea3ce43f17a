"""
Credit ledger tests.

Covers the credit-period state machine (pure), charges and settlements on
the ledger, and the lazy status read.
"""

from datetime import timedelta

import pytest

from shopledger.errors import InvalidSettlementError, NotFoundError, PurchaseBlockedError, ValidationError
from shopledger.events import CreditExceeded
from shopledger.extensions import db
from shopledger.models import Customer
from shopledger.services import credit_service
from shopledger.services.credit_service import (
    CREDIT_STATE_EXPIRED,
    CREDIT_STATE_LIMIT_REACHED,
    CREDIT_STATE_NORMAL,
    NORMAL,
    CreditPeriodState,
    next_state,
)

from conftest import NOW


# =============================================================================
# STATE MACHINE (PURE)
# =============================================================================


class TestNextState:

    def test_zero_spend_is_normal(self):
        state = next_state(NORMAL, now=NOW, spend_cents=0, limit_cents=1000, period_days=30)
        assert state == NORMAL

    def test_within_limit_stays_normal(self):
        state = next_state(NORMAL, now=NOW, spend_cents=1000, limit_cents=1000, period_days=30)
        assert state.state == CREDIT_STATE_NORMAL
        assert state.limit_reached_at is None

    def test_crossing_limit_starts_period(self):
        state = next_state(NORMAL, now=NOW, spend_cents=1001, limit_cents=1000, period_days=30)
        assert state.state == CREDIT_STATE_LIMIT_REACHED
        assert state.limit_reached_at == NOW
        assert state.expires_at == NOW + timedelta(days=30)
        assert state.can_purchase is True

    def test_open_episode_keeps_original_timestamps(self):
        current = CreditPeriodState(CREDIT_STATE_LIMIT_REACHED, NOW, NOW + timedelta(days=30))
        later = NOW + timedelta(days=5)
        state = next_state(current, now=later, spend_cents=5000, limit_cents=1000, period_days=30)
        assert state.limit_reached_at == NOW
        assert state.expires_at == NOW + timedelta(days=30)

    def test_open_episode_under_limit_is_not_reset(self):
        current = CreditPeriodState(CREDIT_STATE_LIMIT_REACHED, NOW, NOW + timedelta(days=30))
        state = next_state(current, now=NOW, spend_cents=500, limit_cents=1000, period_days=30)
        assert state.state == CREDIT_STATE_LIMIT_REACHED
        assert state.limit_reached_at == NOW

    def test_past_expiry_is_expired(self):
        current = CreditPeriodState(CREDIT_STATE_LIMIT_REACHED, NOW, NOW + timedelta(days=30))
        state = next_state(current, now=NOW + timedelta(days=30, seconds=1), spend_cents=1500, limit_cents=1000, period_days=30)
        assert state.state == CREDIT_STATE_EXPIRED
        assert state.can_purchase is False

    def test_exactly_at_expiry_still_allowed(self):
        current = CreditPeriodState(CREDIT_STATE_LIMIT_REACHED, NOW, NOW + timedelta(days=30))
        state = next_state(current, now=NOW + timedelta(days=30), spend_cents=1500, limit_cents=1000, period_days=30)
        assert state.state == CREDIT_STATE_LIMIT_REACHED

    def test_spend_back_to_zero_resets(self):
        current = CreditPeriodState(CREDIT_STATE_EXPIRED, NOW, NOW + timedelta(days=30))
        state = next_state(current, now=NOW + timedelta(days=90), spend_cents=0, limit_cents=1000, period_days=30)
        assert state == NORMAL

    def test_missing_expiry_derived_from_reached_at(self):
        current = CreditPeriodState(CREDIT_STATE_LIMIT_REACHED, NOW, None)
        state = next_state(current, now=NOW, spend_cents=1500, limit_cents=1000, period_days=15)
        assert state.expires_at == NOW + timedelta(days=15)

    @pytest.mark.parametrize("days", [0, -30])
    def test_non_positive_period_rejected(self, days):
        with pytest.raises(ValueError):
            next_state(NORMAL, now=NOW, spend_cents=1500, limit_cents=1000, period_days=days)


# =============================================================================
# LEDGER COMMANDS
# =============================================================================


class TestApplyCreditCharge:

    def test_charge_under_limit(self, make_customer, dispatcher, sink):
        customer = make_customer(credit_limit_cents=100000)
        snap = credit_service.apply_credit_charge(customer.id, 40000, now=NOW, dispatcher=dispatcher)

        assert snap.current_credit_spend_cents == 40000
        assert snap.credit_balance_cents == 40000
        assert snap.net_balance_cents == 40000
        assert snap.state == CREDIT_STATE_NORMAL
        assert snap.limit_reached_at is None
        assert sink.of_type(CreditExceeded) == []

    def test_charge_over_limit_opens_episode_once(self, make_customer, dispatcher, sink, recording_cache):
        customer = make_customer(credit_limit_cents=100000)
        snap = credit_service.apply_credit_charge(customer.id, 120000, now=NOW, dispatcher=dispatcher)

        assert snap.state == CREDIT_STATE_LIMIT_REACHED
        assert snap.limit_reached_at == NOW
        assert snap.expires_at == NOW + timedelta(days=30)
        assert snap.can_purchase is True
        assert sink.of_type(CreditExceeded) == [CreditExceeded(customer.id, 20000)]
        assert f"customer_{customer.id}" in recording_cache.invalidated

        later = NOW + timedelta(days=3)
        snap = credit_service.apply_credit_charge(customer.id, 10000, now=later, dispatcher=dispatcher)
        assert snap.limit_reached_at == NOW
        assert len(sink.of_type(CreditExceeded)) == 1

    def test_expired_customer_blocked_and_unchanged(self, make_customer):
        customer = make_customer(credit_limit_cents=100000)
        credit_service.apply_credit_charge(customer.id, 120000, now=NOW)

        with pytest.raises(PurchaseBlockedError) as exc:
            credit_service.apply_credit_charge(customer.id, 100, now=NOW + timedelta(days=31))
        assert exc.value.details == {"customer_id": customer.id, "reason": "credit_period_expired"}

        customer = db.session.get(Customer, customer.id)
        assert customer.current_credit_spend_cents == 120000

    def test_non_positive_charge_rejected(self, make_customer):
        customer = make_customer()
        with pytest.raises(ValidationError):
            credit_service.apply_credit_charge(customer.id, 0, now=NOW)

    def test_unknown_customer(self, db_session):
        with pytest.raises(NotFoundError):
            credit_service.apply_credit_charge(9999, 100, now=NOW)


class TestSettle:

    def test_round_trip_restores_spend_and_clears_period(self, make_customer):
        customer = make_customer(credit_limit_cents=5000)
        credit_service.apply_credit_charge(customer.id, 2000, now=NOW)
        credit_service.apply_credit_charge(customer.id, 10000, now=NOW)
        before = db.session.get(Customer, customer.id).current_credit_spend_cents

        credit_service.apply_credit_charge(customer.id, 10000, now=NOW)
        snap = credit_service.settle(customer.id, 10000, now=NOW)

        assert snap.current_credit_spend_cents == before
        settled = credit_service.settle(customer.id, before, now=NOW)
        assert settled.current_credit_spend_cents == 0
        assert settled.limit_reached_at is None
        assert settled.expires_at is None
        assert settled.state == CREDIT_STATE_NORMAL

    def test_partial_settlement_keeps_episode_open(self, make_customer):
        customer = make_customer(credit_limit_cents=100000)
        credit_service.apply_credit_charge(customer.id, 120000, now=NOW)

        snap = credit_service.settle(customer.id, 50000, now=NOW + timedelta(days=1))

        assert snap.current_credit_spend_cents == 70000
        assert snap.state == CREDIT_STATE_LIMIT_REACHED
        assert snap.limit_reached_at == NOW

    def test_settlement_clears_expired_state(self, make_customer):
        customer = make_customer(credit_limit_cents=100000)
        credit_service.apply_credit_charge(customer.id, 120000, now=NOW)

        snap = credit_service.settle(customer.id, 120000, now=NOW + timedelta(days=45))

        assert snap.state == CREDIT_STATE_NORMAL
        assert snap.can_purchase is True

    @pytest.mark.parametrize("amount", [0, -100, 120001])
    def test_out_of_range_amounts_rejected(self, make_customer, amount):
        customer = make_customer(credit_limit_cents=100000)
        credit_service.apply_credit_charge(customer.id, 120000, now=NOW)

        with pytest.raises(InvalidSettlementError) as exc:
            credit_service.settle(customer.id, amount, now=NOW)
        assert exc.value.details["min_amount_cents"] == 1
        assert exc.value.details["max_amount_cents"] == 120000
        assert db.session.get(Customer, customer.id).current_credit_spend_cents == 120000


# =============================================================================
# STATUS (PURE READ)
# =============================================================================


class TestCreditStatus:

    def test_normal_status(self, make_customer):
        customer = make_customer(credit_limit_cents=100000)
        status = credit_service.get_credit_status(customer.id, now=NOW)

        assert status.state == CREDIT_STATE_NORMAL
        assert status.can_purchase is True
        assert status.days_remaining is None
        assert status.days_overdue is None
        assert status.available_credit_cents == 100000

    def test_days_remaining_and_overdue(self, make_customer):
        customer = make_customer(credit_limit_cents=100000)
        credit_service.apply_credit_charge(customer.id, 120000, now=NOW)

        status = credit_service.get_credit_status(customer.id, now=NOW + timedelta(days=10))
        assert status.state == CREDIT_STATE_LIMIT_REACHED
        assert status.days_remaining == 20
        assert status.available_credit_cents == 0

        status = credit_service.get_credit_status(customer.id, now=NOW + timedelta(days=32, hours=1))
        assert status.state == CREDIT_STATE_EXPIRED
        assert status.can_purchase is False
        assert status.days_overdue == 3

    def test_read_is_idempotent_and_writes_nothing(self, make_customer):
        customer = make_customer(credit_limit_cents=100000)
        credit_service.apply_credit_charge(customer.id, 120000, now=NOW)
        version = db.session.get(Customer, customer.id).version_id

        later = NOW + timedelta(days=40)
        first = credit_service.get_credit_status(customer.id, now=later)
        second = credit_service.get_credit_status(customer.id, now=later)

        assert first == second
        db.session.expire_all()
        assert db.session.get(Customer, customer.id).version_id == version

    def test_can_purchase_matches_stored_expiry(self, make_customer):
        customer = make_customer(credit_limit_cents=100000)
        credit_service.apply_credit_charge(customer.id, 120000, now=NOW)
        customer = db.session.get(Customer, customer.id)

        assert customer.can_purchase_at(NOW + timedelta(days=29)) is True
        assert customer.can_purchase_at(NOW + timedelta(days=31)) is False


class TestReevaluate:

    def test_lowering_limit_under_spend_opens_episode(self, make_customer, dispatcher, sink):
        from shopledger.services import customer_service

        customer = make_customer(credit_limit_cents=100000)
        credit_service.apply_credit_charge(customer.id, 80000, now=NOW)

        updated = customer_service.update_customer(
            customer.id, {"credit_limit": "500.00"}, now=NOW, dispatcher=dispatcher,
        )

        assert updated.credit_limit_cents == 50000
        assert updated.credit_limit_reached_at == NOW
        assert sink.of_type(CreditExceeded) == [CreditExceeded(customer.id, 30000)]
