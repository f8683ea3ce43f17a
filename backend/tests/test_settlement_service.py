"""
Settlement engine tests: pooled credit settlements with payment records.
"""

from datetime import timedelta

import pytest

from shopledger.errors import InvalidSettlementError, NotFoundError, PurchaseBlockedError, ValidationError
from shopledger.events import CreditSettled
from shopledger.extensions import db
from shopledger.models import Customer, Payment
from shopledger.services import credit_service, sales_service, settlement_service

from conftest import NOW


@pytest.fixture
def indebted_customer(make_customer, make_product):
    """Customer who bought 1200.00 on credit against a 1000.00 limit at NOW."""
    customer = make_customer(credit_limit_cents=100000, credit_period_days=30)
    product = make_product(quantity=10, selling_price_cents=60000, buying_price_cents=40000)
    sales_service.create_sale(
        customer.id, [{"product_id": product.id, "quantity": 2}], payment_method="credit", now=NOW,
    )
    return customer


class TestSettleCredit:

    def test_full_settlement_after_expiry_restores_purchasing(self, indebted_customer, dispatcher, sink, recording_cache):
        later = NOW + timedelta(days=35)
        assert credit_service.get_credit_status(indebted_customer.id, now=later).can_purchase is False

        result = settlement_service.settle_credit(
            indebted_customer.id, 120000, payment_method="cash", now=later, dispatcher=dispatcher,
        )

        assert result.snapshot.current_credit_spend_cents == 0
        assert result.snapshot.limit_reached_at is None
        assert result.snapshot.expires_at is None
        assert result.snapshot.can_purchase is True

        customer = db.session.get(Customer, indebted_customer.id)
        assert customer.credit_limit_reached_at is None
        assert customer.credit_period_expires_at is None
        assert customer.can_purchase_at(later) is True

        payment = db.session.get(Payment, result.payment.id)
        assert (payment.kind, payment.sale_id, payment.amount_cents) == ("SETTLEMENT", None, 120000)
        assert payment.payment_date == later.date()

        assert sink.of_type(CreditSettled) == [CreditSettled(indebted_customer.id, 120000, payment.id)]
        assert f"customer_transactions_{indebted_customer.id}" in recording_cache.invalidated

    def test_overpayment_rejected_with_range(self, indebted_customer):
        with pytest.raises(InvalidSettlementError) as exc:
            settlement_service.settle_credit(indebted_customer.id, 130000, now=NOW)

        assert exc.value.details == {"amount_cents": 130000, "min_amount_cents": 1, "max_amount_cents": 120000}
        assert db.session.get(Customer, indebted_customer.id).current_credit_spend_cents == 120000
        assert db.session.query(Payment).filter_by(kind="SETTLEMENT").count() == 0

    def test_zero_settlement_rejected(self, indebted_customer):
        with pytest.raises(InvalidSettlementError):
            settlement_service.settle_credit(indebted_customer.id, 0, now=NOW)

    def test_settlement_is_not_idempotent(self, indebted_customer):
        settlement_service.settle_credit(indebted_customer.id, 10000, reference_number="R-1", now=NOW)
        settlement_service.settle_credit(indebted_customer.id, 10000, reference_number="R-1", now=NOW)

        assert db.session.get(Customer, indebted_customer.id).current_credit_spend_cents == 100000
        assert db.session.query(Payment).filter_by(kind="SETTLEMENT").count() == 2

    def test_partial_settlement_does_not_unblock_expired_customer(self, indebted_customer, make_product):
        later = NOW + timedelta(days=31)
        result = settlement_service.settle_credit(indebted_customer.id, 100000, now=later)
        assert result.snapshot.can_purchase is False

        product = make_product(quantity=5, selling_price_cents=100)
        with pytest.raises(PurchaseBlockedError):
            sales_service.create_sale(
                indebted_customer.id, [{"product_id": product.id, "quantity": 1}],
                payment_method="credit", now=later,
            )

    def test_credit_is_not_a_settlement_method(self, indebted_customer):
        with pytest.raises(ValidationError):
            settlement_service.settle_credit(indebted_customer.id, 100, payment_method="credit", now=NOW)

    def test_unknown_customer(self, db_session):
        with pytest.raises(NotFoundError):
            settlement_service.settle_credit(999, 100, now=NOW)
