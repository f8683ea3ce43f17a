"""
Customer registration, edits, and credit reports.
"""

from datetime import timedelta

import pytest

from shopledger.errors import ConflictError, NotFoundError, ValidationError
from shopledger.services import credit_service, customer_service, products_service, settlement_service

from conftest import NOW


class TestCustomers:

    def test_create_generates_code_and_empty_ledger(self, db_session):
        customer = customer_service.create_customer({"name": "  Jane Doe ", "credit_limit": "250.50"})

        assert customer.customer_code == "CUST000001"
        assert customer.name == "Jane Doe"
        assert customer.credit_limit_cents == 25050
        assert customer.credit_balance_cents == 0
        assert customer.net_balance_cents == customer.credit_balance_cents
        assert customer.credit_period_days == 30

        second = customer_service.create_customer({"name": "John"})
        assert second.customer_code == "CUST000002"

    @pytest.mark.parametrize("payload", [
        {},
        {"name": "X", "credit_limit": "-1"},
        {"name": "X", "credit_limit": "1.005"},
        {"name": "X", "credit_period_days": 45},
        {"name": "X", "credit_period_days": "30 days"},
        {"name": "X", "status": "vip"},
    ])
    def test_create_validation(self, db_session, payload):
        with pytest.raises(ValidationError):
            customer_service.create_customer(payload)

    def test_update_contact_fields(self, make_customer):
        customer = make_customer()
        updated = customer_service.update_customer(customer.id, {"email": "a@b.co", "credit_period_days": 60}, now=NOW)
        assert updated.email == "a@b.co"
        assert updated.credit_period_days == 60

    def test_get_and_search(self, make_customer):
        make_customer(name="Alice Baker", contact_number="555-0100")
        make_customer(name="Bob Carter")

        assert [c.name for c in customer_service.search_customers("bak")] == ["Alice Baker"]
        assert len(customer_service.search_customers("555")) == 1
        assert len(customer_service.search_customers()) == 2
        with pytest.raises(NotFoundError):
            customer_service.get_customer(9999)


class TestCreditReports:

    def test_expired_credit_customers(self, make_customer):
        expired = make_customer(credit_limit_cents=1000)
        fresh = make_customer(credit_limit_cents=1000)
        paid_up = make_customer(credit_limit_cents=1000)
        credit_service.apply_credit_charge(expired.id, 2000, now=NOW - timedelta(days=40))
        credit_service.apply_credit_charge(fresh.id, 2000, now=NOW)
        credit_service.apply_credit_charge(paid_up.id, 2000, now=NOW - timedelta(days=40))
        settlement_service.settle_credit(paid_up.id, 2000, now=NOW)

        assert [c.id for c in customer_service.get_expired_credit_customers(NOW)] == [expired.id]

    def test_approaching_limit(self, make_customer):
        near = make_customer(credit_limit_cents=10000)
        at_threshold = make_customer(credit_limit_cents=10000)
        over = make_customer(credit_limit_cents=10000)
        make_customer(credit_limit_cents=0)
        credit_service.apply_credit_charge(near.id, 9000, now=NOW)
        credit_service.apply_credit_charge(at_threshold.id, 8000, now=NOW)
        credit_service.apply_credit_charge(over.id, 10001, now=NOW)

        assert [c.id for c in customer_service.get_customers_approaching_limit(0.8)] == [near.id]

    def test_transaction_history_newest_first(self, make_customer, make_product):
        from shopledger.services import sales_service

        customer = make_customer(credit_limit_cents=100000)
        product = make_product(quantity=10, selling_price_cents=1000)
        sale = sales_service.create_sale(
            customer.id, [{"product_id": product.id, "quantity": 2}], payment_method="credit", now=NOW,
        )
        settlement_service.settle_credit(customer.id, 500, now=NOW + timedelta(days=1))

        history = customer_service.get_transaction_history(customer.id)

        assert [entry["type"] for entry in history] == ["payment", "sale"]
        assert {entry["reference"] for entry in history if entry["type"] == "sale"} == {sale.bill_number}
        assert sum(1 for entry in history if entry["type"] == "payment") == 1


class TestProducts:

    def test_create_with_opening_stock(self, db_session):
        product = products_service.create_product({
            "product_code": "SKU-1", "name": "Rice", "buying_price": "8.00", "selling_price": "10.00",
            "quantity": 12, "tax": "7.5",
        })
        assert product.quantity == 12
        assert product.tax_bps == 750
        assert str(product.profit_margin) == "25.00"

    def test_duplicate_code_conflicts(self, make_product):
        existing = make_product()
        with pytest.raises(ConflictError):
            products_service.create_product({"product_code": existing.product_code, "name": "Dup"})

    def test_update_rejects_quantity_and_recalculates_margin(self, make_product):
        product = make_product(selling_price_cents=1000, buying_price_cents=800)
        with pytest.raises(ValidationError):
            products_service.update_product(product.id, {"quantity": 99})

        updated = products_service.update_product(product.id, {"selling_price": "12.00"})
        assert str(updated.profit_margin) == "50.00"

    def test_soft_delete(self, make_product):
        product = make_product()
        deleted = products_service.delete_product(product.id)
        assert deleted.is_active is False
        assert deleted.deleted_at is not None
        assert products_service.get_product(product.id).id == product.id
        assert products_service.list_products() == []


class TestHistoryCache:

    def test_cached_history_sees_later_payment_and_draft(self, file_app):
        from shopledger.events import current_dispatcher
        from shopledger.services import payment_service, sales_service

        with file_app.app_context():
            dispatcher = current_dispatcher()
            customer_id = customer_service.create_customer({"name": "Ada", "credit_limit": "100.00"}).id
            product_id = products_service.create_product({
                "product_code": "TEA-1", "name": "Tea", "selling_price": "10.00", "quantity": 5,
            }).id
            sale = sales_service.create_sale(
                customer_id, [{"product_id": product_id, "quantity": 2}], paid_amount_cents=500,
                now=NOW, dispatcher=dispatcher,
            )
            assert len(customer_service.get_transaction_history(customer_id)) == 2

            payment_service.record_sale_payment(sale.id, 500, now=NOW, dispatcher=dispatcher)
            assert len(customer_service.get_transaction_history(customer_id)) == 3

            sales_service.create_sale(
                customer_id, [{"product_id": product_id, "quantity": 1}], status="draft",
                now=NOW, dispatcher=dispatcher,
            )
            assert len(customer_service.get_transaction_history(customer_id)) == 4
