"""
HTTP surface tests: typed errors map to status codes, money is parsed from
decimal strings, and the scenario flow works end to end over the API.
"""

from datetime import datetime, timedelta

from shopledger.events import CreditSettled, SaleCompleted
from shopledger.extensions import db
from shopledger.models import Customer, Product


# =============================================================================
# HEALTH
# =============================================================================


class TestHealth:

    def test_health(self, client, db_session):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json["checks"]["database"]["status"] == "healthy"


# =============================================================================
# CUSTOMERS AND CREDIT
# =============================================================================


class TestCustomerRoutes:

    def test_create_and_fetch(self, client, db_session):
        resp = client.post("/api/customers", json={"name": "Ada", "credit_limit": "1000.00"})
        assert resp.status_code == 201
        customer = resp.json["customer"]
        assert customer["customer_code"] == "CUST000001"
        assert customer["credit_limit_cents"] == 100000

        resp = client.get(f"/api/customers/{customer['id']}")
        assert resp.status_code == 200
        assert resp.json["credit"]["state"] == "NORMAL"

    def test_validation_error_shape(self, client, db_session):
        resp = client.post("/api/customers", json={"name": "Ada", "credit_limit": "12.345"})
        assert resp.status_code == 400
        assert resp.json["code"] == "validation_error"
        assert resp.json["details"]["field"] == "credit_limit"

    def test_unknown_customer_is_404(self, client, db_session):
        resp = client.get("/api/customers/999/credit-status")
        assert resp.status_code == 404
        assert resp.json["code"] == "not_found"


class TestSaleAndSettlementFlow:

    def test_credit_sale_then_settlement(self, client, make_customer, make_product, app_dispatcher, sink):
        customer = make_customer(credit_limit_cents=100000)
        product = make_product(quantity=5, selling_price_cents=60000, buying_price_cents=50000)

        resp = client.post("/api/sales", json={
            "customer_id": customer.id,
            "items": [{"product_id": product.id, "quantity": 2}],
            "payment_method": "credit",
        })
        assert resp.status_code == 201
        sale = resp.json["sale"]
        assert sale["credit_amount_cents"] == 120000
        assert len(sale["lines"]) == 1

        status = client.get(f"/api/customers/{customer.id}/credit-status").json["credit"]
        assert status["state"] == "LIMIT_REACHED"
        assert status["days_remaining"] == 30

        resp = client.post(f"/api/customers/{customer.id}/settlements", json={"amount": "1300.00"})
        assert resp.status_code == 400
        assert resp.json["code"] == "invalid_settlement"
        assert resp.json["details"]["max_amount_cents"] == 120000

        for amount in ("-5", "0"):
            resp = client.post(f"/api/customers/{customer.id}/settlements", json={"amount": amount})
            assert resp.status_code == 400
            assert resp.json["code"] == "invalid_settlement"

        resp = client.post(f"/api/customers/{customer.id}/settlements", json={"amount": "1200.00"})
        assert resp.status_code == 201
        assert resp.json["credit"]["current_credit_spend_cents"] == 0
        assert resp.json["credit"]["credit_period_expires_at"] is None

        assert len(sink.of_type(SaleCompleted)) == 1
        assert len(sink.of_type(CreditSettled)) == 1

    def test_expired_customer_gets_403(self, client, make_customer, make_product):
        customer = make_customer(credit_limit_cents=100)
        customer.current_credit_spend_cents = 500
        customer.credit_balance_cents = 500
        customer.credit_limit_reached_at = datetime(2020, 1, 1)
        customer.credit_period_expires_at = datetime(2020, 1, 1) + timedelta(days=30)
        db.session.commit()
        product = make_product(quantity=5)

        resp = client.post("/api/sales", json={
            "customer_id": customer.id,
            "items": [{"product_id": product.id, "quantity": 1}],
            "credit_amount": "10.00",
        })

        assert resp.status_code == 403
        assert resp.json["code"] == "purchase_blocked"
        assert resp.json["details"]["reason"] == "credit_period_expired"
        assert db.session.get(Product, product.id).quantity == 5

    def test_insufficient_stock_is_409(self, client, make_product):
        product = make_product(quantity=5)
        resp = client.post("/api/sales", json={"items": [{"product_id": product.id, "quantity": 10}]})
        assert resp.status_code == 409
        assert resp.json["details"] == {"product_id": product.id, "requested": 10, "available": 5}

    def test_bad_items_are_listed(self, client, make_product):
        resp = client.post("/api/sales", json={"items": [
            {"product_id": 1, "quantity": "2.5"},
            {"product_id": "x", "quantity": 1, "unit_price": "-1"},
        ]})
        assert resp.status_code == 400
        assert [entry["index"] for entry in resp.json["details"]["items"]] == [0, 1]

    def test_split_sale_and_later_payment(self, client, make_customer, make_product):
        customer = make_customer(credit_limit_cents=100000)
        product = make_product(quantity=5, selling_price_cents=40000)

        resp = client.post("/api/sales", json={
            "customer_id": customer.id,
            "items": [{"product_id": product.id, "quantity": 1}],
            "cash_amount": "200.00",
            "credit_amount": "100.00",
        })
        assert resp.status_code == 201
        sale = resp.json["sale"]
        assert sale["payment_method"] == "mixed"
        assert sale["due_amount_cents"] == 10000
        assert db.session.get(Customer, customer.id).current_credit_spend_cents == 10000

        resp = client.post(f"/api/sales/{sale['id']}/payments", json={"amount": "100.00", "payment_method": "card"})
        assert resp.status_code == 201
        assert resp.json["sale"]["due_amount_cents"] == 0

        resp = client.get("/api/sales/summary/daily")
        assert resp.status_code == 200


# =============================================================================
# PRODUCTS AND PURCHASE ORDERS
# =============================================================================


class TestProductRoutes:

    def test_product_lifecycle(self, client, db_session):
        resp = client.post("/api/products", json={
            "product_code": "SKU-9", "name": "Beans", "buying_price": "1.00", "selling_price": "1.50",
            "quantity": 4, "low_stock": 5,
        })
        assert resp.status_code == 201
        product_id = resp.json["product"]["id"]

        resp = client.post("/api/products", json={"product_code": "SKU-9", "name": "Again"})
        assert resp.status_code == 409

        assert client.get("/api/products/low-stock").json["count"] == 1

        resp = client.post(f"/api/products/{product_id}/restock", json={"quantity": 6})
        assert resp.json["quantity"] == 10

        resp = client.post(f"/api/products/{product_id}/adjust", json={"quantity": 8, "reason": "count"})
        assert resp.json["quantity"] == 8

        resp = client.delete(f"/api/products/{product_id}")
        assert resp.status_code == 200
        assert resp.json["product"]["is_active"] is False

    def test_purchase_order_receive(self, client, make_product):
        product = make_product(quantity=1)
        resp = client.post("/api/purchase-orders", json={
            "supplier_name": "Acme",
            "items": [{"product_id": product.id, "quantity": 9, "unit_cost": "2.00"}],
        })
        assert resp.status_code == 201
        po_id = resp.json["purchase_order"]["id"]

        assert client.post(f"/api/purchase-orders/{po_id}/receive").status_code == 200
        assert db.session.get(Product, product.id).quantity == 10

        resp = client.post(f"/api/purchase-orders/{po_id}/receive")
        assert resp.status_code == 409
        assert resp.json["code"] == "invalid_state"
