"""
Concurrency policy: lock contention is retried once at the boundary and then
surfaced as ConcurrencyConflictError; concurrent writers never lose updates.
"""

import threading

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from shopledger.errors import ConcurrencyConflictError, ValidationError
from shopledger.extensions import db
from shopledger.models import Customer, Product, Sale
from shopledger.services import credit_service, customer_service, products_service, sales_service
from shopledger.services.concurrency import run_with_retry


def _database_locked():
    return OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))


def _run_in_threads(app, func, count):
    """Run func in `count` threads, each with its own app context. Returns outcome names."""
    barrier = threading.Barrier(count)
    outcomes = []
    guard = threading.Lock()

    def worker():
        with app.app_context():
            barrier.wait()
            try:
                func()
                outcome = "ok"
            except Exception as exc:
                outcome = type(exc).__name__
        with guard:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return sorted(outcomes)


# =============================================================================
# BOUNDARY RETRY
# =============================================================================


class TestRunWithRetry:

    @pytest.mark.parametrize("error", [StaleDataError("version mismatch"), _database_locked()])
    def test_single_conflict_is_retried(self, db_session, error):
        calls = []

        def op():
            calls.append(len(calls))
            if len(calls) == 1:
                raise error
            return "done"

        assert run_with_retry(op, backoff_base=0) == "done"
        assert len(calls) == 2

    def test_second_conflict_surfaces_and_rolls_back(self, make_product):
        product_id = make_product(quantity=5).id
        calls = []

        def op():
            calls.append(1)
            db.session.get(Product, product_id).quantity = 99
            db.session.flush()
            raise _database_locked()

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            run_with_retry(op, backoff_base=0)

        assert exc_info.value.status_code == 503
        assert exc_info.value.details == {"cause": "OperationalError"}
        assert len(calls) == 2
        assert db.session.get(Product, product_id).quantity == 5

    def test_stale_version_twice_surfaces(self, db_session):
        def op():
            raise StaleDataError("version mismatch")

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            run_with_retry(op, backoff_base=0)
        assert exc_info.value.details == {"cause": "StaleDataError"}

    def test_other_database_errors_are_not_retried(self, db_session):
        calls = []

        def op():
            calls.append(1)
            raise OperationalError("SELECT 1", {}, Exception("no such table: widgets"))

        with pytest.raises(OperationalError):
            run_with_retry(op, backoff_base=0)
        assert len(calls) == 1

    def test_domain_errors_are_not_retried(self, make_product):
        product_id = make_product(quantity=5).id
        calls = []

        def op():
            calls.append(1)
            db.session.get(Product, product_id).quantity = 0
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            run_with_retry(op, backoff_base=0)
        assert len(calls) == 1
        assert db.session.get(Product, product_id).quantity == 5


# =============================================================================
# THREADED WRITERS ON A SHARED DATABASE FILE
# =============================================================================


class TestConcurrentWriters:

    def test_last_unit_is_sold_once(self, file_app):
        with file_app.app_context():
            product_id = products_service.create_product({
                "product_code": "LAST-1", "name": "Last unit", "selling_price": "5.00", "quantity": 1,
            }).id

        outcomes = _run_in_threads(
            file_app,
            lambda: sales_service.create_sale(None, [{"product_id": product_id, "quantity": 1}]),
            4,
        )

        assert outcomes == ["InsufficientStockError"] * 3 + ["ok"]
        with file_app.app_context():
            assert db.session.get(Product, product_id).quantity == 0
            assert db.session.query(Sale).count() == 1

    def test_concurrent_credit_charges_all_land(self, file_app):
        with file_app.app_context():
            customer_id = customer_service.create_customer({"name": "Ada", "credit_limit": "10.00"}).id

        outcomes = _run_in_threads(file_app, lambda: credit_service.apply_credit_charge(customer_id, 300), 5)

        assert outcomes == ["ok"] * 5
        with file_app.app_context():
            customer = db.session.get(Customer, customer_id)
            assert customer.current_credit_spend_cents == 1500
            assert customer.credit_balance_cents == 1500
            assert customer.credit_limit_reached_at is not None
