"""
Pytest fixtures for shopledger backend tests.

Provides the test application, a clean database per test, a recording
event dispatcher, and small factories for customers and products.
"""

from datetime import datetime

import pytest

from shopledger import create_app
from shopledger.config import TestingConfig
from shopledger.events import EXTENSION_KEY, EventDispatcher
from shopledger.extensions import db
from shopledger.models import Customer, Product


NOW = datetime(2026, 3, 1, 12, 0, 0)


class RecordingSink:
    """Notification sink that keeps every published event."""

    def __init__(self):
        self.events = []

    def publish(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]


class RecordingCache:
    def __init__(self):
        self.invalidated = []

    def invalidate(self, *keys: str) -> None:
        self.invalidated.extend(keys)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        db.session.remove()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def recording_cache():
    return RecordingCache()


@pytest.fixture
def dispatcher(sink, recording_cache):
    return EventDispatcher(sink, recording_cache)


@pytest.fixture
def app_dispatcher(app, dispatcher):
    """Swap the application's dispatcher for the recording one (route tests)."""
    original = app.extensions[EXTENSION_KEY]
    app.extensions[EXTENSION_KEY] = dispatcher
    yield dispatcher
    app.extensions[EXTENSION_KEY] = original


@pytest.fixture
def make_customer(db_session):
    counter = {"n": 0}

    def _make(credit_limit_cents=100000, credit_period_days=30, **kwargs):
        counter["n"] += 1
        customer = Customer(
            customer_code=kwargs.pop("customer_code", f"TEST{counter['n']:06d}"),
            name=kwargs.pop("name", f"Customer {counter['n']}"),
            credit_limit_cents=credit_limit_cents,
            credit_period_days=credit_period_days,
            **kwargs,
        )
        db_session.add(customer)
        db_session.commit()
        return customer

    return _make


@pytest.fixture
def make_product(db_session):
    counter = {"n": 0}

    def _make(quantity=10, selling_price_cents=1000, buying_price_cents=600, **kwargs):
        counter["n"] += 1
        product = Product(
            product_code=kwargs.pop("product_code", f"P-{counter['n']:04d}"),
            name=kwargs.pop("name", f"Product {counter['n']}"),
            quantity=quantity,
            selling_price_cents=selling_price_cents,
            buying_price_cents=buying_price_cents,
            **kwargs,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture
def file_app(tmp_path):
    """Application on a file-backed SQLite database with an in-process cache (threads, caching)."""

    class FileConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'shopledger.sqlite3'}"
        CACHE_TYPE = "SimpleCache"

    app = create_app(FileConfig)
    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
