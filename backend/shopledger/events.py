# Overview: Domain events and the collaborators that consume them after commit.

"""
Domain events are plain frozen dataclasses produced by ledger commands.

Services collect them while a transaction is open and hand them to an
EventDispatcher only after the commit succeeds. Consumers (notifications,
cache invalidation) are fire-and-forget: a failing consumer is logged and
never reaches back into the committed transaction.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Iterable, Protocol

from flask import current_app


logger = logging.getLogger(__name__)


STOCK_ACTION_REDUCED = "reduced"
STOCK_ACTION_ADDED = "added"
STOCK_ACTION_ADJUSTED = "adjusted"


@dataclass(frozen=True)
class CreditExceeded:
    customer_id: int
    exceeded_amount_cents: int

    @property
    def cache_keys(self) -> tuple[str, ...]:
        return (f"customer_{self.customer_id}",)


@dataclass(frozen=True)
class CreditSettled:
    customer_id: int
    amount_cents: int
    payment_id: int | None

    @property
    def cache_keys(self) -> tuple[str, ...]:
        return (f"customer_{self.customer_id}", f"customer_transactions_{self.customer_id}")


@dataclass(frozen=True)
class StockUpdated:
    product_id: int
    old_quantity: int
    new_quantity: int
    action: str

    @property
    def cache_keys(self) -> tuple[str, ...]:
        return (f"product_{self.product_id}",)


@dataclass(frozen=True)
class LowStockReached:
    product_id: int
    quantity: int
    threshold: int

    @property
    def cache_keys(self) -> tuple[str, ...]:
        return ()


@dataclass(frozen=True)
class ReorderLevelReached:
    product_id: int
    quantity: int
    reorder_point: int

    @property
    def cache_keys(self) -> tuple[str, ...]:
        return ()


@dataclass(frozen=True)
class SaleCompleted:
    sale_id: int
    customer_id: int | None
    total_amount_cents: int
    profit_amount_cents: int

    @property
    def cache_keys(self) -> tuple[str, ...]:
        keys = ["dashboard_summary"]
        if self.customer_id is not None:
            keys.append(f"customer_transactions_{self.customer_id}")
        return tuple(keys)


@dataclass(frozen=True)
class SaleRecorded:
    """A draft or pending sale was saved without posting."""

    sale_id: int
    customer_id: int | None
    status: str

    @property
    def cache_keys(self) -> tuple[str, ...]:
        if self.customer_id is None:
            return ()
        return (f"customer_transactions_{self.customer_id}",)


@dataclass(frozen=True)
class SalePaymentRecorded:
    sale_id: int
    customer_id: int | None
    amount_cents: int
    payment_id: int

    @property
    def cache_keys(self) -> tuple[str, ...]:
        keys = ["dashboard_summary"]
        if self.customer_id is not None:
            keys.append(f"customer_transactions_{self.customer_id}")
        return tuple(keys)


def event_name(event) -> str:
    return type(event).__name__


class NotificationSink(Protocol):
    def publish(self, event) -> None: ...


class CacheInvalidator(Protocol):
    def invalidate(self, *keys: str) -> None: ...


class LoggingNotificationSink:
    """Writes every event to the application log."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logging.getLogger("shopledger.notifications")

    def publish(self, event) -> None:
        if isinstance(event, (CreditExceeded, LowStockReached, ReorderLevelReached)):
            self.log.warning("%s %s", event_name(event), asdict(event))
        else:
            self.log.info("%s %s", event_name(event), asdict(event))


class FlaskCacheInvalidator:
    """Deletes Flask-Caching entries named by an event."""

    def __init__(self, cache):
        self.cache = cache

    def invalidate(self, *keys: str) -> None:
        if keys:
            self.cache.delete_many(*keys)


class EventDispatcher:
    def __init__(self, sink: NotificationSink, cache: CacheInvalidator | None = None):
        self.sink = sink
        self.cache = cache

    def dispatch(self, events: Iterable) -> None:
        for event in events:
            try:
                if self.cache is not None:
                    self.cache.invalidate(*event.cache_keys)
                self.sink.publish(event)
            except Exception:
                logger.exception("Event consumer failed for %s", event_name(event))


def dispatch_after_commit(dispatcher: EventDispatcher | None, events: list) -> None:
    """Hand committed events to the dispatcher, if the caller supplied one."""
    if dispatcher is not None and events:
        dispatcher.dispatch(events)


EXTENSION_KEY = "shopledger.events"


def current_dispatcher() -> EventDispatcher | None:
    """The dispatcher create_app registered, for routes to pass into services."""
    return current_app.extensions.get(EXTENSION_KEY)
