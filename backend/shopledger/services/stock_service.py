# Overview: Stock ledger; non-negative product quantities with audited, locked mutations.

"""
Stock Ledger Invariants (authoritative)

- Product.quantity never goes negative. A decrement larger than the current
  quantity raises InsufficientStockError and changes nothing.
- Every mutation happens on a row locked by the caller's transaction
  (products are locked in ascending id order) and appends a StockMovement.
- Decrements are evaluated and applied inside the transaction of the sale
  that owns them; restocks and purchase-order receipts run on their own.
- Each change emits StockUpdated(old, new, action); decrements that land at
  or below low_stock / reorder_point also emit LowStockReached /
  ReorderLevelReached. Events are dispatched only after commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import func

from ..errors import InsufficientStockError, NotFoundError, ValidationError
from ..events import (
    STOCK_ACTION_ADDED,
    STOCK_ACTION_ADJUSTED,
    STOCK_ACTION_REDUCED,
    LowStockReached,
    ReorderLevelReached,
    StockUpdated,
    dispatch_after_commit,
)
from ..extensions import db
from ..models import Product, StockMovement
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry


logger = logging.getLogger(__name__)


MOVEMENT_SALE = "SALE"
MOVEMENT_RESTOCK = "RESTOCK"
MOVEMENT_PURCHASE_ORDER = "PURCHASE_ORDER"
MOVEMENT_ADJUST = "ADJUST"
MOVEMENT_TRANSFER_OUT = "TRANSFER_OUT"
MOVEMENT_TRANSFER_IN = "TRANSFER_IN"


@dataclass
class StockUpdate:
    product_id: int
    old_quantity: int
    new_quantity: int
    events: list = field(default_factory=list)


def is_low_stock(product: Product) -> bool:
    return product.quantity <= product.low_stock


def is_out_of_stock(product: Product) -> bool:
    return product.quantity == 0


# =============================================================================
# LOCKING
# =============================================================================

def lock_product(product_id: int) -> Product:
    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def lock_products(product_ids) -> dict[int, Product]:
    """
    Lock every product in ascending id order.

    A single consistent lock order means two sales touching the same set of
    products cannot deadlock each other.
    """
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    query = db.session.query(Product).filter(Product.id.in_(ids)).order_by(Product.id)
    return {product.id: product for product in lock_for_update(query).all()}


def ensure_available(product: Product, requested: int) -> None:
    if requested > product.quantity:
        logger.warning(
            "Insufficient stock for product %s: requested %d, available %d",
            product.id, requested, product.quantity,
        )
        raise InsufficientStockError(product.id, requested, product.quantity)


# =============================================================================
# LEDGER COMMANDS (caller holds the product row lock)
# =============================================================================

def _record_movement(
    product: Product,
    action: str,
    old_quantity: int,
    *,
    sale_id: int | None = None,
    purchase_order_id: int | None = None,
    note: str | None = None,
) -> StockMovement:
    movement = StockMovement(
        product_id=product.id,
        action=action,
        quantity_delta=product.quantity - old_quantity,
        quantity_before=old_quantity,
        quantity_after=product.quantity,
        sale_id=sale_id,
        purchase_order_id=purchase_order_id,
        note=note,
    )
    db.session.add(movement)
    return movement


def _threshold_events(product: Product) -> list:
    events = []
    if product.quantity <= product.low_stock:
        events.append(LowStockReached(product.id, product.quantity, product.low_stock))
    if product.quantity <= product.reorder_point:
        events.append(ReorderLevelReached(product.id, product.quantity, product.reorder_point))
    return events


def _deduct_locked(
    product: Product,
    quantity: int,
    *,
    action: str = MOVEMENT_SALE,
    sale_id: int | None = None,
    note: str | None = None,
) -> StockUpdate:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1", details={"field": "quantity"})
    ensure_available(product, quantity)

    old_quantity = product.quantity
    product.quantity = old_quantity - quantity
    _record_movement(product, action, old_quantity, sale_id=sale_id, note=note)

    events = [StockUpdated(product.id, old_quantity, product.quantity, STOCK_ACTION_REDUCED)]
    events.extend(_threshold_events(product))
    return StockUpdate(product.id, old_quantity, product.quantity, events)


def _increase_locked(
    product: Product,
    quantity: int,
    *,
    action: str = MOVEMENT_RESTOCK,
    purchase_order_id: int | None = None,
    note: str | None = None,
) -> StockUpdate:
    if quantity < 0:
        raise ValidationError("Quantity cannot be negative", details={"field": "quantity"})

    old_quantity = product.quantity
    if quantity == 0:
        return StockUpdate(product.id, old_quantity, old_quantity)

    product.quantity = old_quantity + quantity
    _record_movement(product, action, old_quantity, purchase_order_id=purchase_order_id, note=note)
    return StockUpdate(
        product.id,
        old_quantity,
        product.quantity,
        [StockUpdated(product.id, old_quantity, product.quantity, STOCK_ACTION_ADDED)],
    )


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def reserve_and_deduct(
    product_id: int,
    quantity: int,
    *,
    note: str | None = None,
    dispatcher=None,
) -> int:
    """
    Deduct stock outside of a sale (damage, write-off). Returns the new quantity.

    Sales do not call this; they deduct inside their own transaction.
    """
    def _op():
        begin_write_transaction()
        product = lock_product(product_id)
        update = _deduct_locked(product, quantity, action=MOVEMENT_ADJUST, note=note)
        db.session.commit()
        return update

    update = run_with_retry(_op)
    dispatch_after_commit(dispatcher, update.events)
    return update.new_quantity


def increase(
    product_id: int,
    quantity: int,
    *,
    note: str | None = None,
    dispatcher=None,
) -> int:
    """Manual restock. Always succeeds for quantity >= 0; returns the new quantity."""
    def _op():
        begin_write_transaction()
        product = lock_product(product_id)
        update = _increase_locked(product, quantity, action=MOVEMENT_RESTOCK, note=note)
        db.session.commit()
        return update

    update = run_with_retry(_op)
    dispatch_after_commit(dispatcher, update.events)
    return update.new_quantity


def adjust_stock(product_id: int, new_quantity: int, reason: str = "", *, dispatcher=None) -> int:
    """Inventory correction to an absolute counted quantity."""
    if new_quantity < 0:
        raise ValidationError("Quantity cannot be negative", details={"field": "quantity"})

    def _op():
        begin_write_transaction()
        product = lock_product(product_id)
        old_quantity = product.quantity
        events = []
        if new_quantity != old_quantity:
            product.quantity = new_quantity
            _record_movement(product, MOVEMENT_ADJUST, old_quantity, note=reason or None)
            events.append(StockUpdated(product.id, old_quantity, new_quantity, STOCK_ACTION_ADJUSTED))
            if new_quantity < old_quantity:
                events.extend(_threshold_events(product))
        db.session.commit()
        logger.info("Adjusted product %s stock %d -> %d (%s)", product_id, old_quantity, new_quantity, reason)
        return StockUpdate(product_id, old_quantity, new_quantity, events)

    update = run_with_retry(_op)
    dispatch_after_commit(dispatcher, update.events)
    return update.new_quantity


def transfer_stock(from_product_id: int, to_product_id: int, quantity: int, *, dispatcher=None) -> tuple[int, int]:
    """Move quantity between two batches. Returns (from_quantity, to_quantity)."""
    if from_product_id == to_product_id:
        raise ValidationError("Cannot transfer stock to the same product")
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1", details={"field": "quantity"})

    def _op():
        begin_write_transaction()
        products = lock_products([from_product_id, to_product_id])
        for product_id in (from_product_id, to_product_id):
            if product_id not in products:
                raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})

        note = f"Transfer {from_product_id} -> {to_product_id}"
        out = _deduct_locked(products[from_product_id], quantity, action=MOVEMENT_TRANSFER_OUT, note=note)
        into = _increase_locked(products[to_product_id], quantity, action=MOVEMENT_TRANSFER_IN, note=note)
        db.session.commit()
        return out, into

    out, into = run_with_retry(_op)
    dispatch_after_commit(dispatcher, out.events + into.events)
    return out.new_quantity, into.new_quantity


# =============================================================================
# QUERIES
# =============================================================================

def get_stock_value(product_id: int) -> int:
    """On-hand quantity valued at buying price, in cents."""
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product.quantity * product.buying_price_cents


def get_total_inventory_value() -> int:
    total = (
        db.session.query(func.coalesce(func.sum(Product.quantity * Product.buying_price_cents), 0))
        .filter(Product.is_active.is_(True))
        .scalar()
    )
    return int(total or 0)


def get_low_stock_products() -> list[Product]:
    return (
        db.session.query(Product)
        .filter(Product.is_active.is_(True), Product.quantity <= Product.low_stock)
        .order_by(Product.quantity, Product.id)
        .all()
    )


def get_stock_movements(product_id: int, limit: int = 50) -> list[StockMovement]:
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.id.desc())
        .limit(limit)
        .all()
    )
