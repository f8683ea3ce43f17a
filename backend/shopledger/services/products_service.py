# backend/shopledger/services/products_service.py
"""
Products Service

Product master data. Quantity is not a patchable field: stock only moves
through the stock service, so every change has a movement row. Opening
stock given at creation is recorded as a RESTOCK movement.

Removal is a soft delete; sales history keeps pointing at the row.
"""
from __future__ import annotations

import logging

from ..errors import ConflictError, NotFoundError, ValidationError
from ..events import dispatch_after_commit
from ..extensions import db
from ..models import Product
from ..validation import clean_str, parse_int, parse_money_cents, require_fields
from shopledger.time_utils import utcnow
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .stock_service import MOVEMENT_RESTOCK, _increase_locked


logger = logging.getLogger(__name__)

PRODUCT_MUTABLE_FIELDS = {
    "product_code", "batch_number", "name", "description", "brand", "unit",
    "buying_price_cents", "selling_price_cents", "tax_bps", "discount_bps",
    "low_stock", "reorder_point", "is_active",
}

_TEXT_FIELDS = {
    "product_code": 64,
    "batch_number": 64,
    "name": 255,
    "description": 2000,
    "brand": 128,
    "unit": 32,
}

# payload key -> model column; money in decimal units, tax/discount in percent
_MONEY_FIELDS = {
    "buying_price": "buying_price_cents",
    "selling_price": "selling_price_cents",
}
_PERCENT_FIELDS = {
    "tax": "tax_bps",
    "discount": "discount_bps",
}


def parse_product_patch(payload: dict) -> dict:
    """Convert an API payload into model column values."""
    if "quantity" in payload:
        raise ValidationError(
            "quantity cannot be edited directly; use restock or adjust",
            details={"field": "quantity"},
        )

    patch = {}
    for key, size in _TEXT_FIELDS.items():
        if key in payload:
            patch[key] = clean_str(payload[key], key, max_length=size)
    for key, column in _MONEY_FIELDS.items():
        if key in payload:
            patch[column] = parse_money_cents(payload[key], key)
    for key, column in _PERCENT_FIELDS.items():
        if key in payload:
            bps = parse_money_cents(payload[key], key)
            if bps > 10000:
                raise ValidationError(f"{key} cannot exceed 100 percent", details={"field": key})
            patch[column] = bps
    for key in ("low_stock", "reorder_point"):
        if key in payload:
            patch[key] = parse_int(payload[key], key, minimum=0)
    if "is_active" in payload:
        if not isinstance(payload["is_active"], bool):
            raise ValidationError("is_active must be a boolean", details={"field": "is_active"})
        patch["is_active"] = payload["is_active"]
    return patch


def apply_product_patch(p: Product, patch: dict) -> None:
    for k, v in patch.items():
        if k not in PRODUCT_MUTABLE_FIELDS:
            continue
        setattr(p, k, v)


def _ensure_unique(patch: dict, *, exclude_id: int | None = None) -> None:
    for column in ("product_code", "batch_number"):
        value = patch.get(column)
        if value is None:
            continue
        query = db.session.query(Product.id).filter(getattr(Product, column) == value)
        if exclude_id is not None:
            query = query.filter(Product.id != exclude_id)
        if query.first() is not None:
            raise ConflictError(f"{column} already exists", details={"field": column, "value": value})


def create_product(payload: dict, *, dispatcher=None) -> Product:
    """
    Create a product, optionally with opening stock.

    Args:
        payload: product_code and name required; buying_price/selling_price
            as decimal amounts; tax/discount as percentages; quantity is the
            opening stock

    Raises:
        ValidationError: bad field values
        ConflictError: product_code or batch_number already used
    """
    require_fields(payload, "product_code", "name")
    opening = 0
    if payload.get("quantity") not in (None, ""):
        opening = parse_int(payload["quantity"], "quantity", minimum=0)
    patch = parse_product_patch({k: v for k, v in payload.items() if k != "quantity"})

    def _op():
        begin_write_transaction()
        _ensure_unique(patch)

        p = Product(quantity=0)
        apply_product_patch(p, patch)
        db.session.add(p)
        db.session.flush()

        update = _increase_locked(p, opening, action=MOVEMENT_RESTOCK, note="Opening stock")
        db.session.commit()
        return p, update.events

    p, events = run_with_retry(_op)
    logger.info("Created product %s (%s) with opening stock %d", p.id, p.product_code, opening)
    dispatch_after_commit(dispatcher, events)
    return p


def get_product(product_id: int) -> Product:
    p = db.session.get(Product, product_id)
    if p is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return p


def list_products(*, search: str | None = None, include_inactive: bool = False, limit: int = 100) -> list[Product]:
    query = db.session.query(Product)
    if not include_inactive:
        query = query.filter(Product.is_active.is_(True))
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            Product.name.ilike(pattern)
            | Product.product_code.ilike(pattern)
            | Product.batch_number.ilike(pattern)
        )
    return query.order_by(Product.name.asc(), Product.id.asc()).limit(limit).all()


def update_product(product_id: int, payload: dict) -> Product:
    """Patch master data; a pricing change is reflected in profit_margin."""
    patch = parse_product_patch(payload)
    if "name" in patch and not patch["name"]:
        raise ValidationError("name cannot be empty", details={"field": "name"})
    if "product_code" in patch and not patch["product_code"]:
        raise ValidationError("product_code cannot be empty", details={"field": "product_code"})

    def _op():
        begin_write_transaction()
        p = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if p is None:
            raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
        _ensure_unique(patch, exclude_id=p.id)
        apply_product_patch(p, patch)
        if patch.get("is_active") is True:
            p.deleted_at = None
        db.session.commit()
        return p

    return run_with_retry(_op)


def delete_product(product_id: int) -> Product:
    """Soft-delete: preserve ids and historical references."""
    def _op():
        begin_write_transaction()
        p = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if p is None:
            raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
        if p.is_active:
            p.is_active = False
            p.deleted_at = utcnow()
        db.session.commit()
        return p

    p = run_with_retry(_op)
    logger.info("Soft-deleted product %s", product_id)
    return p
