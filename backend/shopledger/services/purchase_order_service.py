# Overview: Supplier purchase orders; receiving one restocks every line atomically.

"""
Purchase Order Service

LIFECYCLE:
1. draft: created with lines, no stock effect
2. received: every line's quantity added to stock in one transaction
3. cancelled: closed without stock effect (only from draft)

IMMUTABLE: received and cancelled orders never change again.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..events import dispatch_after_commit
from ..extensions import db
from ..models import Product, PurchaseOrder, PurchaseOrderLine
from ..validation import clean_str
from shopledger.time_utils import normalize_utc, utcnow
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .document_service import DOC_PURCHASE_ORDER, next_document_number
from .stock_service import MOVEMENT_PURCHASE_ORDER, _increase_locked, lock_products


logger = logging.getLogger(__name__)


PO_STATUS_DRAFT = "draft"
PO_STATUS_RECEIVED = "received"
PO_STATUS_CANCELLED = "cancelled"


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _normalize_items(items) -> list[dict]:
    if not items:
        raise ValidationError("Purchase order must have at least one line", details={"items": []})

    normalized = []
    offending = []
    for index, item in enumerate(items):
        errors = []
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        unit_cost = item.get("unit_cost_cents", 0)
        if not _is_int(product_id) or product_id < 1:
            errors.append("product_id is required")
        if not _is_int(quantity) or quantity < 1:
            errors.append("quantity must be an integer >= 1")
        if not _is_int(unit_cost) or unit_cost < 0:
            errors.append("unit cost must be >= 0")
        if errors:
            offending.append({"index": index, "product_id": product_id, "errors": errors})
        else:
            normalized.append({"product_id": product_id, "quantity": quantity, "unit_cost_cents": unit_cost})

    if offending:
        raise ValidationError("Invalid purchase order lines", details={"items": offending})
    return normalized


def _lock_order(po_id: int) -> PurchaseOrder:
    po = lock_for_update(db.session.query(PurchaseOrder).filter_by(id=po_id)).first()
    if po is None:
        raise NotFoundError(f"Purchase order {po_id} not found", details={"purchase_order_id": po_id})
    return po


def create_purchase_order(
    supplier_name: str,
    items,
    *,
    order_date: date | None = None,
    expected_delivery_date: date | None = None,
    notes: str | None = None,
    user_id: int | None = None,
) -> PurchaseOrder:
    """
    Create a draft purchase order.

    Args:
        supplier_name: Required supplier label
        items: [{"product_id", "quantity", "unit_cost_cents"}, ...]
    """
    supplier = clean_str(supplier_name, "supplier_name", max_length=255)
    if not supplier:
        raise ValidationError("supplier_name is required", details={"field": "supplier_name"})
    lines = _normalize_items(items)

    def _op():
        begin_write_transaction()
        product_ids = {line["product_id"] for line in lines}
        found = {pid for (pid,) in db.session.query(Product.id).filter(Product.id.in_(product_ids))}
        missing = sorted(product_ids - found)
        if missing:
            raise NotFoundError("Products not found", details={"product_ids": missing})

        po = PurchaseOrder(
            po_number=next_document_number(DOC_PURCHASE_ORDER),
            supplier_name=supplier,
            status=PO_STATUS_DRAFT,
            order_date=order_date or utcnow().date(),
            expected_delivery_date=expected_delivery_date,
            notes=notes,
            created_by_user_id=user_id,
            total_amount_cents=sum(line["quantity"] * line["unit_cost_cents"] for line in lines),
        )
        db.session.add(po)
        db.session.flush()

        for line in lines:
            db.session.add(PurchaseOrderLine(
                purchase_order_id=po.id,
                product_id=line["product_id"],
                quantity=line["quantity"],
                unit_cost_cents=line["unit_cost_cents"],
                total_cost_cents=line["quantity"] * line["unit_cost_cents"],
            ))
        db.session.commit()
        return po

    po = run_with_retry(_op)
    logger.info("Created purchase order %s (%s) for %s", po.id, po.po_number, supplier)
    return po


def receive_purchase_order(
    po_id: int,
    *,
    user_id: int | None = None,
    now: datetime | None = None,
    dispatcher=None,
) -> PurchaseOrder:
    """
    Receive a draft order: increase stock for every line in one transaction.

    Raises:
        NotFoundError: order does not exist
        InvalidStateError: order already received or cancelled
    """
    now = normalize_utc(now) or utcnow()

    def _op():
        begin_write_transaction()
        po = _lock_order(po_id)
        if po.status != PO_STATUS_DRAFT:
            raise InvalidStateError(
                f"Purchase order is {po.status}; only draft orders can be received",
                details={"purchase_order_id": po.id, "status": po.status},
            )

        lines = db.session.query(PurchaseOrderLine).filter_by(purchase_order_id=po.id).order_by(PurchaseOrderLine.id).all()
        products = lock_products(line.product_id for line in lines)

        events = []
        for line in lines:
            update = _increase_locked(
                products[line.product_id],
                line.quantity,
                action=MOVEMENT_PURCHASE_ORDER,
                purchase_order_id=po.id,
                note=f"Received {po.po_number}",
            )
            events.extend(update.events)

        po.status = PO_STATUS_RECEIVED
        po.received_at = now
        po.received_by_user_id = user_id
        db.session.commit()
        return po, events

    po, events = run_with_retry(_op)
    logger.info("Received purchase order %s (%s)", po.id, po.po_number)
    dispatch_after_commit(dispatcher, events)
    return po


def cancel_purchase_order(po_id: int) -> PurchaseOrder:
    def _op():
        begin_write_transaction()
        po = _lock_order(po_id)
        if po.status != PO_STATUS_DRAFT:
            raise InvalidStateError(
                f"Purchase order is {po.status}; only draft orders can be cancelled",
                details={"purchase_order_id": po.id, "status": po.status},
            )
        po.status = PO_STATUS_CANCELLED
        db.session.commit()
        return po

    po = run_with_retry(_op)
    logger.info("Cancelled purchase order %s", po_id)
    return po


def get_purchase_order(po_id: int) -> PurchaseOrder:
    po = db.session.get(PurchaseOrder, po_id)
    if po is None:
        raise NotFoundError(f"Purchase order {po_id} not found", details={"purchase_order_id": po_id})
    return po
