"""
Sales Service - atomic cart-to-sale processing

WHY: A sale is the single operation that moves stock, customer credit and
money at once. Either all of it happens or none of it does.

ORDER OF OPERATIONS (one transaction, rolled back on any failure):
1. Validate line items (product exists and is active, quantity >= 1,
   unit price >= 0). Every offending item is reported together.
2. Check stock for every product before any mutation; fail fast on the
   first shortfall.
3. Compute totals: sum(quantity * unit price) - discount.
4. If any of the payment is on credit, charge the customer's credit ledger.
   An expired credit period aborts the sale here, before stock moves.
5. Deduct stock, persist the sale and lines, update cumulative balances.
6. Commit, then emit SaleCompleted with the snapshot profit.

Draft and pending sales stop after persisting the sale and its lines and
emit SaleRecorded; approve_sale runs steps 2-6 later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy import func

from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..events import SaleCompleted, SaleRecorded, dispatch_after_commit
from ..extensions import db
from ..models import Customer, Payment, Product, Sale, SaleLine
from ..validation import parse_int, parse_money_cents
from shopledger.time_utils import normalize_utc, utcnow
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .credit_service import _charge_locked, lock_customer
from .document_service import DOC_SALE, next_document_number
from .payment_service import PAYMENT_KIND_SALE, METHOD_CARD, METHOD_CASH, METHOD_CREDIT
from .stock_service import _deduct_locked, ensure_available, lock_products


logger = logging.getLogger(__name__)


# =============================================================================
# SALE STATUS (CONSTANTS)
# =============================================================================

SALE_STATUS_PENDING = "pending"
SALE_STATUS_APPROVED = "approved"
SALE_STATUS_DRAFT = "draft"

VALID_SALE_STATUSES = [SALE_STATUS_PENDING, SALE_STATUS_APPROVED, SALE_STATUS_DRAFT]

METHOD_MIXED = "mixed"
SALE_PAYMENT_METHODS = [METHOD_CASH, METHOD_CARD, METHOD_CREDIT]


@dataclass(frozen=True)
class LineItem:
    product_id: int
    quantity: int
    unit_price_cents: int | None = None


@dataclass(frozen=True)
class PaymentSplit:
    cash_cents: int
    card_cents: int
    credit_cents: int
    payment_method: str

    @property
    def paid_cents(self) -> int:
        return self.cash_cents + self.card_cents + self.credit_cents


# =============================================================================
# VALIDATION
# =============================================================================

def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def normalize_line_items(items) -> list[LineItem]:
    """
    Shape-check raw items (dicts or LineItem) and report every bad one.

    Raises:
        ValidationError: details["items"] lists {index, errors} per offender
    """
    if not items:
        raise ValidationError("Sale must have at least one line item", details={"items": []})

    normalized: list[LineItem] = []
    offending = []
    for index, item in enumerate(items):
        if isinstance(item, LineItem):
            item = {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_price_cents": item.unit_price_cents,
            }
        errors = []
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        unit_price = item.get("unit_price_cents")

        if not _is_int(product_id) or product_id < 1:
            errors.append("product_id is required")
        if not _is_int(quantity) or quantity < 1:
            errors.append("quantity must be an integer >= 1")
        if unit_price is not None and (not _is_int(unit_price) or unit_price < 0):
            errors.append("unit price must be >= 0")

        if errors:
            offending.append({"index": index, "product_id": product_id, "errors": errors})
        else:
            normalized.append(LineItem(product_id, quantity, unit_price))

    if offending:
        raise ValidationError("Invalid line items", details={"items": offending})
    return normalized


def line_items_from_payload(raw_items) -> list[dict]:
    """
    Convert API line items ({product_id, quantity, unit_price}) to service
    items, with unit_price as a decimal amount. Every bad item is reported.
    """
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Sale must have at least one line item", details={"items": []})

    items = []
    offending = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            offending.append({"index": index, "product_id": None, "errors": ["line item must be an object"]})
            continue
        errors = []
        parsed = {}
        for key in ("product_id", "quantity"):
            try:
                parsed[key] = parse_int(raw.get(key), key, minimum=1)
            except ValidationError as e:
                errors.append(e.message)
        if raw.get("unit_price") not in (None, ""):
            try:
                parsed["unit_price_cents"] = parse_money_cents(raw["unit_price"], "unit_price")
            except ValidationError as e:
                errors.append(e.message)
        if errors:
            offending.append({"index": index, "product_id": raw.get("product_id"), "errors": errors})
        else:
            items.append(parsed)

    if offending:
        raise ValidationError("Invalid line items", details={"items": offending})
    return items


def _validate_products(items: list[LineItem], products: dict[int, Product]) -> None:
    offending = []
    for index, item in enumerate(items):
        product = products.get(item.product_id)
        if product is None:
            offending.append({"index": index, "product_id": item.product_id, "errors": ["product not found"]})
        elif not product.is_active:
            offending.append({"index": index, "product_id": item.product_id, "errors": ["product is inactive"]})
    if offending:
        raise ValidationError("Invalid line items", details={"items": offending})


def resolve_payment_split(
    total_cents: int,
    *,
    paid_amount_cents: int | None = None,
    cash_amount_cents: int | None = None,
    card_amount_cents: int | None = None,
    credit_amount_cents: int | None = None,
    payment_method: str | None = None,
) -> PaymentSplit:
    """
    Turn either an explicit cash/card/credit split or a single payment method
    into a PaymentSplit.

    - Explicit split: paid = cash + card + credit (paid_amount, if given,
      must agree). Method is the one non-zero portion, or "mixed".
    - Single method: the paid amount (default: the full total) goes to it.
    - Either way the split may not exceed the total.
    """
    portions = (cash_amount_cents, card_amount_cents, credit_amount_cents)
    for name, value in zip(("cash_amount", "card_amount", "credit_amount", "paid_amount"),
                           portions + (paid_amount_cents,)):
        if value is not None and (not _is_int(value) or value < 0):
            raise ValidationError(f"{name} cannot be negative", details={"field": name})

    if any(value is not None for value in portions):
        cash, card, credit = (value or 0 for value in portions)
        split_total = cash + card + credit
        if paid_amount_cents is not None and paid_amount_cents != split_total:
            raise ValidationError(
                "cash + card + credit must equal paid amount",
                details={"paid_amount_cents": paid_amount_cents, "split_total_cents": split_total},
            )
        used = [m for m, v in ((METHOD_CASH, cash), (METHOD_CARD, card), (METHOD_CREDIT, credit)) if v > 0]
        if len(used) > 1:
            method = METHOD_MIXED
        elif used:
            method = used[0]
        else:
            method = payment_method if payment_method in SALE_PAYMENT_METHODS else METHOD_CASH
        split = PaymentSplit(cash, card, credit, method)
    else:
        method = payment_method or METHOD_CASH
        if method not in SALE_PAYMENT_METHODS:
            raise ValidationError(
                f"Invalid payment method: {method}. Must be one of {SALE_PAYMENT_METHODS}",
                details={"field": "payment_method"},
            )
        paid = total_cents if paid_amount_cents is None else paid_amount_cents
        split = PaymentSplit(
            paid if method == METHOD_CASH else 0,
            paid if method == METHOD_CARD else 0,
            paid if method == METHOD_CREDIT else 0,
            method,
        )

    if split.paid_cents > total_cents:
        raise ValidationError(
            "Payment split exceeds sale total",
            details={"paid_amount_cents": split.paid_cents, "total_amount_cents": total_cents},
        )
    return split


# =============================================================================
# POSTING (caller holds the locks)
# =============================================================================

def _net_profit(sale: Sale, lines) -> int:
    return sum(line.profit_cents for line in lines) - (sale.discount_cents or 0)


def _post_sale_locked(
    sale: Sale,
    lines: list[SaleLine],
    products: dict[int, Product],
    *,
    now: datetime,
) -> list:
    """Steps 2-5 for a sale whose products are already locked. Returns events."""
    if not lines:
        raise ValidationError("Cannot approve a sale with no lines")

    # Step 2: all stock checks before any mutation
    requested: dict[int, int] = {}
    for line in lines:
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity
    for product_id, quantity in requested.items():
        ensure_available(products[product_id], quantity)

    events = []

    # Step 4: credit check before stock deduction
    customer = lock_customer(sale.customer_id) if sale.customer_id is not None else None
    if sale.credit_amount_cents > 0:
        update = _charge_locked(customer, sale.credit_amount_cents, now=now)
        events.extend(update.events)

    # Step 5: deduct stock, snapshot cost
    for line in lines:
        product = products[line.product_id]
        line.unit_cost_cents = product.buying_price_cents
        stock = _deduct_locked(product, line.quantity, sale_id=sale.id, note=f"Sale {sale.bill_number}")
        events.extend(stock.events)

    if customer is not None:
        customer.cash_balance_cents += sale.cash_amount_cents
        customer.card_balance_cents += sale.card_amount_cents
        customer.total_balance_cents += sale.total_amount_cents

    for method, amount in ((METHOD_CASH, sale.cash_amount_cents), (METHOD_CARD, sale.card_amount_cents)):
        if amount > 0:
            db.session.add(Payment(
                kind=PAYMENT_KIND_SALE,
                sale_id=sale.id,
                customer_id=sale.customer_id,
                amount_cents=amount,
                payment_method=method,
                payment_date=now.date(),
                reference_number=sale.bill_number,
                recorded_by_user_id=sale.created_by_user_id,
                created_at=now,
            ))

    sale.profit_cents = _net_profit(sale, lines)
    sale.status = SALE_STATUS_APPROVED
    sale.approved_at = now

    events.append(SaleCompleted(
        sale_id=sale.id,
        customer_id=sale.customer_id,
        total_amount_cents=sale.total_amount_cents,
        profit_amount_cents=sale.profit_cents,
    ))
    return events


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def create_sale(
    customer_id: int | None,
    items,
    *,
    discount_cents: int = 0,
    paid_amount_cents: int | None = None,
    cash_amount_cents: int | None = None,
    card_amount_cents: int | None = None,
    credit_amount_cents: int | None = None,
    payment_method: str | None = None,
    status: str = SALE_STATUS_APPROVED,
    user_id: int | None = None,
    now: datetime | None = None,
    dispatcher=None,
) -> Sale:
    """
    Create a sale from a cart in one all-or-nothing transaction.

    Args:
        customer_id: Customer, or None for a walk-in sale
        items: [{"product_id", "quantity", "unit_price_cents"?}, ...]; a
            missing unit price defaults to the product's selling price
        discount_cents: Whole-sale discount, 0 <= discount <= subtotal
        paid_amount_cents / cash / card / credit / payment_method: see
            resolve_payment_split
        status: approved (default) posts immediately; draft/pending only persist

    Raises:
        ValidationError, NotFoundError, InsufficientStockError,
        PurchaseBlockedError, ConcurrencyConflictError
    """
    if status not in VALID_SALE_STATUSES:
        raise ValidationError(f"Invalid sale status: {status}", details={"field": "status"})
    if not _is_int(discount_cents) or discount_cents < 0:
        raise ValidationError("discount cannot be negative", details={"field": "discount_value"})

    line_items = normalize_line_items(items)
    now = normalize_utc(now) or utcnow()

    def _op():
        begin_write_transaction()
        products = lock_products(item.product_id for item in line_items)
        _validate_products(line_items, products)

        priced = []
        for item in line_items:
            unit_price = item.unit_price_cents
            if unit_price is None:
                unit_price = products[item.product_id].selling_price_cents
            priced.append((item, unit_price, unit_price * item.quantity))

        subtotal = sum(line_total for _, _, line_total in priced)
        if discount_cents > subtotal:
            raise ValidationError(
                "Discount exceeds sale subtotal",
                details={"discount_cents": discount_cents, "subtotal_cents": subtotal},
            )
        total = subtotal - discount_cents

        split = resolve_payment_split(
            total,
            paid_amount_cents=paid_amount_cents,
            cash_amount_cents=cash_amount_cents,
            card_amount_cents=card_amount_cents,
            credit_amount_cents=credit_amount_cents,
            payment_method=payment_method,
        )
        if split.credit_cents > 0 and customer_id is None:
            raise ValidationError("Credit sales require a customer", details={"field": "customer_id"})
        if customer_id is not None and db.session.get(Customer, customer_id) is None:
            raise NotFoundError(f"Customer {customer_id} not found", details={"customer_id": customer_id})

        sale = Sale(
            bill_number=next_document_number(DOC_SALE),
            customer_id=customer_id,
            status=status,
            payment_method=split.payment_method,
            total_quantity=sum(item.quantity for item in line_items),
            subtotal_cents=subtotal,
            discount_cents=discount_cents,
            total_amount_cents=total,
            paid_amount_cents=split.paid_cents,
            due_amount_cents=total - split.paid_cents,
            cash_amount_cents=split.cash_cents,
            card_amount_cents=split.card_cents,
            credit_amount_cents=split.credit_cents,
            created_by_user_id=user_id,
        )
        db.session.add(sale)
        db.session.flush()

        lines = []
        for item, unit_price, line_total in priced:
            line = SaleLine(
                sale_id=sale.id,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price_cents=unit_price,
                unit_cost_cents=products[item.product_id].buying_price_cents,
                line_total_cents=line_total,
            )
            db.session.add(line)
            lines.append(line)
        db.session.flush()

        if status == SALE_STATUS_APPROVED:
            events = _post_sale_locked(sale, lines, products, now=now)
        else:
            events = [SaleRecorded(sale_id=sale.id, customer_id=customer_id, status=status)]

        db.session.commit()
        return sale, events

    sale, events = run_with_retry(_op)
    logger.info("Sale %s (%s) saved as %s, total %d cents", sale.id, sale.bill_number, sale.status, sale.total_amount_cents)
    dispatch_after_commit(dispatcher, events)
    return sale


def approve_sale(sale_id: int, *, now: datetime | None = None, dispatcher=None) -> Sale:
    """Post a draft or pending sale: stock, credit and balances, atomically."""
    now = normalize_utc(now) or utcnow()

    def _op():
        begin_write_transaction()
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if sale is None:
            raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
        if sale.status == SALE_STATUS_APPROVED:
            raise InvalidStateError("Sale is already approved", details={"sale_id": sale_id})

        lines = db.session.query(SaleLine).filter_by(sale_id=sale_id).order_by(SaleLine.id).all()
        items = [LineItem(line.product_id, line.quantity, line.unit_price_cents) for line in lines]
        products = lock_products(item.product_id for item in items)
        _validate_products(items, products)

        events = _post_sale_locked(sale, lines, products, now=now)
        db.session.commit()
        return sale, events

    sale, events = run_with_retry(_op)
    logger.info("Sale %s (%s) approved", sale.id, sale.bill_number)
    dispatch_after_commit(dispatcher, events)
    return sale


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    return sale


def list_sales(
    *,
    customer_id: int | None = None,
    search: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = 50,
) -> list[Sale]:
    query = db.session.query(Sale)
    if customer_id is not None:
        query = query.filter(Sale.customer_id == customer_id)
    if search:
        pattern = f"%{search}%"
        query = query.outerjoin(Customer, Sale.customer_id == Customer.id).filter(
            Sale.bill_number.ilike(pattern) | Customer.name.ilike(pattern)
        )
    if date_from is not None:
        query = query.filter(Sale.created_at >= datetime.combine(date_from, time.min))
    if date_to is not None:
        query = query.filter(Sale.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
    return query.order_by(Sale.id.desc()).limit(limit).all()


def calculate_sale_profit(sale_id: int) -> int:
    """Snapshot line profit minus the whole-sale discount, in cents."""
    sale = get_sale(sale_id)
    return _net_profit(sale, sale.lines)


def daily_sales_summary(day: date | None = None) -> dict:
    """Approved sales for one UTC day: count, revenue, and per-tender totals."""
    day = day or utcnow().date()
    start = datetime.combine(day, time.min)
    end = start + timedelta(days=1)

    row = (
        db.session.query(
            func.count(Sale.id),
            func.coalesce(func.sum(Sale.total_amount_cents), 0),
            func.coalesce(func.sum(Sale.cash_amount_cents), 0),
            func.coalesce(func.sum(Sale.card_amount_cents), 0),
            func.coalesce(func.sum(Sale.credit_amount_cents), 0),
            func.coalesce(func.sum(Sale.profit_cents), 0),
        )
        .filter(
            Sale.status == SALE_STATUS_APPROVED,
            Sale.approved_at >= start,
            Sale.approved_at < end,
        )
        .one()
    )

    return {
        "date": day.isoformat(),
        "total_sales": int(row[0]),
        "total_revenue_cents": int(row[1]),
        "cash_sales_cents": int(row[2]),
        "card_sales_cents": int(row[3]),
        "credit_sales_cents": int(row[4]),
        "profit_cents": int(row[5]),
    }
