from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from ..extensions import db
from shopledger.time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data with its stock counter.

    STOCK DESIGN DECISION:
    Product.quantity is the authoritative on-hand counter. It is only changed
    through the stock service, inside the transaction that owns the change,
    and every change appends a StockMovement row.

    - quantity >= 0 is enforced by a CHECK constraint as well as the service.
    - low_stock and reorder_point are thresholds checked after each decrement.
    - Removal is a soft delete (is_active=False, deleted_at set).
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_products_quantity_nonneg"),
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_code = db.Column(db.String(64), nullable=False, unique=True, index=True)
    batch_number = db.Column(db.String(64), nullable=True, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    brand = db.Column(db.String(128), nullable=True)
    unit = db.Column(db.String(32), nullable=True)

    # Authoritative storage in cents
    buying_price_cents = db.Column(db.Integer, nullable=False, default=0)
    selling_price_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_bps = db.Column(db.Integer, nullable=False, default=0)
    discount_bps = db.Column(db.Integer, nullable=False, default=0)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    low_stock = db.Column(db.Integer, nullable=False, default=0)
    reorder_point = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.product_code!r} qty={self.quantity}>"

    @property
    def profit_margin(self) -> Decimal | None:
        """(selling - buying) / buying * 100, two places; None without a cost."""
        if not self.buying_price_cents:
            return None
        margin = Decimal(self.selling_price_cents - self.buying_price_cents) * 100 / Decimal(self.buying_price_cents)
        return margin.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.low_stock

    @property
    def is_out_of_stock(self) -> bool:
        return self.quantity == 0

    def to_dict(self) -> dict:
        margin = self.profit_margin
        return {
            "id": self.id,
            "product_code": self.product_code,
            "batch_number": self.batch_number,
            "name": self.name,
            "description": self.description,
            "brand": self.brand,
            "unit": self.unit,
            "buying_price_cents": self.buying_price_cents,
            "selling_price_cents": self.selling_price_cents,
            "profit_margin": str(margin) if margin is not None else None,
            "tax_bps": self.tax_bps,
            "discount_bps": self.discount_bps,
            "quantity": self.quantity,
            "low_stock": self.low_stock,
            "reorder_point": self.reorder_point,
            "is_low_stock": self.is_low_stock,
            "is_out_of_stock": self.is_out_of_stock,
            "is_active": self.is_active,
            "deleted_at": to_utc_z(self.deleted_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only audit of every quantity change.

    ACTIONS:
    - SALE: decrement from an approved sale
    - RESTOCK: manual increase
    - PURCHASE_ORDER: increase from a received purchase order
    - ADJUST: inventory correction to an absolute quantity
    - TRANSFER_OUT / TRANSFER_IN: move between batches
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_occurred", "product_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    action = db.Column(db.String(32), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)
    quantity_before = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=True, index=True)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    product = db.relationship("Product", backref=db.backref("movements", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "action": self.action,
            "quantity_delta": self.quantity_delta,
            "quantity_before": self.quantity_before,
            "quantity_after": self.quantity_after,
            "sale_id": self.sale_id,
            "purchase_order_id": self.purchase_order_id,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class PurchaseOrder(db.Model):
    """Supplier order; receiving it restocks every line in one transaction."""
    __tablename__ = "purchase_orders"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    po_number = db.Column(db.String(64), nullable=False, unique=True, index=True)
    supplier_name = db.Column(db.String(255), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="draft", index=True)  # draft, received, cancelled
    order_date = db.Column(db.Date, nullable=True)
    expected_delivery_date = db.Column(db.Date, nullable=True)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    received_by_user_id = db.Column(db.Integer, nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "po_number": self.po_number,
            "supplier_name": self.supplier_name,
            "status": self.status,
            "order_date": self.order_date.isoformat() if self.order_date else None,
            "expected_delivery_date": self.expected_delivery_date.isoformat() if self.expected_delivery_date else None,
            "total_amount_cents": self.total_amount_cents,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "received_by_user_id": self.received_by_user_id,
            "received_at": to_utc_z(self.received_at),
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
            "lines": [line.to_dict() for line in self.lines],
        }


class PurchaseOrderLine(db.Model):
    __tablename__ = "purchase_order_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False)
    total_cost_cents = db.Column(db.Integer, nullable=False)

    purchase_order = db.relationship(
        "PurchaseOrder",
        backref=db.backref("lines", lazy=True, order_by="PurchaseOrderLine.id"),
    )
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "total_cost_cents": self.total_cost_cents,
        }
