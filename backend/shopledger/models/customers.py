from __future__ import annotations

from datetime import datetime

from ..extensions import db
from shopledger.time_utils import normalize_utc, to_utc_z, utcnow


class Customer(db.Model):
    """
    Customer master data plus the credit ledger balance fields.

    All money in cents. `current_credit_spend_cents` is the outstanding amount
    owed on credit; the other balances are cumulative per payment method.

    CREDIT PERIOD:
    - credit_limit_reached_at is set once per exceed episode (first time the
      spend goes above the limit) and cleared only when the spend returns to 0.
    - credit_period_expires_at = reached_at + credit_period_days.
    - can_purchase is derived, never stored: false iff the period expired.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.CheckConstraint("credit_limit_cents >= 0", name="ck_customers_credit_limit_nonneg"),
        db.CheckConstraint("current_credit_spend_cents >= 0", name="ck_customers_spend_nonneg"),
        db.CheckConstraint("credit_period_days > 0", name="ck_customers_period_positive"),
        db.Index("ix_customers_period_expires", "credit_period_expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable code (e.g., "CUST000123")
    customer_code = db.Column(db.String(32), nullable=False, unique=True, index=True)

    name = db.Column(db.String(255), nullable=False)
    contact_number = db.Column(db.String(32), nullable=True, index=True)
    email = db.Column(db.String(255), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="active", index=True)  # active, inactive

    credit_limit_cents = db.Column(db.Integer, nullable=False, default=0)
    current_credit_spend_cents = db.Column(db.Integer, nullable=False, default=0)

    cash_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    credit_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    card_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    net_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    total_balance_cents = db.Column(db.Integer, nullable=False, default=0)

    credit_period_days = db.Column(db.Integer, nullable=False, default=30)
    credit_limit_reached_at = db.Column(db.DateTime(timezone=True), nullable=True)
    credit_period_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Customer id={self.id} code={self.customer_code!r}>"

    def can_purchase_at(self, now: datetime) -> bool:
        expires_at = normalize_utc(self.credit_period_expires_at)
        return expires_at is None or now <= expires_at

    @property
    def can_purchase(self) -> bool:
        return self.can_purchase_at(utcnow())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_code": self.customer_code,
            "name": self.name,
            "contact_number": self.contact_number,
            "email": self.email,
            "address": self.address,
            "status": self.status,
            "credit_limit_cents": self.credit_limit_cents,
            "current_credit_spend_cents": self.current_credit_spend_cents,
            "cash_balance_cents": self.cash_balance_cents,
            "credit_balance_cents": self.credit_balance_cents,
            "card_balance_cents": self.card_balance_cents,
            "net_balance_cents": self.net_balance_cents,
            "total_balance_cents": self.total_balance_cents,
            "credit_period_days": self.credit_period_days,
            "credit_limit_reached_at": to_utc_z(self.credit_limit_reached_at),
            "credit_period_expires_at": to_utc_z(self.credit_period_expires_at),
            "can_purchase": self.can_purchase,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
