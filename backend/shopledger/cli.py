# Overview: Flask CLI command groups for bootstrap, credit reports, and stock reports.

# backend/shopledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create a few demo customers and products.
#
# Credit reports:
# - python -m flask credit expired
#   Customers whose credit period has expired with spend outstanding.
# - python -m flask credit approaching --threshold 0.8
#   Customers above threshold * limit but not over it.
#
# Stock reports:
# - python -m flask stock low
#   Active products at or below their low-stock threshold.

import click
from flask.cli import with_appcontext

from .errors import DomainError
from .extensions import db
from .services import customer_service, products_service, stock_service
from .validation import cents_to_str
from shopledger.time_utils import to_utc_z


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for sample data.")


DEMO_CUSTOMERS = [
    {"name": "Walk-in Regular", "contact_number": "0700000001", "credit_limit": "1000.00", "credit_period_days": 30},
    {"name": "Corner Shop Ltd", "contact_number": "0700000002", "credit_limit": "5000.00", "credit_period_days": 60},
    {"name": "Cash Only Customer", "contact_number": "0700000003", "credit_limit": "0"},
]

DEMO_PRODUCTS = [
    {"product_code": "SKU-001", "name": "Rice 5kg", "buying_price": "8.00", "selling_price": "10.00",
     "quantity": 50, "low_stock": 10, "reorder_point": 15},
    {"product_code": "SKU-002", "name": "Cooking Oil 1L", "buying_price": "3.50", "selling_price": "4.25",
     "quantity": 30, "low_stock": 5, "reorder_point": 8},
    {"product_code": "SKU-003", "name": "Sugar 2kg", "buying_price": "2.10", "selling_price": "2.80",
     "quantity": 5, "low_stock": 5, "reorder_point": 10},
]


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create demo customers and products (skips product codes that exist)."""
    for data in DEMO_CUSTOMERS:
        customer = customer_service.create_customer(data)
        click.echo(f"PASS Customer {customer.customer_code} {customer.name}")

    for data in DEMO_PRODUCTS:
        try:
            product = products_service.create_product(data)
        except DomainError as e:
            click.echo(f"SKIP {data['product_code']}: {e.message}")
            continue
        click.echo(f"PASS Product {product.product_code} qty={product.quantity}")


@click.group('credit')
def credit_group():
    """Customer credit reports."""


@credit_group.command('expired')
@with_appcontext
def expired_credit():
    """List customers whose credit period has expired."""
    customers = customer_service.get_expired_credit_customers()
    if not customers:
        click.echo("No expired credit periods.")
        return
    for c in customers:
        click.echo(
            f"{c.customer_code}  {c.name:<30} owes {cents_to_str(c.current_credit_spend_cents):>12}  "
            f"expired {to_utc_z(c.credit_period_expires_at)}"
        )


@credit_group.command('approaching')
@click.option('--threshold', type=float, default=None, help='Fraction of the limit (default from config)')
@with_appcontext
def approaching_limit(threshold):
    """List customers close to their credit limit."""
    try:
        customers = customer_service.get_customers_approaching_limit(threshold)
    except DomainError as e:
        raise click.BadParameter(e.message, param_hint='--threshold')
    if not customers:
        click.echo("No customers approaching their limit.")
        return
    for c in customers:
        click.echo(
            f"{c.customer_code}  {c.name:<30} "
            f"{cents_to_str(c.current_credit_spend_cents):>12} / {cents_to_str(c.credit_limit_cents)}"
        )


@click.group('stock')
def stock_group():
    """Stock reports."""


@stock_group.command('low')
@with_appcontext
def low_stock():
    """List active products at or below their low-stock threshold."""
    products = stock_service.get_low_stock_products()
    if not products:
        click.echo("No low-stock products.")
        return
    for p in products:
        flag = "OUT" if p.is_out_of_stock else "LOW"
        click.echo(f"{flag:<4}{p.product_code:<16}{p.name:<30} qty={p.quantity} (low<={p.low_stock})")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(credit_group)
    app.cli.add_command(stock_group)
