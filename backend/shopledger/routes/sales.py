# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

# backend/shopledger/routes/sales.py
"""Sales API routes"""

from flask import Blueprint, current_app, jsonify, request

from ..errors import DomainError
from ..events import current_dispatcher
from ..services import payment_service, sales_service
from ..validation import clean_str, optional_int, optional_money_cents, parse_money_cents, require_fields
from shopledger.time_utils import parse_iso_date


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _bad_date():
    return jsonify({"error": "date must be YYYY-MM-DD", "code": "validation_error", "details": {"field": "date"}}), 400


@sales_bp.post("")
def create_sale_route():
    """
    Create a sale from a cart.

    Body:
        customer_id: optional (walk-in when missing)
        items: [{product_id, quantity, unit_price?}]
        discount_value, paid_amount: decimal amounts
        cash_amount / card_amount / credit_amount, or payment_method
        status: approved (default), pending or draft
        created_by: optional user id
    """
    try:
        data = request.get_json() or {}
        items = sales_service.line_items_from_payload(data.get("items"))

        sale = sales_service.create_sale(
            optional_int(data, "customer_id", minimum=1),
            items,
            discount_cents=optional_money_cents(data, "discount_value") or 0,
            paid_amount_cents=optional_money_cents(data, "paid_amount"),
            cash_amount_cents=optional_money_cents(data, "cash_amount"),
            card_amount_cents=optional_money_cents(data, "card_amount"),
            credit_amount_cents=optional_money_cents(data, "credit_amount"),
            payment_method=data.get("payment_method"),
            status=data.get("status") or sales_service.SALE_STATUS_APPROVED,
            user_id=optional_int(data, "created_by"),
            dispatcher=current_dispatcher(),
        )
        return jsonify({"sale": sale.to_dict(include_lines=True)}), 201

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("")
def list_sales_route():
    try:
        sales = sales_service.list_sales(
            customer_id=optional_int(request.args, "customer_id", minimum=1),
            search=request.args.get("q"),
            date_from=parse_iso_date(request.args.get("from")),
            date_to=parse_iso_date(request.args.get("to")),
        )
        return jsonify({"sales": [s.to_dict() for s in sales], "count": len(sales)}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except ValueError:
        return _bad_date()


@sales_bp.get("/<int:sale_id>")
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
        return jsonify({
            "sale": sale.to_dict(include_lines=True),
            "payments": [p.to_dict() for p in payment_service.get_sale_payments(sale_id)],
        }), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.post("/<int:sale_id>/approve")
def approve_sale_route(sale_id: int):
    """Post a draft or pending sale: stock, credit and balances."""
    try:
        sale = sales_service.approve_sale(sale_id, dispatcher=current_dispatcher())
        return jsonify({"sale": sale.to_dict(include_lines=True)}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to approve sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/payments")
def record_payment_route(sale_id: int):
    """Partial payment toward a sale's due amount. Body: amount, payment_method, reference_number."""
    try:
        data = request.get_json() or {}
        require_fields(data, "amount")
        payment = payment_service.record_sale_payment(
            sale_id,
            parse_money_cents(data["amount"], "amount", allow_zero=False),
            payment_method=data.get("payment_method") or payment_service.METHOD_CASH,
            reference_number=clean_str(data.get("reference_number"), "reference_number", max_length=128),
            notes=data.get("notes"),
            payment_date=parse_iso_date(data.get("payment_date")),
            user_id=optional_int(data, "recorded_by"),
            dispatcher=current_dispatcher(),
        )
        sale = sales_service.get_sale(sale_id)
        return jsonify({"payment": payment.to_dict(), "sale": sale.to_dict()}), 201

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except ValueError:
        return _bad_date()
    except Exception:
        current_app.logger.exception("Failed to record payment")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>/profit")
def sale_profit_route(sale_id: int):
    try:
        return jsonify({"sale_id": sale_id, "profit_cents": sales_service.calculate_sale_profit(sale_id)}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.get("/summary/daily")
def daily_summary_route():
    try:
        day = parse_iso_date(request.args.get("date"))
        return jsonify({"summary": sales_service.daily_sales_summary(day)}), 200

    except ValueError:
        return _bad_date()
