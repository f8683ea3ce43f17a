# Overview: Flask API routes for customers, credit status and settlements.

# backend/shopledger/routes/customers.py
"""Customer and credit API routes"""

from flask import Blueprint, current_app, jsonify, request

from ..errors import DomainError
from ..events import current_dispatcher
from ..services import credit_service, customer_service, settlement_service
from ..validation import clean_str, optional_int, parse_money_cents, require_fields
from shopledger.time_utils import parse_iso_date


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.post("")
def create_customer_route():
    try:
        data = request.get_json() or {}
        customer = customer_service.create_customer(data)
        return jsonify({"customer": customer.to_dict()}), 201

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create customer")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("")
def search_customers_route():
    query = request.args.get("q")
    status = request.args.get("status")
    customers = customer_service.search_customers(query, status=status)
    return jsonify({"customers": [c.to_dict() for c in customers], "count": len(customers)}), 200


@customers_bp.get("/<int:customer_id>")
def get_customer_route(customer_id: int):
    try:
        customer = customer_service.get_customer(customer_id)
        status = credit_service.get_credit_status(customer_id)
        return jsonify({"customer": customer.to_dict(), "credit": status.to_dict()}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code


@customers_bp.patch("/<int:customer_id>")
def update_customer_route(customer_id: int):
    try:
        data = request.get_json() or {}
        customer = customer_service.update_customer(customer_id, data, dispatcher=current_dispatcher())
        return jsonify({"customer": customer.to_dict()}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update customer")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>/credit-status")
def credit_status_route(customer_id: int):
    """Credit-period badge data: state, can_purchase, days remaining or overdue."""
    try:
        status = credit_service.get_credit_status(customer_id)
        return jsonify({"credit": status.to_dict()}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code


@customers_bp.post("/<int:customer_id>/settlements")
def settle_credit_route(customer_id: int):
    """
    Settle outstanding credit.

    Body: amount (positive decimal), payment_method, reference_number,
    notes, payment_date (YYYY-MM-DD), recorded_by
    """
    try:
        data = request.get_json() or {}
        require_fields(data, "amount")
        amount_cents = parse_money_cents(data["amount"], "amount", allow_negative=True)

        result = settlement_service.settle_credit(
            customer_id,
            amount_cents,
            payment_method=data.get("payment_method"),
            reference_number=clean_str(data.get("reference_number"), "reference_number", max_length=128),
            notes=data.get("notes"),
            payment_date=parse_iso_date(data.get("payment_date")),
            user_id=optional_int(data, "recorded_by"),
            dispatcher=current_dispatcher(),
        )
        return jsonify(result.to_dict()), 201

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except ValueError as e:
        return jsonify({"error": str(e), "code": "validation_error", "details": {}}), 400
    except Exception:
        current_app.logger.exception("Failed to settle credit")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>/history")
def transaction_history_route(customer_id: int):
    try:
        history = customer_service.get_transaction_history(customer_id)
        return jsonify({"transactions": history, "count": len(history)}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code


@customers_bp.get("/credit/expired")
def expired_credit_route():
    customers = customer_service.get_expired_credit_customers()
    return jsonify({"customers": [c.to_dict() for c in customers], "count": len(customers)}), 200


@customers_bp.get("/credit/approaching")
def approaching_limit_route():
    try:
        threshold = request.args.get("threshold")
        customers = customer_service.get_customers_approaching_limit(threshold)
        return jsonify({"customers": [c.to_dict() for c in customers], "count": len(customers)}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except ArithmeticError:
        return jsonify({"error": "threshold must be a number", "code": "validation_error", "details": {}}), 400
