# Overview: Flask API routes for supplier purchase orders.

# backend/shopledger/routes/purchase_orders.py
from flask import Blueprint, current_app, jsonify, request

from ..errors import DomainError, ValidationError
from ..events import current_dispatcher
from ..services import purchase_order_service
from ..validation import optional_int, parse_int, parse_money_cents, require_fields
from shopledger.time_utils import parse_iso_date


purchase_orders_bp = Blueprint("purchase_orders", __name__, url_prefix="/api/purchase-orders")


def _parse_items(raw_items) -> list[dict]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Purchase order must have at least one line", details={"items": []})
    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError("line item must be an object", details={"index": index})
        items.append({
            "product_id": parse_int(raw.get("product_id"), f"items[{index}].product_id", minimum=1),
            "quantity": parse_int(raw.get("quantity"), f"items[{index}].quantity", minimum=1),
            "unit_cost_cents": parse_money_cents(raw.get("unit_cost", 0), f"items[{index}].unit_cost"),
        })
    return items


@purchase_orders_bp.post("")
def create_purchase_order_route():
    """Body: supplier_name, items [{product_id, quantity, unit_cost}], order_date, expected_delivery_date, notes."""
    try:
        data = request.get_json() or {}
        require_fields(data, "supplier_name")
        po = purchase_order_service.create_purchase_order(
            data["supplier_name"],
            _parse_items(data.get("items")),
            order_date=parse_iso_date(data.get("order_date")),
            expected_delivery_date=parse_iso_date(data.get("expected_delivery_date")),
            notes=data.get("notes"),
            user_id=optional_int(data, "created_by"),
        )
        return jsonify({"purchase_order": po.to_dict()}), 201

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except ValueError:
        return jsonify({"error": "dates must be YYYY-MM-DD", "code": "validation_error", "details": {}}), 400
    except Exception:
        current_app.logger.exception("Failed to create purchase order")
        return jsonify({"error": "Internal server error"}), 500


@purchase_orders_bp.get("/<int:po_id>")
def get_purchase_order_route(po_id: int):
    try:
        po = purchase_order_service.get_purchase_order(po_id)
        return jsonify({"purchase_order": po.to_dict()}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code


@purchase_orders_bp.post("/<int:po_id>/receive")
def receive_purchase_order_route(po_id: int):
    try:
        data = request.get_json(silent=True) or {}
        po = purchase_order_service.receive_purchase_order(
            po_id,
            user_id=optional_int(data, "received_by"),
            dispatcher=current_dispatcher(),
        )
        return jsonify({"purchase_order": po.to_dict()}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to receive purchase order")
        return jsonify({"error": "Internal server error"}), 500


@purchase_orders_bp.post("/<int:po_id>/cancel")
def cancel_purchase_order_route(po_id: int):
    try:
        po = purchase_order_service.cancel_purchase_order(po_id)
        return jsonify({"purchase_order": po.to_dict()}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel purchase order")
        return jsonify({"error": "Internal server error"}), 500
