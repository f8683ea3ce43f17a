# Overview: Flask API routes for products and stock; parses input and returns JSON responses.

# backend/shopledger/routes/products.py
from flask import Blueprint, current_app, jsonify, request

from ..errors import DomainError
from ..events import current_dispatcher
from ..services import products_service, stock_service
from ..validation import clean_str, parse_int, require_fields


products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
def list_products_route():
    search = request.args.get("q")
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    products = products_service.list_products(search=search, include_inactive=include_inactive)
    return jsonify({"items": [p.to_dict() for p in products], "count": len(products)}), 200


@products_bp.post("")
def create_product_route():
    try:
        data = request.get_json() or {}
        product = products_service.create_product(data, dispatcher=current_dispatcher())
        return jsonify({"product": product.to_dict()}), 201

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    try:
        product = products_service.get_product(product_id)
        return jsonify({
            "product": product.to_dict(),
            "stock_value_cents": stock_service.get_stock_value(product_id),
        }), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code


@products_bp.patch("/<int:product_id>")
def update_product_route(product_id: int):
    try:
        data = request.get_json() or {}
        product = products_service.update_product(product_id, data)
        return jsonify({"product": product.to_dict()}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.delete("/<int:product_id>")
def delete_product_route(product_id: int):
    try:
        product = products_service.delete_product(product_id)
        return jsonify({"product": product.to_dict()}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.post("/<int:product_id>/restock")
def restock_route(product_id: int):
    """Manual restock. Body: quantity (>= 0), note."""
    try:
        data = request.get_json() or {}
        require_fields(data, "quantity")
        quantity = parse_int(data["quantity"], "quantity", minimum=0)
        new_quantity = stock_service.increase(
            product_id,
            quantity,
            note=clean_str(data.get("note"), "note", max_length=255),
            dispatcher=current_dispatcher(),
        )
        return jsonify({"product_id": product_id, "quantity": new_quantity}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to restock product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.post("/<int:product_id>/adjust")
def adjust_route(product_id: int):
    """Inventory correction. Body: quantity (absolute count), reason."""
    try:
        data = request.get_json() or {}
        require_fields(data, "quantity")
        quantity = parse_int(data["quantity"], "quantity", minimum=0)
        new_quantity = stock_service.adjust_stock(
            product_id,
            quantity,
            clean_str(data.get("reason"), "reason", max_length=255) or "",
            dispatcher=current_dispatcher(),
        )
        return jsonify({"product_id": product_id, "quantity": new_quantity}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.post("/transfer")
def transfer_route():
    """Move stock between batches. Body: from_product_id, to_product_id, quantity."""
    try:
        data = request.get_json() or {}
        require_fields(data, "from_product_id", "to_product_id", "quantity")
        from_qty, to_qty = stock_service.transfer_stock(
            parse_int(data["from_product_id"], "from_product_id", minimum=1),
            parse_int(data["to_product_id"], "to_product_id", minimum=1),
            parse_int(data["quantity"], "quantity", minimum=1),
            dispatcher=current_dispatcher(),
        )
        return jsonify({"from_quantity": from_qty, "to_quantity": to_qty}), 200

    except DomainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to transfer stock")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/<int:product_id>/movements")
def movements_route(product_id: int):
    movements = stock_service.get_stock_movements(product_id)
    return jsonify({"movements": [m.to_dict() for m in movements], "count": len(movements)}), 200


@products_bp.get("/low-stock")
def low_stock_route():
    products = stock_service.get_low_stock_products()
    return jsonify({"items": [p.to_dict() for p in products], "count": len(products)}), 200


@products_bp.get("/inventory-value")
def inventory_value_route():
    return jsonify({"total_value_cents": stock_service.get_total_inventory_value()}), 200
