# Overview: Flask API routes for persisted orders (listing, cancel, delete).

"""Order API routes with capability enforcement"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_capability, require_identity
from ..domain import ORDER_STATUSES
from ..errors import EngineError
from ..permissions import CREATE_SALE, DELETE_ORDERS
from ..services import order_store


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("/")
@require_identity
@require_capability(CREATE_SALE)
def list_orders_route():
    """
    List persisted orders, newest first.

    Query params: status, client_id, limit (default 100, max 500)
    """
    try:
        status = request.args.get("status")
        if status and status not in ORDER_STATUSES:
            return jsonify({"error": f"Invalid status: {status}"}), 400
        client_id = request.args.get("client_id", type=int)
        limit = min(request.args.get("limit", default=100, type=int), 500)

        sales = order_store.list_orders(status=status, client_id=client_id, limit=limit)
        return jsonify({"orders": [sale.to_dict() for sale in sales]}), 200
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_identity
@require_capability(CREATE_SALE)
def get_order_route(order_id: int):
    try:
        order = order_store.load_order(order_id)
        return jsonify({"order": order.to_dict()}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_identity
@require_capability(DELETE_ORDERS)
def cancel_order_route(order_id: int):
    """
    Cancel a saved or pending order.

    Requires: DELETE_ORDERS capability
    Available to: admin
    """
    try:
        order = order_store.cancel_order(order_id, g.identity)
        return jsonify({"order": order.to_dict()}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>")
@require_identity
@require_capability(DELETE_ORDERS)
def delete_order_route(order_id: int):
    try:
        order_store.delete_order(order_id, g.identity)
        return jsonify({"deleted": True, "order_id": order_id}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete order")
        return jsonify({"error": "Internal server error"}), 500
