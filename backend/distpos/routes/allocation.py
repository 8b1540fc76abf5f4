# Overview: Flask API routes for warehouse distribution of order lines.

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_capability, require_identity
from ..domain import decimal_arg, parse_distribution
from ..errors import EngineError
from ..money import ZERO, as_float
from ..permissions import CREATE_SALE
from ..services import catalog_service, warehouse_allocator


allocation_bp = Blueprint("allocation", __name__, url_prefix="/api/allocation")


def _product_and_quantity(data: dict):
    product_id = data.get("product_id")
    if product_id is None:
        raise KeyError("product_id")
    product = catalog_service.get_product_info(int(product_id))
    quantity = decimal_arg(data.get("quantity"), "quantity")
    return product, quantity


@allocation_bp.post("/auto")
@require_identity
@require_capability(CREATE_SALE)
def auto_distribute_route():
    """
    Propose a distribution for one product.

    Body: {"product_id": 1, "quantity": 12.5, "max_sources": 2}
    """
    try:
        data = request.get_json() or {}
        product, quantity = _product_and_quantity(data)
        max_sources = int(data.get("max_sources") or 2)

        stocks = warehouse_allocator.load_warehouse_stocks(product.id)
        shares = warehouse_allocator.auto_distribute(quantity, stocks, max_sources=max_sources)
        allocated = sum((s.quantity for s in shares), ZERO)

        return jsonify({
            "product_id": product.id,
            "quantity": as_float(quantity),
            "shares": [s.to_dict() for s in shares],
            "stocks": [s.to_dict() for s in stocks],
            "complete": allocated == quantity,
        }), 200
    except (KeyError, ValueError):
        return jsonify({"error": "product_id and quantity required"}), 400
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to auto-distribute")
        return jsonify({"error": "Internal server error"}), 500


@allocation_bp.post("/validate")
@require_identity
@require_capability(CREATE_SALE)
def validate_distribution_route():
    """
    Check a hand-edited distribution.

    Body: {"product_id": 1, "quantity": 10, "shares": [{"warehouse_id": 1, "quantity": 6}, ...]}
    """
    try:
        data = request.get_json() or {}
        product, quantity = _product_and_quantity(data)
        shares = parse_distribution({product.id: data.get("shares") or []})[product.id]

        warehouse_allocator.validate_distribution(
            product.name,
            quantity,
            shares,
            warehouse_allocator.load_warehouse_stocks(product.id),
        )
        return jsonify({"valid": True, "shares": [s.to_dict() for s in shares]}), 200
    except (KeyError, ValueError):
        return jsonify({"error": "product_id and quantity required"}), 400
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to validate distribution")
        return jsonify({"error": "Internal server error"}), 500
