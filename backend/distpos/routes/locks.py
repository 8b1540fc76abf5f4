# Overview: Flask API routes for order editing leases.

"""Order lock (lease) API routes"""

from flask import Blueprint, current_app, g, jsonify

from ..decorators import require_identity
from ..errors import EngineError
from ..services import lock_service


locks_bp = Blueprint("locks", __name__, url_prefix="/api/locks")


@locks_bp.get("/")
@require_identity
def list_locks_route():
    """Live leases, newest first."""
    try:
        locks = lock_service.list_locks()
        return jsonify({"locks": [lock.to_dict() for lock in locks]}), 200
    except Exception:
        current_app.logger.exception("Failed to list locks")
        return jsonify({"error": "Internal server error"}), 500


@locks_bp.get("/<int:order_id>")
@require_identity
def lock_status_route(order_id: int):
    """Is the order held by a session other than the caller's?"""
    try:
        status = lock_service.is_order_locked(order_id, g.identity)
        return jsonify({"order_id": order_id, **status.to_dict()}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to read lock status")
        return jsonify({"error": "Internal server error"}), 500


@locks_bp.post("/<int:order_id>/acquire")
@require_identity
def acquire_lock_route(order_id: int):
    """
    Acquire the lease for an order.

    Returns 200 when granted, 409 with held_by when another session holds it.
    """
    try:
        result = lock_service.acquire_lock(order_id, g.identity)
        return jsonify({"order_id": order_id, **result.to_dict()}), 200 if result.granted else 409
    except Exception:
        current_app.logger.exception("Failed to acquire lock")
        return jsonify({"error": "Internal server error"}), 500


@locks_bp.post("/<int:order_id>/renew")
@require_identity
def renew_lock_route(order_id: int):
    try:
        renewed = lock_service.renew_lock(order_id, g.identity)
        return jsonify({"order_id": order_id, "renewed": renewed}), 200
    except Exception:
        current_app.logger.exception("Failed to renew lock")
        return jsonify({"error": "Internal server error"}), 500


@locks_bp.post("/<int:order_id>/release")
@require_identity
def release_lock_route(order_id: int):
    try:
        lock_service.release_lock(order_id, g.identity)
        return jsonify({"order_id": order_id, "released": True}), 200
    except Exception:
        current_app.logger.exception("Failed to release lock")
        return jsonify({"error": "Internal server error"}), 500
