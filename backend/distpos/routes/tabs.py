# Overview: Flask API routes for the terminal's open order tabs; parses input and returns JSON responses.

"""
Tab API routes.

Each (user, session) pair owns one TabSession. Every editing route returns
the edited tab so the terminal can redraw it without a second request.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_capability, require_identity
from ..domain import SettlementAuthorization, Tender, parse_distribution
from ..errors import EngineError, ValidationError
from ..permissions import CREATE_SALE
from ..services import catalog_service, order_builder, tab_service
from ..services.catalog_service import get_product_info
from ..services.warehouse_allocator import WarehouseAllocator


tabs_bp = Blueprint("tabs", __name__, url_prefix="/api/tabs")


def _session() -> tab_service.TabSession:
    return tab_service.get_tab_session(
        g.identity,
        walk_in_name=current_app.config.get("WALK_IN_CLIENT_NAME"),
    )


def _session_payload(session: tab_service.TabSession) -> dict:
    return {
        "tabs": [tab.to_dict() for tab in session.tabs],
        "active_tab_id": session.active_tab.id,
    }


def _required(data: dict, key: str):
    value = data.get(key)
    if value is None or value == "":
        raise ValidationError(f"{key} required")
    return value


def _int_field(data: dict, key: str) -> int:
    value = _required(data, key)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{key} must be an integer") from exc


def _default_tier(client_id: int | None) -> int:
    if not client_id:
        return 1
    return catalog_service.get_client_info(client_id).default_price_tier


@tabs_bp.get("/")
@require_identity
@require_capability(CREATE_SALE)
def list_tabs_route():
    try:
        return jsonify(_session_payload(_session())), 200
    except Exception:
        current_app.logger.exception("Failed to list tabs")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/")
@require_identity
@require_capability(CREATE_SALE)
def new_tab_route():
    """Open a new draft tab, optionally for a client ({"client_id": 3})."""
    try:
        data = request.get_json(silent=True) or {}
        client = None
        if data.get("client_id"):
            client = catalog_service.get_client_info(_int_field(data, "client_id"))
        tab = _session().new_tab(client)
        return jsonify({"tab": tab.to_dict()}), 201
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to open tab")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.delete("/session")
@require_identity
def end_session_route():
    """Release every lease held by the calling session and forget its tabs."""
    try:
        released = tab_service.end_tab_session(g.identity)
        return jsonify({"released_locks": released}), 200
    except Exception:
        current_app.logger.exception("Failed to end tab session")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/open/<int:order_id>")
@require_identity
@require_capability(CREATE_SALE)
def open_order_route(order_id: int):
    """
    Open a persisted order for editing.

    Returns 409 with details.held_by when another session holds its lease.
    """
    try:
        tab = _session().open_order(order_id)
        return jsonify({"tab": tab.to_dict()}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to open order")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/<tab_id>/switch")
@require_identity
@require_capability(CREATE_SALE)
def switch_tab_route(tab_id: str):
    try:
        tab = _session().switch_tab(tab_id)
        return jsonify({"tab": tab.to_dict()}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to switch tab")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.delete("/<tab_id>")
@require_identity
@require_capability(CREATE_SALE)
def close_tab_route(tab_id: str):
    try:
        session = _session()
        session.close_tab(tab_id)
        return jsonify(_session_payload(session)), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to close tab")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/<tab_id>/heartbeat")
@require_identity
@require_capability(CREATE_SALE)
def heartbeat_route(tab_id: str):
    """Renew the active tab's lease (the terminal calls this every few minutes)."""
    try:
        session = _session()
        session.get_tab(tab_id)
        ok = session.heartbeat()
        return jsonify({"renewed": ok, "tab": session.get_tab(tab_id).to_dict()}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to renew tab lease")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/<tab_id>/save")
@require_identity
@require_capability(CREATE_SALE)
def save_tab_route(tab_id: str):
    try:
        tab = _session().save_tab(tab_id)
        return jsonify({"tab": tab.to_dict()}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to save order")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.patch("/<tab_id>")
@require_identity
@require_capability(CREATE_SALE)
def update_details_route(tab_id: str):
    """
    Change order-level fields.

    Body may include client_id (null for walk-in), is_invoice, is_quote,
    is_external, observations, driver, route.
    """
    try:
        data = request.get_json() or {}
        session = _session()

        if "client_id" in data:
            client = None
            if data["client_id"]:
                client = catalog_service.get_client_info(_int_field(data, "client_id"))
            session.update_tab_order(
                tab_id, order_builder.set_client, client, walk_in_name=session.walk_in_name
            )

        details = {k: v for k, v in data.items() if k != "client_id"}
        tab = session.update_tab_order(tab_id, order_builder.update_details, **details)
        return jsonify({"tab": tab.to_dict()}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order details")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/<tab_id>/items")
@require_identity
@require_capability(CREATE_SALE)
def add_item_route(tab_id: str):
    """
    Add a product to a tab's order.

    Body: {"product_id": 1, "quantity": 2, "tier": 1, "custom_price": null}
    The tier defaults to the client's default price tier.
    """
    try:
        data = request.get_json() or {}
        session = _session()
        tab = session.get_tab(tab_id)

        product = get_product_info(_int_field(data, "product_id"))
        quantity = _required(data, "quantity")
        tier = data.get("tier") or _default_tier(tab.order.client_id)

        tab = session.update_tab_order(
            tab_id,
            order_builder.add_item,
            product,
            quantity,
            tier=int(tier),
            custom_price=data.get("custom_price"),
        )
        return jsonify({"tab": tab.to_dict()}), 201
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to add item")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.patch("/<tab_id>/items/<line_id>")
@require_identity
@require_capability(CREATE_SALE)
def update_quantity_route(tab_id: str, line_id: str):
    try:
        data = request.get_json() or {}
        session = _session()
        line = session.get_tab(tab_id).order.item(line_id)
        product = get_product_info(line.product_id)

        tab = session.update_tab_order(
            tab_id, order_builder.update_quantity, line_id, _required(data, "quantity"), product
        )
        return jsonify({"tab": tab.to_dict()}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update quantity")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.delete("/<tab_id>/items/<line_id>")
@require_identity
@require_capability(CREATE_SALE)
def remove_item_route(tab_id: str, line_id: str):
    try:
        tab = _session().update_tab_order(tab_id, order_builder.remove_item, line_id)
        return jsonify({"tab": tab.to_dict()}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to remove item")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/<tab_id>/items/<line_id>/price")
@require_identity
@require_capability(CREATE_SALE)
def update_price_route(tab_id: str, line_id: str):
    """Body: {"tier": 3} or {"custom_price": 9.5}"""
    try:
        data = request.get_json() or {}
        session = _session()
        line = session.get_tab(tab_id).order.item(line_id)
        product = get_product_info(line.product_id)

        tier = data.get("tier")
        tab = session.update_tab_order(
            tab_id,
            order_builder.update_price,
            line_id,
            product,
            tier=int(tier) if tier is not None else None,
            custom_price=data.get("custom_price"),
        )
        return jsonify({"tab": tab.to_dict()}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update price")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/<tab_id>/discount")
@require_identity
@require_capability(CREATE_SALE)
def apply_discount_route(tab_id: str):
    try:
        data = request.get_json() or {}
        tab = _session().update_tab_order(tab_id, order_builder.apply_discount, _required(data, "amount"))
        return jsonify({"tab": tab.to_dict()}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to apply discount")
        return jsonify({"error": "Internal server error"}), 500


@tabs_bp.post("/<tab_id>/pay")
@require_identity
@require_capability(CREATE_SALE)
def pay_tab_route(tab_id: str):
    """
    Settle a tab's order.

    Body:
        {
          "tender": {"method": "mixed", "breakdown": {"cash": 40, "card": 0, "transfer": 0, "credit": 0}},
          "distribution": {"<product_id>": [{"warehouse_id": 1, "quantity": 2}]},
          "auto_distribute": true,
          "authorization": {"stock_override": false, "step_up": {"username": "...", "password": "..."}}
        }

    428 means a supervisor credential is needed: resubmit with
    authorization.step_up. The tab is closed on success.
    """
    try:
        data = request.get_json() or {}
        tender_data = data.get("tender")
        if not isinstance(tender_data, dict):
            return jsonify({"error": "tender required"}), 400

        session = _session()
        tab = session.get_tab(tab_id)
        tender = Tender.from_dict(tender_data)
        authorization = SettlementAuthorization.from_dict(data.get("authorization"))
        distribution = parse_distribution(data.get("distribution"))

        if data.get("auto_distribute") and tab.order.items:
            allocator = WarehouseAllocator(tab.order, enforce_stock=not authorization.stock_override)
            for product_id, shares in distribution.items():
                allocator.set_distribution(product_id, shares)
            allocator.auto_distribute_all()
            distribution = allocator.distribution()

        result = session.settle_tab(
            tab_id,
            tender,
            distribution=distribution,
            authorization=authorization,
        )
        return jsonify({"settlement": result.to_dict(), **_session_payload(session)}), 200
    except EngineError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to settle order")
        return jsonify({"error": "Internal server error"}), 500
