# Overview: Flask API routes for stock-in, adjustments, transfers, returns and balance reads.

# backend/stockledger/routes/stock.py
"""
Stock API routes.

Every write route requires an actor (see decorators.require_actor) and is a
thin wrapper over stock_transaction_service; no route touches StockAccount
or MovementEntry rows directly.

Time semantics:
- Timestamps are returned as ISO-8601 UTC with a trailing Z.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..services import catalog_service, movement_ledger_service, stock_account_service
from ..services import stock_transaction_service as coordinator
from .errors import SERVICE_ERRORS, service_error_response


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _payload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


@stock_bp.post("/stock-in")
@require_actor
def stock_in_route():
    """
    Receive units of one item into a shop.

    Request body: {"shop_id": int, "item_id": int, "quantity": int, "reason": str (optional)}
    """
    data = _payload()
    try:
        quantity = coordinator.apply_stock_in(
            data.get("shop_id"),
            data.get("item_id"),
            data.get("quantity"),
            g.actor_id,
            reason=data.get("reason"),
        )
    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to receive stock")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({
        "shop_id": data.get("shop_id"),
        "item_id": data.get("item_id"),
        "quantity": quantity,
    }), 201


@stock_bp.post("/stock-in/batch")
@require_actor
def stock_in_batch_route():
    """
    Receive several items into one shop atomically.

    Request body: {"shop_id": int, "items": [{"item_id": int, "quantity": int}, ...], "reason": str (optional)}
    """
    data = _payload()
    try:
        quantities = coordinator.apply_stock_in_batch(
            data.get("shop_id"),
            data.get("items"),
            g.actor_id,
            reason=data.get("reason"),
        )
    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to receive stock batch")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({
        "shop_id": data.get("shop_id"),
        "items": [{"item_id": item_id, "quantity": quantity} for item_id, quantity in quantities.items()],
    }), 201


@stock_bp.post("/adjust")
@require_actor
def adjust_route():
    """
    Manual correction (shrinkage, damage, found stock).

    Request body: {"shop_id": int, "item_id": int, "delta": int (non-zero), "reason": str}
    """
    data = _payload()
    try:
        quantity = coordinator.apply_adjustment(
            data.get("shop_id"),
            data.get("item_id"),
            data.get("delta"),
            data.get("reason"),
            g.actor_id,
        )
    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({
        "shop_id": data.get("shop_id"),
        "item_id": data.get("item_id"),
        "quantity": quantity,
    }), 200


@stock_bp.post("/transfer")
@require_actor
def transfer_route():
    """
    Move units between two shops of the same merchant.

    Request body:
    {
        "item_id": int,
        "from_shop_id": int,
        "to_shop_id": int,
        "quantity": int,
        "reason": str (optional)
    }
    """
    data = _payload()
    try:
        result = coordinator.apply_transfer(
            data.get("item_id"),
            data.get("from_shop_id"),
            data.get("to_shop_id"),
            data.get("quantity"),
            g.actor_id,
            reason=data.get("reason"),
        )
    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to transfer stock")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(result), 201


@stock_bp.post("/returns")
@require_actor
def return_route():
    """
    Return units sold on a committed sale.

    Request body: {"sale_id": int, "item_id": int, "quantity": int, "reason": str (optional)}
    """
    data = _payload()
    try:
        quantity = coordinator.apply_return(
            data.get("sale_id"),
            data.get("item_id"),
            data.get("quantity"),
            g.actor_id,
            reason=data.get("reason"),
        )
    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process return")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({
        "sale_id": data.get("sale_id"),
        "item_id": data.get("item_id"),
        "quantity": quantity,
    }), 201


@stock_bp.get("/<int:shop_id>/<int:item_id>")
def balance_route(shop_id: int, item_id: int):
    try:
        shop = catalog_service.get_shop(shop_id)
        catalog_service.get_items_for_shop(shop, [item_id])
        quantity = stock_account_service.get_balance(shop_id, item_id)
    except SERVICE_ERRORS as e:
        return service_error_response(e)

    return jsonify({"shop_id": shop_id, "item_id": item_id, "quantity": quantity}), 200


@stock_bp.get("/<int:shop_id>")
def shop_overview_route(shop_id: int):
    """Paginated balances for every item the shop has ever stocked."""
    page = request.args.get("page", 1, type=int)
    per_page = request.args.get("per_page", 50, type=int)
    try:
        catalog_service.get_shop(shop_id)
    except SERVICE_ERRORS as e:
        return service_error_response(e)

    return jsonify(stock_account_service.list_shop_balances(shop_id, page=page, per_page=per_page)), 200


@stock_bp.get("/<int:shop_id>/<int:item_id>/history")
def history_route(shop_id: int, item_id: int):
    """
    Movement history for one item in one shop.

    Query params: page, per_page, order=newest|oldest (default newest).
    """
    page = request.args.get("page", 1, type=int)
    per_page = request.args.get("per_page", type=int)
    order = request.args.get("order", "newest")
    if order not in ("newest", "oldest"):
        return jsonify({"error": "order must be newest or oldest"}), 400

    try:
        shop = catalog_service.get_shop(shop_id)
        catalog_service.get_items_for_shop(shop, [item_id])
        result = movement_ledger_service.history(
            shop_id,
            item_id,
            page=page,
            per_page=per_page,
            newest_first=(order == "newest"),
        )
    except SERVICE_ERRORS as e:
        return service_error_response(e)

    result["items"] = [entry.to_dict() for entry in result["items"]]
    return jsonify(result), 200
