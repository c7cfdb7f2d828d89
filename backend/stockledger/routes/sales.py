# Overview: Flask API routes for checkout and sale lookups; parses input and returns JSON responses.

# backend/stockledger/routes/sales.py
"""Sales API routes"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..services import stock_transaction_service as coordinator
from .errors import SERVICE_ERRORS, service_error_response


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")

PAYMENT_FIELDS = ("payment_type", "customer_id", "notes", "discount_cents", "idempotency_key")


@sales_bp.post("/checkout")
@require_actor
def checkout_route():
    """
    Check out a sale in one step: stock, ledger and invoice commit together.

    Request body:
    {
        "shop_id": int,
        "merchant_id": int,
        "line_items": [{"item_id": int, "quantity": int, "unit_price_cents": int (optional)}, ...],
        "payment_type": str (optional, default "cash"),
        "customer_id": str (optional),
        "notes": str (optional),
        "discount_cents": int (optional),
        "idempotency_key": str (optional; the Idempotency-Key header also works)
    }

    Repeated lines for the same item are merged before checkout.

    Returns:
        201: Sale committed (or the earlier sale for a repeated idempotency key)
        400: Invalid request
        409: Insufficient stock; details.items lists every short line
        503: Stock busy, retry
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "JSON body required"}), 400

    payment_meta = {field: data.get(field) for field in PAYMENT_FIELDS}
    if payment_meta["idempotency_key"] is None:
        payment_meta["idempotency_key"] = request.headers.get("Idempotency-Key")

    try:
        line_items = coordinator.merge_line_items(data.get("line_items"))
        sale = coordinator.apply_sale(
            data.get("shop_id"),
            data.get("merchant_id"),
            line_items,
            payment_meta,
            actor_id=g.actor_id,
        )
    except SERVICE_ERRORS as e:
        return service_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to check out sale")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"sale": sale.to_dict()}), 201


@sales_bp.get("/<int:sale_id>")
def get_sale_route(sale_id: int):
    try:
        sale = coordinator.get_sale(sale_id)
    except SERVICE_ERRORS as e:
        return service_error_response(e)
    return jsonify({"sale": sale.to_dict()}), 200


@sales_bp.get("/by-invoice/<invoice_number>")
def get_sale_by_invoice_route(invoice_number: str):
    try:
        sale = coordinator.get_sale_by_invoice(invoice_number)
    except SERVICE_ERRORS as e:
        return service_error_response(e)
    return jsonify({"sale": sale.to_dict()}), 200
