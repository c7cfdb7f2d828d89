# Overview: Maps service-layer exceptions onto JSON error responses.

from flask import jsonify

from ..services.concurrency import ConcurrencyTimeoutError, ConsistencyViolationError
from ..validation import ConflictError, InsufficientStockError, NotFoundError, ValidationError

# Everything a stock or sale route expects from the service layer
SERVICE_ERRORS = (
    ValidationError,
    NotFoundError,
    ConflictError,
    ConcurrencyTimeoutError,
    ConsistencyViolationError,
)


def service_error_response(exc: Exception):
    if isinstance(exc, InsufficientStockError):
        return jsonify({"error": str(exc), "details": exc.details}), 409
    if isinstance(exc, ConflictError):
        return jsonify({"error": str(exc)}), 409
    if isinstance(exc, NotFoundError):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, ValidationError):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, ConcurrencyTimeoutError):
        return jsonify({
            "error": "Stock is busy, please retry",
            "retryable": True,
            "details": {"shop_id": exc.shop_id, "item_ids": exc.item_ids},
        }), 503
    # ConsistencyViolationError: already logged at critical by the coordinator
    return jsonify({"error": "Stock ledger consistency error"}), 500
