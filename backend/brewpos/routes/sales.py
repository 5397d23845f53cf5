# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

# backend/brewpos/routes/sales.py
"""
Sales API routes.

POST /api/sales/finalize records a sale and consumes its recipe ingredients
in one transaction. Rejections come back as FinalizeResult bodies:
- 400: validation or domain rejection (empty cart, insufficient stock, ...)
- 409: duplicate wallet reference or session not open
- 503: storage failure; body has retryable=true
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import sales_service
from ..services.sales_service import SaleError
from ..validation import ValidationError, require_int, require_json_object


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")

_CONFLICT_CODES = {"duplicate_reference", "session_not_open"}


def _result_status(result: sales_service.FinalizeResult) -> int:
    if result.success:
        return 201
    if result.retryable:
        return 503
    if result.error_code in _CONFLICT_CODES:
        return 409
    return 400


@sales_bp.post("/finalize")
def finalize_sale_route():
    """
    Finalize a sale.

    Request body:
    {
        "session_id": 1,
        "items": [{"product_id": 3, "quantity": 2, "unit_price_cents": 450}],
        "payment_method": "cash" | "card" | "wallet_transfer",
        "wallet_data": {                       (wallet_transfer only)
            "reference_code": "1234567890123",
            "transaction_timestamp": "2025-11-19T07:55:00Z",
            "confidence": 0.91
        }
    }
    """
    try:
        payload = require_json_object(request.get_json(silent=True))
        session_id = require_int(payload, "session_id")
    except ValidationError as e:
        return jsonify({"success": False, "error_code": "invalid_request", "error": str(e)}), 400

    try:
        result = sales_service.finalize_sale(
            session_id,
            payload.get("items"),
            payload.get("payment_method"),
            payload.get("wallet_data"),
        )
    except Exception:
        current_app.logger.exception("Failed to finalize sale")
        return jsonify({"success": False, "error": "Internal server error"}), 500

    body = result.to_dict()
    if result.success:
        body["sale"] = sales_service.get_sale(result.sale_id)
    return jsonify(body), _result_status(result)


@sales_bp.get("/<int:sale_id>")
def get_sale_route(sale_id: int):
    try:
        return jsonify({"sale": sales_service.get_sale(sale_id)}), 200
    except SaleError as e:
        return jsonify({"error": str(e), "code": e.code, "details": e.details}), 404
