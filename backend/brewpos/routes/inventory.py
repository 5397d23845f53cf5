# backend/brewpos/routes/inventory.py
"""
Ingredient inventory routes.

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- Usage ranges are inclusive on both ends.

Quantities are returned as decimal strings so no float rounding reaches clients.
"""
from flask import Blueprint, request, current_app

from ..services.batch_service import (
    BatchError,
    add_ingredient,
    get_ingredient,
    list_batches,
    receive_batch,
)
from ..services.inventory_service import (
    get_ingredient_usage,
    get_stock_summary,
    list_low_stock_ingredients,
)
from ..validation import ValidationError, optional_datetime, require_json_object


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _batch_error(e: BatchError):
    status = 404 if e.code == "ingredient_not_found" else 409 if e.code == "ingredient_exists" else 400
    return {"error": str(e), "code": e.code, "details": e.details}, status


@inventory_bp.post("/ingredients")
def add_ingredient_route():
    """
    Add an ingredient.

    Body: {name, unit, low_stock_threshold?, initial_stock?, unit_cost_cents?}
    A positive initial_stock is booked as the ingredient's first batch.
    """
    try:
        payload = require_json_object(request.get_json(silent=True))
        ingredient = add_ingredient(
            name=payload.get("name"),
            unit=payload.get("unit"),
            low_stock_threshold=payload.get("low_stock_threshold", 0),
            initial_stock=payload.get("initial_stock", 0),
            unit_cost_cents=payload.get("unit_cost_cents", 0),
        )
    except ValidationError as e:
        return {"error": str(e)}, 400
    except BatchError as e:
        return _batch_error(e)
    except Exception:
        current_app.logger.exception("Failed to add ingredient")
        return {"error": "Internal server error"}, 500

    return {"ingredient": ingredient.to_dict()}, 201


@inventory_bp.post("/ingredients/<int:ingredient_id>/restock")
def restock_route(ingredient_id: int):
    """
    Receive a new batch of an ingredient.

    Body: {quantity, unit_cost_cents, received_at?}
    """
    try:
        payload = require_json_object(request.get_json(silent=True))
        batch = receive_batch(
            ingredient_id=ingredient_id,
            quantity=payload.get("quantity"),
            unit_cost_cents=payload.get("unit_cost_cents"),
            received_at=payload.get("received_at"),
        )
    except ValidationError as e:
        return {"error": str(e)}, 400
    except BatchError as e:
        return _batch_error(e)
    except Exception:
        current_app.logger.exception("Failed to restock ingredient")
        return {"error": "Internal server error"}, 500

    return {"batch": batch.to_dict(), "summary": get_stock_summary(ingredient_id)}, 201


@inventory_bp.get("/ingredients/<int:ingredient_id>")
def stock_summary_route(ingredient_id: int):
    try:
        return get_stock_summary(ingredient_id), 200
    except BatchError as e:
        return _batch_error(e)


@inventory_bp.get("/ingredients/<int:ingredient_id>/batches")
def list_batches_route(ingredient_id: int):
    try:
        get_ingredient(ingredient_id)
    except BatchError as e:
        return _batch_error(e)
    batches = list_batches(ingredient_id)
    return {"items": [b.to_dict() for b in batches], "count": len(batches)}, 200


@inventory_bp.get("/low-stock")
def low_stock_route():
    items = list_low_stock_ingredients()
    return {"items": [i.to_dict() for i in items], "count": len(items)}, 200


@inventory_bp.get("/usage")
def usage_route():
    """
    Ingredient usage over a period.

    Query params:
    - start: ISO-8601 (optional, inclusive)
    - end: ISO-8601 (optional, inclusive)
    """
    try:
        start = optional_datetime(request.args, "start")
        end = optional_datetime(request.args, "end")
    except ValidationError as e:
        return {"error": str(e)}, 400

    if start and end and start > end:
        return {"error": "start must be <= end"}, 400

    items = get_ingredient_usage(start, end)
    return {"items": items, "count": len(items)}, 200
