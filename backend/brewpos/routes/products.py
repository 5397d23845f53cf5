# Overview: Flask API routes for products and their recipes; parses input and returns JSON responses.

# backend/brewpos/routes/products.py
from flask import Blueprint, request, current_app

from ..services import products_service
from ..services.recipe_service import RecipeError, get_recipe, sync_product_recipe
from ..validation import ValidationError, ConflictError, require_json_object


products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
def list_products_route():
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    products = products_service.list_products(include_inactive=include_inactive)
    return {"items": [p.to_dict() for p in products], "count": len(products)}


@products_bp.post("")
def create_product_route():
    """
    Create a menu product.

    Body: {name, price_cents, category?, is_active?}
    """
    payload = request.get_json(silent=True) or {}
    try:
        product = products_service.create_product(payload)
    except ValidationError as e:
        return {"error": str(e)}, 400
    except ConflictError as e:
        return {"error": str(e)}, 409
    except Exception:
        current_app.logger.exception("Failed to create product")
        return {"error": "Internal server error"}, 500

    return {"product": product.to_dict()}, 201


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    product = products_service.get_product(product_id)
    if product is None:
        return {"error": "Product not found"}, 404
    return {"product": product.to_dict()}


@products_bp.get("/<int:product_id>/recipe")
def get_recipe_route(product_id: int):
    if products_service.get_product(product_id) is None:
        return {"error": "Product not found"}, 404
    lines = get_recipe(product_id)
    return {"product_id": product_id, "lines": [line.to_dict() for line in lines]}


@products_bp.put("/<int:product_id>/recipe")
def replace_recipe_route(product_id: int):
    """
    Replace a product's recipe wholesale.

    Body: {"lines": [{"ingredient_id": int, "quantity": number}, ...]}
    """
    try:
        payload = require_json_object(request.get_json(silent=True))
        lines = sync_product_recipe(product_id, payload.get("lines"))
    except ValidationError as e:
        return {"error": str(e)}, 400
    except RecipeError as e:
        status = 404 if e.code == "product_not_found" else 400
        return {"error": str(e), "code": e.code, "details": e.details}, status
    except Exception:
        current_app.logger.exception("Failed to replace recipe")
        return {"error": "Internal server error"}, 500

    return {"product_id": product_id, "lines": [line.to_dict() for line in lines]}
