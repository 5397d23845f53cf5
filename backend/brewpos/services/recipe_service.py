# Overview: Service-layer operations for recipes; maps products to per-unit ingredient requirements.

from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from ..models import Ingredient, Product, Recipe
from .batch_service import BatchError, to_quantity
from .concurrency import run_with_retry


class RecipeError(Exception):
    """Raised for recipe lookup and replacement errors."""
    def __init__(self, message: str, code: str = "invalid_recipe", details: dict | None = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}


def get_recipe(product_id: int) -> list[Recipe]:
    """Recipe lines for a product, ordered by ingredient id."""
    return db.session.query(Recipe).filter_by(
        product_id=product_id
    ).order_by(Recipe.ingredient_id.asc()).all()


def required_ingredients(product_id: int, quantity: int) -> list[tuple[int, Decimal]]:
    """
    Ingredient quantities consumed by selling `quantity` units of a product.

    Returned in ascending ingredient id so every sale locks ingredients in the
    same order. A product without recipe lines consumes nothing.
    """
    return [
        (line.ingredient_id, Decimal(str(line.quantity)) * quantity)
        for line in get_recipe(product_id)
    ]


def sync_product_recipe(product_id: int, lines: list[dict]) -> list[Recipe]:
    """
    Replace a product's recipe wholesale.

    WHY delete-all-then-insert: partial recipe edits are not supported, and
    replacing in one transaction means a sale never sees half a recipe.

    Args:
        product_id: Product whose recipe is replaced
        lines: [{"ingredient_id": int, "quantity": number}, ...]; empty clears it
    """
    if lines is None:
        lines = []
    if not isinstance(lines, list):
        raise RecipeError("lines must be a list")

    parsed: list[tuple[int, Decimal]] = []
    seen: set[int] = set()
    for line in lines:
        if not isinstance(line, dict):
            raise RecipeError("each recipe line must be an object")
        ingredient_id = line.get("ingredient_id")
        if isinstance(ingredient_id, bool) or not isinstance(ingredient_id, int):
            raise RecipeError("ingredient_id must be an integer")
        if ingredient_id in seen:
            raise RecipeError("duplicate ingredient in recipe", details={"ingredient_id": ingredient_id})
        seen.add(ingredient_id)
        try:
            qty = to_quantity(line.get("quantity"))
        except BatchError as exc:
            raise RecipeError(str(exc), details={"ingredient_id": ingredient_id})
        if qty <= 0:
            raise RecipeError("recipe quantity must be > 0", details={"ingredient_id": ingredient_id})
        parsed.append((ingredient_id, qty))

    def _op():
        product = db.session.query(Product).filter_by(id=product_id).first()
        if product is None:
            raise RecipeError("Product not found", code="product_not_found",
                              details={"product_id": product_id})

        if seen:
            found = {
                row.id for row in db.session.query(Ingredient.id).filter(Ingredient.id.in_(seen)).all()
            }
            missing = sorted(seen - found)
            if missing:
                raise RecipeError("Ingredient not found", code="ingredient_not_found",
                                  details={"ingredient_ids": missing})

        db.session.query(Recipe).filter_by(product_id=product_id).delete(synchronize_session=False)
        for ingredient_id, qty in parsed:
            db.session.add(Recipe(product_id=product_id, ingredient_id=ingredient_id, quantity=qty))

        db.session.commit()
        return get_recipe(product_id)

    return run_with_retry(_op)
