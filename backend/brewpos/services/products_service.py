# backend/brewpos/services/products_service.py
"""
Products Service

Menu items sold at the till. Each product's ingredient usage lives in its
recipe (recipe_service); this module only owns the product rows.
"""
from __future__ import annotations

from ..extensions import db
from ..models import Product
from ..validation import (
    ConflictError,
    ModelValidationPolicy,
    ValidationError,
    enforce_rules_product,
    validate_payload,
)


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={"name", "category", "price_cents", "is_active"},
    required_on_create={"name", "price_cents"},
)


def list_products(include_inactive: bool = False) -> list[Product]:
    q = db.session.query(Product)
    if not include_inactive:
        q = q.filter(Product.is_active.is_(True))
    return q.order_by(Product.name.asc(), Product.id.asc()).all()


def get_product(product_id: int) -> Product | None:
    return db.session.query(Product).filter_by(id=product_id).first()


def create_product(payload: dict) -> Product:
    """
    Create a product from a JSON payload.

    Raises:
        ValidationError: Bad or missing fields
        ConflictError: An active product with the same name exists
    """
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY)
    enforce_rules_product(patch)
    if not patch.get("name"):
        raise ValidationError("name cannot be blank")

    existing = db.session.query(Product).filter_by(name=patch["name"], is_active=True).first()
    if existing:
        raise ConflictError(f"Product '{patch['name']}' already exists")

    product = Product(**patch)
    db.session.add(product)
    db.session.commit()
    return product
