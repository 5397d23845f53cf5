from __future__ import annotations

from ..extensions import db
from brewpos.time_utils import to_utc_z


# Ingredient quantities (litres, kilograms, pieces) carry three decimal places
QUANTITY = db.Numeric(14, 3, asdecimal=True)


def _qty(value) -> str | None:
    return None if value is None else str(value)


class Ingredient(db.Model):
    """
    Stocked raw material (milk, coffee beans, cups).

    STOCK DESIGN:
    current_stock is a denormalized running total of the remaining quantity of
    every InventoryBatch for this ingredient. It is written only by
    batch_service.receive_batch (restock) and inventory_service.consume (sale
    finalization), always in the same DB transaction as the batch rows it mirrors.
    Invariant: current_stock == SUM(inventory_batches.quantity).
    """
    __tablename__ = "ingredients"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_ingredients_name"),
        db.CheckConstraint("current_stock >= 0", name="ck_ingredients_stock_nonnegative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(32), nullable=False)

    current_stock = db.Column(QUANTITY, nullable=False, default=0)
    low_stock_threshold = db.Column(QUANTITY, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_low_stock(self) -> bool:
        return self.current_stock is not None and self.current_stock <= self.low_stock_threshold

    def __repr__(self) -> str:
        return f"<Ingredient id={self.id} name={self.name!r} stock={self.current_stock} {self.unit}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "unit": self.unit,
            "current_stock": _qty(self.current_stock),
            "low_stock_threshold": _qty(self.low_stock_threshold),
            "is_low_stock": self.is_low_stock,
            "created_at": to_utc_z(self.created_at),
        }


class InventoryBatch(db.Model):
    """
    One received lot of an ingredient.

    FIFO: Consumption order is received_at ascending, ties broken by id.
    Batches are never deleted; quantity may reach exactly 0 and stays as history.
    initial_quantity and unit_cost_cents are fixed at receipt.
    """
    __tablename__ = "inventory_batches"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_batches_quantity_nonnegative"),
        db.Index("ix_batches_ingredient_fifo", "ingredient_id", "received_at", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    ingredient_id = db.Column(db.Integer, db.ForeignKey("ingredients.id"), nullable=False, index=True)

    received_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    # Remaining units; decremented only by consumption
    quantity = db.Column(QUANTITY, nullable=False)
    initial_quantity = db.Column(QUANTITY, nullable=False)

    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    ingredient = db.relationship("Ingredient", backref=db.backref("batches", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<InventoryBatch id={self.id} ingredient_id={self.ingredient_id} qty={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ingredient_id": self.ingredient_id,
            "received_at": to_utc_z(self.received_at),
            "quantity": _qty(self.quantity),
            "initial_quantity": _qty(self.initial_quantity),
            "unit_cost_cents": self.unit_cost_cents,
        }


class Product(db.Model):
    """Sellable menu item. price_cents is the list price; sales snapshot it."""
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("price_cents >= 0", name="ck_products_price_nonnegative"),
        db.Index("ix_products_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(64), nullable=True)

    # Authoritative storage in cents (frontend may only format for display)
    price_cents = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} price_cents={self.price_cents}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "price_cents": self.price_cents,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Recipe(db.Model):
    """
    Amount of one ingredient consumed per unit of product sold.

    Replaced wholesale per product (delete-all-then-insert), never patched.
    """
    __tablename__ = "recipes"
    __table_args__ = (
        db.UniqueConstraint("product_id", "ingredient_id", name="uq_recipes_product_ingredient"),
        db.CheckConstraint("quantity > 0", name="ck_recipes_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    ingredient_id = db.Column(db.Integer, db.ForeignKey("ingredients.id"), nullable=False, index=True)
    quantity = db.Column(QUANTITY, nullable=False)

    product = db.relationship("Product", backref=db.backref("recipe_lines", lazy=True))
    ingredient = db.relationship("Ingredient")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "ingredient_id": self.ingredient_id,
            "ingredient_name": self.ingredient.name if self.ingredient else None,
            "unit": self.ingredient.unit if self.ingredient else None,
            "quantity": _qty(self.quantity),
        }
