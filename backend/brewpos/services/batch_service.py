# Overview: Service-layer operations for inventory lots; FIFO-ordered batch queries and restock.

"""
Batch Store

Inventory is tracked per received lot (InventoryBatch). This module owns
batch creation (restock) and the FIFO-ordered batch queries the inventory
ledger consumes from.

Time semantics:
- received_at is UTC-naive and defines FIFO order.
- Ties on received_at are broken by id (insertion order) for determinism.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from ..extensions import db
from ..models import Ingredient, InventoryBatch
from brewpos.time_utils import utcnow, parse_iso_datetime
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry


logger = logging.getLogger(__name__)

# Clock skew tolerated between client and server for received_at
MAX_FUTURE_SKEW = timedelta(minutes=2)

QUANTITY_STEP = Decimal("0.001")


class BatchError(Exception):
    """Raised for restock and batch lookup errors."""
    def __init__(self, message: str, code: str = "invalid_batch", details: dict | None = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}


def to_quantity(value, field: str = "quantity") -> Decimal:
    """Coerce a JSON number/string to Decimal without float artifacts."""
    if isinstance(value, bool):
        raise BatchError(f"{field} must be a number")
    try:
        qty = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise BatchError(f"{field} must be a number")
    if not qty.is_finite():
        raise BatchError(f"{field} must be a finite number")
    # Quantity columns are Numeric(14, 3); extra places would be rounded away on store
    try:
        exact = qty == qty.quantize(QUANTITY_STEP)
    except InvalidOperation:
        raise BatchError(f"{field} is out of range")
    if not exact:
        raise BatchError(f"{field} allows at most 3 decimal places",
                         details={field: str(value)})
    return qty


def _parse_received_at(value) -> datetime:
    """
    Normalize received_at to canonical UTC-naive datetime.

    None -> utcnow(); aware datetimes are converted; strings are ISO-8601.
    """
    if value is None:
        return utcnow()

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    if isinstance(value, str):
        try:
            dt = parse_iso_datetime(value)
        except ValueError:
            dt = None
        if dt is None:
            raise BatchError("invalid received_at")
        return dt

    raise BatchError("invalid received_at")


def _fifo_order(query):
    return query.order_by(InventoryBatch.received_at.asc(), InventoryBatch.id.asc())


def list_consumable_batches(ingredient_id: int, *, lock: bool = False) -> list[InventoryBatch]:
    """
    Batches with remaining quantity > 0 in FIFO order.

    lock=True selects the rows FOR UPDATE so concurrent consumers serialize
    on the exact batch rows they would debit.
    """
    q = db.session.query(InventoryBatch).filter(
        InventoryBatch.ingredient_id == ingredient_id,
        InventoryBatch.quantity > 0,
    )
    q = _fifo_order(q)
    if lock:
        q = lock_for_update(q)
    return q.all()


def list_batches(ingredient_id: int) -> list[InventoryBatch]:
    """Full lot history for an ingredient, including exhausted batches."""
    q = db.session.query(InventoryBatch).filter(InventoryBatch.ingredient_id == ingredient_id)
    return _fifo_order(q).all()


def get_ingredient(ingredient_id: int, *, lock: bool = False) -> Ingredient:
    q = db.session.query(Ingredient).filter_by(id=ingredient_id)
    if lock:
        q = lock_for_update(q)
    ingredient = q.first()
    if ingredient is None:
        raise BatchError("Ingredient not found", code="ingredient_not_found",
                         details={"ingredient_id": ingredient_id})
    return ingredient


def sum_batch_quantities(ingredient_id: int) -> Decimal:
    # Summed in Python: SQLite aggregates NUMERIC as float
    quantities = db.session.query(InventoryBatch.quantity).filter(
        InventoryBatch.ingredient_id == ingredient_id
    ).all()
    return sum((Decimal(str(row.quantity)) for row in quantities), Decimal("0"))


def stock_matches_batches(ingredient_id: int) -> tuple[Decimal, Decimal]:
    """
    Return (current_stock, sum of batch quantities) for invariant auditing.

    The two values must always be equal.
    """
    ingredient = get_ingredient(ingredient_id)
    return Decimal(str(ingredient.current_stock)), sum_batch_quantities(ingredient_id)


def _receive_batch_inner(
    ingredient: Ingredient,
    *,
    quantity: Decimal,
    unit_cost_cents: int,
    received_dt: datetime,
) -> InventoryBatch:
    """Core restock logic without locking, retry, or commit."""
    batch = InventoryBatch(
        ingredient_id=ingredient.id,
        received_at=received_dt,
        quantity=quantity,
        initial_quantity=quantity,
        unit_cost_cents=unit_cost_cents,
    )
    db.session.add(batch)
    ingredient.current_stock = Decimal(str(ingredient.current_stock or 0)) + quantity
    db.session.flush()
    return batch


def receive_batch(
    *,
    ingredient_id: int,
    quantity,
    unit_cost_cents: int,
    received_at=None,
) -> InventoryBatch:
    """
    Restock: create a new lot and increase the ingredient's running stock.

    Batch insert and current_stock increment commit together or not at all.
    """
    qty = to_quantity(quantity)
    if qty <= 0:
        raise BatchError("quantity must be > 0")
    if isinstance(unit_cost_cents, bool) or not isinstance(unit_cost_cents, int):
        raise BatchError("unit_cost_cents must be an integer")
    if unit_cost_cents < 0:
        raise BatchError("unit_cost_cents must be >= 0")

    received_dt = _parse_received_at(received_at)
    if received_dt > utcnow() + MAX_FUTURE_SKEW:
        raise BatchError("received_at cannot be in the future")

    def _op():
        begin_write_transaction()
        ingredient = get_ingredient(ingredient_id, lock=True)
        batch = _receive_batch_inner(
            ingredient,
            quantity=qty,
            unit_cost_cents=unit_cost_cents,
            received_dt=received_dt,
        )
        db.session.commit()
        logger.info("Received batch %s: %s %s of ingredient %s",
                    batch.id, qty, ingredient.unit, ingredient_id)
        return batch

    return run_with_retry(_op)


def add_ingredient(
    *,
    name: str,
    unit: str,
    low_stock_threshold=0,
    initial_stock=0,
    unit_cost_cents: int = 0,
) -> Ingredient:
    """
    Create an ingredient. A positive initial_stock is booked as its first
    batch in the same transaction, never written to current_stock directly.
    """
    name = (name or "").strip()
    unit = (unit or "").strip()
    if not name:
        raise BatchError("name is required")
    if not unit:
        raise BatchError("unit is required")

    threshold = to_quantity(low_stock_threshold, "low_stock_threshold")
    initial = to_quantity(initial_stock, "initial_stock")
    if threshold < 0:
        raise BatchError("low_stock_threshold must be >= 0")
    if initial < 0:
        raise BatchError("initial_stock must be >= 0")
    if isinstance(unit_cost_cents, bool) or not isinstance(unit_cost_cents, int) or unit_cost_cents < 0:
        raise BatchError("unit_cost_cents must be a non-negative integer")

    def _op():
        begin_write_transaction()
        existing = db.session.query(Ingredient).filter_by(name=name).first()
        if existing:
            raise BatchError(f"Ingredient '{name}' already exists", code="ingredient_exists")

        ingredient = Ingredient(
            name=name,
            unit=unit,
            current_stock=Decimal("0"),
            low_stock_threshold=threshold,
        )
        db.session.add(ingredient)
        db.session.flush()

        if initial > 0:
            _receive_batch_inner(
                ingredient,
                quantity=initial,
                unit_cost_cents=unit_cost_cents,
                received_dt=utcnow(),
            )

        db.session.commit()
        logger.info("Added ingredient %s (%s) with %s %s on hand",
                    ingredient.id, name, initial, unit)
        return ingredient

    return run_with_retry(_op)
