# Overview: Service-layer operations for inventory; FIFO allocation and stock consumption.

# backend/brewpos/services/inventory_service.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Sequence

from sqlalchemy import func

from ..extensions import db
from ..models import Ingredient, InventoryBatch, BatchConsumption
from .batch_service import BatchError, get_ingredient, list_consumable_batches, sum_batch_quantities
"""
Inventory Ledger Invariants (authoritative)

Stock model:
- Inventory lives in InventoryBatch rows (one per received lot).
- Ingredient.current_stock is a running total that must always equal
  SUM(InventoryBatch.quantity) for the ingredient.
- Batch quantity and current_stock never go negative.

FIFO consumption:
- Lots are consumed oldest received_at first; ties by id.
- allocate() is pure: it plans debits from a batch snapshot without touching
  the database. apply_debits() performs them. consume() wires both together
  under row locks.

Transactions:
- consume() never commits. The caller owns the transaction so that a shortfall
  on any ingredient of any line rolls back every debit made for the sale.
"""


logger = logging.getLogger(__name__)

QUANTUM = Decimal("0.001")


class InventoryError(Exception):
    """Raised for inventory ledger errors."""
    def __init__(self, message: str, code: str = "inventory_error", details: dict | None = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}


class InsufficientStock(InventoryError):
    """Eligible batches cannot cover the requested quantity."""
    def __init__(self, ingredient_id: int, needed_remaining: Decimal, total_available: Decimal):
        self.ingredient_id = ingredient_id
        self.needed_remaining = needed_remaining
        self.total_available = total_available
        super().__init__(
            f"Insufficient stock for ingredient {ingredient_id}: "
            f"short by {needed_remaining}, available {total_available}",
            code="insufficient_stock",
            details={
                "ingredient_id": ingredient_id,
                "needed_remaining": str(needed_remaining),
                "total_available": str(total_available),
            },
        )


@dataclass(frozen=True)
class BatchDebit:
    """One planned decrement of one batch."""
    batch_id: int
    ingredient_id: int
    quantity: Decimal
    unit_cost_cents: int

    @property
    def cost_cents(self) -> Decimal:
        return self.quantity * self.unit_cost_cents


def allocate(ingredient_id: int, needed: Decimal, batches: Sequence[InventoryBatch]) -> list[BatchDebit]:
    """
    Plan FIFO debits covering `needed` units.

    `batches` must already be in FIFO order (see list_consumable_batches).
    Batches with nothing remaining are skipped. Raises InsufficientStock
    carrying the uncovered remainder when the batches run out first.
    """
    needed = Decimal(str(needed))
    if needed <= 0:
        raise InventoryError("quantity to consume must be > 0",
                             details={"ingredient_id": ingredient_id, "needed": str(needed)})

    debits: list[BatchDebit] = []
    remaining = needed
    available = Decimal("0")

    for batch in batches:
        on_hand = Decimal(str(batch.quantity))
        if on_hand <= 0:
            continue
        available += on_hand
        take = min(remaining, on_hand)
        debits.append(BatchDebit(
            batch_id=batch.id,
            ingredient_id=ingredient_id,
            quantity=take,
            unit_cost_cents=batch.unit_cost_cents or 0,
        ))
        remaining -= take
        if remaining == 0:
            break

    if remaining > 0:
        raise InsufficientStock(ingredient_id, remaining, available)

    return debits


def apply_debits(
    ingredient: Ingredient,
    batches: Iterable[InventoryBatch],
    debits: Sequence[BatchDebit],
) -> Decimal:
    """
    Apply planned debits to the batch rows and the running stock.

    Returns the total quantity consumed. Does not flush or commit.
    """
    by_id = {batch.id: batch for batch in batches}
    consumed = Decimal("0")

    for debit in debits:
        batch = by_id.get(debit.batch_id)
        if batch is None or batch.ingredient_id != ingredient.id:
            raise InventoryError("debit does not match a locked batch",
                                 details={"batch_id": debit.batch_id})
        new_qty = Decimal(str(batch.quantity)) - debit.quantity
        if new_qty < 0:
            raise InventoryError("debit exceeds batch remaining quantity",
                                 details={"batch_id": debit.batch_id})
        batch.quantity = new_qty
        consumed += debit.quantity

    new_stock = Decimal(str(ingredient.current_stock)) - consumed
    if new_stock < 0:
        raise InventoryError("running stock would go negative",
                             details={"ingredient_id": ingredient.id})
    ingredient.current_stock = new_stock
    return consumed


def consume(ingredient_id: int, needed_quantity) -> list[BatchDebit]:
    """
    Consume `needed_quantity` of an ingredient FIFO across its batches.

    CRITICAL: Must run inside the caller's write transaction. The ingredient
    row and its consumable batches are locked before reading quantities, so
    two concurrent sales cannot both allocate the same batch units.
    """
    try:
        ingredient = get_ingredient(ingredient_id, lock=True)
    except BatchError as exc:
        raise InventoryError(str(exc), code=exc.code, details=exc.details)
    batches = list_consumable_batches(ingredient_id, lock=True)

    debits = allocate(ingredient_id, Decimal(str(needed_quantity)), batches)
    apply_debits(ingredient, batches, debits)
    db.session.flush()

    logger.debug("Consumed %s of ingredient %s across %d batch(es)",
                 needed_quantity, ingredient_id, len(debits))
    return debits


def get_stock_summary(ingredient_id: int) -> dict:
    ingredient = get_ingredient(ingredient_id)
    batch_total = sum_batch_quantities(ingredient_id)
    open_batches = list_consumable_batches(ingredient_id)
    inventory_value = sum(
        (Decimal(str(b.quantity)) * b.unit_cost_cents for b in open_batches),
        Decimal("0"),
    )

    return {
        "ingredient": ingredient.to_dict(),
        "batch_total": str(batch_total),
        "in_sync": Decimal(str(ingredient.current_stock)) == batch_total,
        "open_batches": len(open_batches),
        "fifo_unit_cost_cents": open_batches[0].unit_cost_cents if open_batches else None,
        "inventory_value_cents": int(inventory_value.to_integral_value()),
    }


def list_low_stock_ingredients() -> list[Ingredient]:
    return db.session.query(Ingredient).filter(
        Ingredient.current_stock <= Ingredient.low_stock_threshold
    ).order_by(Ingredient.name.asc()).all()


def get_ingredient_usage(start: datetime | None = None, end: datetime | None = None) -> list[dict]:
    """
    Quantity and FIFO cost consumed per ingredient, from BatchConsumption rows.

    Range is inclusive on both ends; ingredients with no usage report zero.
    """
    q = db.session.query(
        BatchConsumption.ingredient_id,
        func.coalesce(func.sum(BatchConsumption.quantity), 0).label("used"),
        func.coalesce(
            func.sum(BatchConsumption.quantity * BatchConsumption.unit_cost_cents), 0
        ).label("cost"),
    )
    if start is not None:
        q = q.filter(BatchConsumption.consumed_at >= start)
    if end is not None:
        q = q.filter(BatchConsumption.consumed_at <= end)
    usage = {row.ingredient_id: row for row in q.group_by(BatchConsumption.ingredient_id).all()}

    report = []
    for ingredient in db.session.query(Ingredient).order_by(Ingredient.name.asc()).all():
        row = usage.get(ingredient.id)
        used = Decimal(str(row.used)).quantize(QUANTUM) if row else Decimal("0")
        cost = Decimal(str(row.cost)) if row else Decimal("0")
        report.append({
            "ingredient_id": ingredient.id,
            "name": ingredient.name,
            "unit": ingredient.unit,
            "used_quantity": str(used),
            "cost_cents": int(cost.to_integral_value()),
            "current_stock": str(ingredient.current_stock),
        })
    return report


def audit_stock_invariant() -> list[dict]:
    """Ingredients whose running stock disagrees with their batches."""
    mismatches = []
    for ingredient in db.session.query(Ingredient).order_by(Ingredient.id.asc()).all():
        batch_total = sum_batch_quantities(ingredient.id)
        if Decimal(str(ingredient.current_stock)) != batch_total:
            mismatches.append({
                "ingredient_id": ingredient.id,
                "name": ingredient.name,
                "current_stock": str(ingredient.current_stock),
                "batch_total": str(batch_total),
            })
    return mismatches
