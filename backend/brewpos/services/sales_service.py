"""
Sale Finalization

WHY: A sale, its line items and every FIFO batch debit its recipes cause are
one unit of work. Either all of it is committed or none of it is.

STATE MACHINE (one invocation):
    Validating -> Writing -> Allocating -> Committed
    any step --(error)--> Aborted (full rollback)

PAYMENT:
Payment is a tagged union. Cash and card carry no data; a wallet transfer
carries the reference code and timestamp produced by receipt verification.
The reference code is re-checked against every recorded sale here, inside the
write transaction, and the unique index on sales.reference_code rejects the
last concurrent duplicate at commit.

RESULTS:
finalize_sale() never raises for domain or storage failures. It returns a
FinalizeResult with status committed or aborted. On abort, error_code says
what went wrong and retryable separates infrastructure trouble from
rejections a retry cannot fix.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, ClassVar, Sequence, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import BatchConsumption, Product, RegisterSession, Sale, SaleItem
from brewpos.time_utils import parse_iso_datetime, utcnow, to_utc_naive
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .inventory_service import InventoryError, consume
from .receipt_parser import mask_reference_code
from .recipe_service import required_ingredients
from .wallet_verification_service import (
    STATUS_CONFIRMED,
    find_sale_by_reference,
    normalize_reference_code,
)


logger = logging.getLogger(__name__)


PAYMENT_CASH = "cash"
PAYMENT_CARD = "card"
PAYMENT_WALLET_TRANSFER = "wallet_transfer"
PAYMENT_METHODS = (PAYMENT_CASH, PAYMENT_CARD, PAYMENT_WALLET_TRANSFER)

STORAGE_FAILED = "storage_failed"

STATUS_COMMITTED = "committed"
STATUS_ABORTED = "aborted"


# =============================================================================
# ERRORS
# =============================================================================

class SaleError(Exception):
    """Raised for sale finalization errors."""
    code = "sale_error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class SessionNotOpen(SaleError):
    code = "session_not_open"


class EmptyCart(SaleError):
    code = "empty_cart"


class InvalidCartItem(SaleError):
    code = "invalid_cart_item"


class InvalidPaymentMethod(SaleError):
    code = "invalid_payment_method"


class MissingWalletData(SaleError):
    code = "missing_wallet_data"


class DuplicateReference(SaleError):
    code = "duplicate_reference"

    def __init__(self, reference_code: str):
        masked = mask_reference_code(reference_code)
        super().__init__(
            f"Reference code {masked} has already been used",
            details={"reference_code": masked},
        )


class ProductNotFound(SaleError):
    code = "product_not_found"


class SaleNotFound(SaleError):
    code = "sale_not_found"


# =============================================================================
# PAYMENT VARIANTS
# =============================================================================

@dataclass(frozen=True)
class CashPayment:
    method: ClassVar[str] = PAYMENT_CASH


@dataclass(frozen=True)
class CardPayment:
    method: ClassVar[str] = PAYMENT_CARD


@dataclass(frozen=True)
class WalletTransferPayment:
    reference_code: str
    transaction_timestamp: datetime  # UTC-naive
    confidence: float | None = None

    method: ClassVar[str] = PAYMENT_WALLET_TRANSFER


Payment = Union[CashPayment, CardPayment, WalletTransferPayment]


def _wallet_timestamp(value) -> datetime | None:
    if isinstance(value, datetime):
        return to_utc_naive(value)
    if isinstance(value, str):
        try:
            return parse_iso_datetime(value)
        except ValueError:
            return None
    return None


def build_payment(method: str | None, wallet_data: dict | None = None) -> Payment:
    """
    Turn a loose payment payload into a payment variant.

    wallet_data (wallet transfers only):
        {"reference_code": str, "transaction_timestamp": ISO-8601 | datetime,
         "confidence": float | None}
    """
    if method == PAYMENT_CASH:
        return CashPayment()
    if method == PAYMENT_CARD:
        return CardPayment()
    if method != PAYMENT_WALLET_TRANSFER:
        raise InvalidPaymentMethod(
            f"Unknown payment method: {method!r}",
            details={"allowed": list(PAYMENT_METHODS)},
        )

    if not isinstance(wallet_data, dict):
        raise MissingWalletData("wallet_data is required for wallet transfers")

    reference_code = wallet_data.get("reference_code")
    if not isinstance(reference_code, str) or not normalize_reference_code(reference_code):
        raise MissingWalletData("wallet_data.reference_code is required")

    timestamp = _wallet_timestamp(wallet_data.get("transaction_timestamp"))
    if timestamp is None:
        raise MissingWalletData("wallet_data.transaction_timestamp must be an ISO-8601 datetime")

    confidence = wallet_data.get("confidence")
    if confidence is not None:
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise MissingWalletData("wallet_data.confidence must be a number")
        confidence = float(confidence)

    return WalletTransferPayment(
        reference_code=normalize_reference_code(reference_code),
        transaction_timestamp=timestamp,
        confidence=confidence,
    )


# =============================================================================
# CART
# =============================================================================

@dataclass(frozen=True)
class CartItem:
    product_id: int
    quantity: int
    unit_price_cents: int | None = None


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _coerce_cart_item(index: int, raw) -> CartItem:
    if isinstance(raw, CartItem):
        item = raw
    elif isinstance(raw, dict):
        item = CartItem(
            product_id=raw.get("product_id"),
            quantity=raw.get("quantity"),
            unit_price_cents=raw.get("unit_price_cents"),
        )
    else:
        raise InvalidCartItem("cart item must be an object", details={"index": index})

    if not _is_int(item.product_id):
        raise InvalidCartItem("product_id must be an integer", details={"index": index})
    if not _is_int(item.quantity) or item.quantity <= 0:
        raise InvalidCartItem("quantity must be an integer > 0",
                              details={"index": index, "product_id": item.product_id})
    if item.unit_price_cents is not None and (
        not _is_int(item.unit_price_cents) or item.unit_price_cents < 0
    ):
        raise InvalidCartItem("unit_price_cents must be a non-negative integer",
                              details={"index": index, "product_id": item.product_id})
    return item


def validate_cart(items: Sequence[Any] | None) -> list[CartItem]:
    if not items:
        raise EmptyCart("Cart is empty")
    if isinstance(items, (str, bytes, dict)):
        raise InvalidCartItem("items must be a list")
    return [_coerce_cart_item(i, raw) for i, raw in enumerate(items)]


def _price_cart(cart: list[CartItem]) -> list[tuple[CartItem, int]]:
    """
    Resolve the unit price of each line.

    A supplied unit_price_cents > 0 wins; otherwise the product's list price.
    """
    product_ids = {item.product_id for item in cart}
    products = {
        p.id: p for p in db.session.query(Product).filter(Product.id.in_(product_ids)).all()
    }

    priced = []
    for item in cart:
        product = products.get(item.product_id)
        if product is None or not product.is_active:
            raise ProductNotFound("Product not found", details={"product_id": item.product_id})
        if item.unit_price_cents is not None and item.unit_price_cents > 0:
            unit_price = item.unit_price_cents
        else:
            unit_price = product.price_cents or 0
        priced.append((item, unit_price))
    return priced


# =============================================================================
# RESULT
# =============================================================================

@dataclass(frozen=True)
class FinalizeResult:
    success: bool
    status: str = STATUS_ABORTED  # committed or aborted
    sale_id: int | None = None
    error_code: str | None = None
    error: str | None = None
    details: dict = field(default_factory=dict)
    retryable: bool = False

    @classmethod
    def failed(cls, code: str, message: str, details: dict | None = None,
               retryable: bool = False) -> "FinalizeResult":
        return cls(success=False, status=STATUS_ABORTED, error_code=code, error=message,
                   details=details or {}, retryable=retryable)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "sale_id": self.sale_id,
            "error_code": self.error_code,
            "error": self.error,
            "details": self.details,
            "retryable": self.retryable,
        }


def _is_reference_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig) if exc.orig is not None else str(exc)
    return "reference_code" in message


# =============================================================================
# FINALIZATION
# =============================================================================

def _finalize_locked(session_id: int, items, payment_method, wallet_data) -> Sale:
    # Validating
    session = lock_for_update(
        db.session.query(RegisterSession).filter_by(id=session_id)
    ).first()
    if session is None or not session.is_open:
        raise SessionNotOpen("Session is not open", details={"session_id": session_id})

    cart = validate_cart(items)
    payment = build_payment(payment_method, wallet_data)

    if isinstance(payment, WalletTransferPayment):
        if find_sale_by_reference(payment.reference_code) is not None:
            raise DuplicateReference(payment.reference_code)

    priced = _price_cart(cart)
    now = utcnow()

    # Writing
    sale = Sale(
        session_id=session.id,
        total_amount_cents=sum(unit_price * item.quantity for item, unit_price in priced),
        sold_at=now,
        payment_method=payment.method,
    )
    if isinstance(payment, WalletTransferPayment):
        sale.reference_code = payment.reference_code
        sale.transaction_timestamp_utc = payment.transaction_timestamp
        sale.verification_status = STATUS_CONFIRMED
        sale.ocr_confidence = payment.confidence
    db.session.add(sale)
    db.session.flush()

    requirements: list[tuple[int, Decimal, SaleItem]] = []
    for item, unit_price in priced:
        sale_item = SaleItem(
            sale_id=sale.id,
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price_cents=unit_price,
            line_total_cents=unit_price * item.quantity,
        )
        db.session.add(sale_item)
        db.session.flush()
        for ingredient_id, qty in required_ingredients(item.product_id, item.quantity):
            requirements.append((ingredient_id, qty, sale_item))

    # Allocating: ingredients in ascending id so concurrent sales lock in the same order
    requirements.sort(key=lambda r: r[0])
    for ingredient_id, qty, sale_item in requirements:
        for debit in consume(ingredient_id, qty):
            db.session.add(BatchConsumption(
                sale_id=sale.id,
                sale_item_id=sale_item.id,
                batch_id=debit.batch_id,
                ingredient_id=debit.ingredient_id,
                quantity=debit.quantity,
                unit_cost_cents=debit.unit_cost_cents,
                consumed_at=now,
            ))

    db.session.commit()
    return sale


def finalize_sale(
    session_id: int,
    items: Sequence[Any] | None,
    payment_method: str | None,
    wallet_data: dict | None = None,
) -> FinalizeResult:
    """
    Record a sale and consume its recipe ingredients FIFO, atomically.

    Args:
        session_id: Register session the sale belongs to (must be open)
        items: CartItem instances or {"product_id", "quantity", "unit_price_cents"} dicts
        payment_method: cash, card or wallet_transfer
        wallet_data: Verified transfer data, required for wallet_transfer

    Returns:
        FinalizeResult with the new sale id, or the reason nothing was written
    """
    def _op():
        begin_write_transaction()
        return _finalize_locked(session_id, items, payment_method, wallet_data)

    try:
        sale = run_with_retry(_op)
    except SaleError as exc:
        logger.info("Sale rejected (%s): %s", exc.code, exc)
        return FinalizeResult.failed(exc.code, str(exc), exc.details)
    except InventoryError as exc:
        logger.info("Sale rejected (%s): %s", exc.code, exc)
        return FinalizeResult.failed(exc.code, str(exc), exc.details)
    except IntegrityError as exc:
        if payment_method == PAYMENT_WALLET_TRANSFER and _is_reference_conflict(exc):
            reference_code = (wallet_data or {}).get("reference_code") or ""
            logger.warning("Concurrent duplicate reference %s rejected at commit",
                           mask_reference_code(normalize_reference_code(reference_code)))
            err = DuplicateReference(reference_code)
            return FinalizeResult.failed(err.code, str(err), err.details)
        logger.exception("Sale finalization hit an integrity error")
        return FinalizeResult.failed(STORAGE_FAILED, "Failed to record sale", retryable=True)
    except SQLAlchemyError:
        logger.exception("Sale finalization failed in storage")
        return FinalizeResult.failed(STORAGE_FAILED, "Failed to record sale", retryable=True)

    if sale.reference_code:
        logger.info("Finalized sale %s: %s cents via %s (reference %s)",
                    sale.id, sale.total_amount_cents, sale.payment_method,
                    mask_reference_code(sale.reference_code))
    else:
        logger.info("Finalized sale %s: %s cents via %s",
                    sale.id, sale.total_amount_cents, sale.payment_method)
    return FinalizeResult(success=True, status=STATUS_COMMITTED, sale_id=sale.id)


# =============================================================================
# READS
# =============================================================================

def get_sale_cost_cents(sale_id: int) -> int:
    """FIFO cost of goods: SUM(quantity * unit_cost_cents) over the sale's consumptions."""
    rows = db.session.query(
        BatchConsumption.quantity, BatchConsumption.unit_cost_cents
    ).filter_by(sale_id=sale_id).all()
    total = sum(
        (Decimal(str(row.quantity)) * row.unit_cost_cents for row in rows),
        Decimal("0"),
    )
    return int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def get_sale(sale_id: int) -> dict:
    sale = db.session.query(Sale).filter_by(id=sale_id).first()
    if sale is None:
        raise SaleNotFound("Sale not found", details={"sale_id": sale_id})

    items = db.session.query(SaleItem).filter_by(sale_id=sale_id).order_by(SaleItem.id.asc()).all()
    consumptions = db.session.query(BatchConsumption).filter_by(
        sale_id=sale_id
    ).order_by(BatchConsumption.id.asc()).all()

    data = sale.to_dict()
    data["items"] = [item.to_dict() for item in items]
    data["consumptions"] = [c.to_dict() for c in consumptions]
    data["cost_cents"] = get_sale_cost_cents(sale_id)
    return data
