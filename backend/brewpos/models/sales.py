from __future__ import annotations

from ..extensions import db
from brewpos.time_utils import to_utc_z
from .inventory import QUANTITY, _qty


class Sale(db.Model):
    """
    Finalized sale. Written exactly once per finalization, together with its
    items and batch consumptions, in a single transaction.

    WALLET TRANSFERS:
    reference_code is the provider's transaction id and doubles as a single-use
    idempotency key. The partial unique index below is the authoritative
    replay guard: the application-level duplicate query narrows the window,
    the index closes it.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index(
            "uq_sales_reference_code",
            "reference_code",
            unique=True,
            sqlite_where=db.text("reference_code IS NOT NULL"),
            postgresql_where=db.text("reference_code IS NOT NULL"),
        ),
        db.Index("ix_sales_session_sold", "session_id", "sold_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("sessions.id"), nullable=False, index=True)

    total_amount_cents = db.Column(db.Integer, nullable=False)
    sold_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    # cash, card, wallet_transfer
    payment_method = db.Column(db.String(32), nullable=False, index=True)

    # Wallet-transfer audit fields (null for cash/card)
    reference_code = db.Column(db.String(32), nullable=True)
    transaction_timestamp_utc = db.Column(db.DateTime(timezone=True), nullable=True)
    verification_status = db.Column(db.String(16), nullable=True)  # confirmed, rejected
    rejection_reason = db.Column(db.String(64), nullable=True)
    ocr_confidence = db.Column(db.Float, nullable=True)

    session = db.relationship("RegisterSession", backref=db.backref("sales", lazy=True))

    def to_dict(self) -> dict:
        from brewpos.services.receipt_parser import mask_reference_code

        return {
            "id": self.id,
            "session_id": self.session_id,
            "total_amount_cents": self.total_amount_cents,
            "sold_at": to_utc_z(self.sold_at),
            "payment_method": self.payment_method,
            "reference_code": mask_reference_code(self.reference_code) if self.reference_code else None,
            "transaction_timestamp_utc": to_utc_z(self.transaction_timestamp_utc),
            "verification_status": self.verification_status,
            "rejection_reason": self.rejection_reason,
            "ocr_confidence": self.ocr_confidence,
        }


class SaleItem(db.Model):
    """Line item; unit_price_cents is a snapshot, not a live reference to Product."""
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_sale_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    sale = db.relationship("Sale", backref=db.backref("items", lazy=True))
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }


class BatchConsumption(db.Model):
    """
    Append-only record of one FIFO debit against one batch.

    WHY: Lot costing history. Cost of goods for a sale is
    SUM(quantity * unit_cost_cents) over its consumptions, and ingredient usage
    reports aggregate these rows.
    """
    __tablename__ = "batch_consumptions"
    __table_args__ = (
        db.Index("ix_consumptions_ingredient_consumed", "ingredient_id", "consumed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("inventory_batches.id"), nullable=False, index=True)
    ingredient_id = db.Column(db.Integer, db.ForeignKey("ingredients.id"), nullable=False)

    quantity = db.Column(QUANTITY, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False)

    consumed_at = db.Column(db.DateTime(timezone=True), nullable=False)

    sale = db.relationship("Sale", backref=db.backref("consumptions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "sale_item_id": self.sale_item_id,
            "batch_id": self.batch_id,
            "ingredient_id": self.ingredient_id,
            "quantity": _qty(self.quantity),
            "unit_cost_cents": self.unit_cost_cents,
            "consumed_at": to_utc_z(self.consumed_at),
        }
