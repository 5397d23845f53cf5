# Overview: Service-layer verification of wallet-transfer receipts; OCR, rule checks and replay detection.

"""
Wallet-Transfer Receipt Verification

WHY: A wallet transfer is proven only by a screenshot of the customer's
receipt. Verification decides whether that screenshot shows a genuine, fresh,
never-before-used transfer.

PIPELINE (single pass, every failure is terminal for the attempt):
1. Input validation      -> ocr_failed
2. Text recognition      -> ocr_failed
3. Provider domain check -> not_provider_match
4. Reference extraction  -> missing_reference
5. Timestamp extraction  -> missing_datetime
6. Freshness window      -> too_old
7. Duplicate reference   -> duplicate_reference
8. confirmed

REPLAY GUARD:
Reference codes are single-use for the lifetime of the system. Any prior sale
carrying the code rejects, whatever that sale's status or age. The same query
(find_sale_by_reference) runs again inside sales_service.finalize_sale at
commit time, and the unique index on sales.reference_code closes the
remaining race between two concurrent submissions.

OCR runs here, before any inventory transaction starts, so recognition latency
never holds a lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Sale
from brewpos.time_utils import utcnow, to_utc_z
from .ocr_service import OcrError, get_ocr_provider
from .receipt_parser import (
    DEFAULT_PROVIDER_KEYWORD,
    extract_reference_code,
    extract_transaction_timestamp,
    is_transaction_recent,
    is_wallet_transfer_like,
    mask_reference_code,
)


logger = logging.getLogger(__name__)


# =============================================================================
# RESULT VOCABULARY (CONSTANTS)
# =============================================================================

STATUS_CONFIRMED = "confirmed"
STATUS_REJECTED = "rejected"

REASON_OCR_FAILED = "ocr_failed"
REASON_NOT_PROVIDER_MATCH = "not_provider_match"
REASON_MISSING_REFERENCE = "missing_reference"
REASON_MISSING_DATETIME = "missing_datetime"
REASON_TOO_OLD = "too_old"
REASON_DUPLICATE_REFERENCE = "duplicate_reference"
# Infrastructure, not a domain rejection: the caller may retry
REASON_STORAGE_FAILED = "storage_failed"

STAGE_INPUT = "input"
STAGE_RECOGNITION = "recognition"
STAGE_RULES = "rules"
STAGE_STORAGE = "storage"

ACCEPTED_MIME_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/webp")
DEFAULT_MAX_IMAGE_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class WalletTransactionData:
    reference_code: str
    transaction_timestamp: datetime  # UTC-naive
    confidence: float | None = None

    def to_dict(self) -> dict:
        return {
            "reference_code": self.reference_code,
            "transaction_timestamp": to_utc_z(self.transaction_timestamp),
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    status: str
    rejection_reason: str | None = None
    transaction_data: WalletTransactionData | None = None
    error: str | None = None
    retryable: bool = False
    stage: str = STAGE_RULES

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "transaction_data": self.transaction_data.to_dict() if self.transaction_data else None,
            "error": self.error,
            "retryable": self.retryable,
        }


def _reject(reason: str, error: str, *, stage: str = STAGE_RULES,
            data: WalletTransactionData | None = None, retryable: bool = False) -> VerificationResult:
    return VerificationResult(
        success=False,
        status=STATUS_REJECTED,
        rejection_reason=reason,
        transaction_data=data,
        error=error,
        retryable=retryable,
        stage=stage,
    )


# =============================================================================
# DUPLICATE DETECTION (shared with sales_service)
# =============================================================================

def normalize_reference_code(reference_code: str) -> str:
    return (reference_code or "").replace(" ", "").strip().upper()


def find_sale_by_reference(reference_code: str) -> Sale | None:
    """
    Any sale ever recorded with this reference code.

    Deliberately unconditional: no filter on verification status, sale age
    or anything else. Used by both verification and sale finalization.
    """
    code = normalize_reference_code(reference_code)
    if not code:
        return None
    return db.session.query(Sale).filter(
        Sale.reference_code.isnot(None),
        Sale.reference_code == code,
    ).order_by(Sale.id.asc()).first()


# =============================================================================
# VERIFICATION
# =============================================================================

def validate_image(image_bytes: bytes | None, mime_type: str | None, max_bytes: int) -> str | None:
    """Return an error message for an unacceptable upload, else None."""
    if not image_bytes:
        return "No image file provided"
    if (mime_type or "").lower() not in ACCEPTED_MIME_TYPES:
        return "Invalid file type. Only JPEG, PNG, and WebP are allowed."
    if len(image_bytes) > max_bytes:
        return f"File size exceeds {max_bytes // (1024 * 1024)}MB limit"
    return None


def verify_receipt(
    image_bytes: bytes | None,
    mime_type: str | None,
    *,
    ocr_provider=None,
    now: datetime | None = None,
) -> VerificationResult:
    """
    Decide whether a receipt image proves a fresh, unused wallet transfer.

    Args:
        image_bytes: Raw uploaded image
        mime_type: Declared content type of the upload
        ocr_provider: Object with recognize(bytes) -> OcrResult (defaults to app provider)
        now: Server time, UTC-naive (defaults to utcnow())

    Returns:
        VerificationResult; never raises for domain, OCR or storage failures
    """
    config = current_app.config
    max_bytes = config.get("WALLET_MAX_IMAGE_BYTES", DEFAULT_MAX_IMAGE_BYTES)
    keyword = config.get("WALLET_PROVIDER_KEYWORD", DEFAULT_PROVIDER_KEYWORD)
    window = timedelta(minutes=config.get("WALLET_FRESHNESS_MINUTES", 10))
    tz_name = config.get("RECEIPT_TIMEZONE", "UTC")

    # 1. Input validation (before any recognition work)
    input_error = validate_image(image_bytes, mime_type, max_bytes)
    if input_error:
        return _reject(REASON_OCR_FAILED, input_error, stage=STAGE_INPUT)

    # 2. Text recognition
    provider = ocr_provider or get_ocr_provider()
    try:
        ocr = provider.recognize(image_bytes)
    except OcrError as exc:
        logger.warning("Receipt OCR failed: %s", exc)
        return _reject(REASON_OCR_FAILED, str(exc) or "OCR processing failed", stage=STAGE_RECOGNITION)

    # 3. Provider domain check
    if not is_wallet_transfer_like(ocr.text, keyword):
        return _reject(REASON_NOT_PROVIDER_MATCH,
                       f"Image does not appear to be a {keyword.upper()} transaction")

    # 4. Reference code
    reference_code = extract_reference_code(ocr.text)
    if not reference_code:
        return _reject(REASON_MISSING_REFERENCE, "Could not extract reference code from transaction")

    # 5. Transaction timestamp
    server_time = now or utcnow()
    transaction_ts = extract_transaction_timestamp(ocr.text, now=server_time, tz_name=tz_name)
    if transaction_ts is None:
        logger.info("No transaction timestamp found for reference %s", mask_reference_code(reference_code))
        return _reject(
            REASON_MISSING_DATETIME,
            "Could not extract transaction date/time. Please ensure the image shows a clear date and time.",
        )

    data = WalletTransactionData(
        reference_code=reference_code,
        transaction_timestamp=transaction_ts,
        confidence=ocr.confidence,
    )

    # 6. Freshness
    if not is_transaction_recent(transaction_ts, server_time, window):
        return _reject(
            REASON_TOO_OLD,
            f"Transaction is older than {int(window.total_seconds() // 60)} minutes or dated in the future",
            data=data,
        )

    # 7. Replay
    try:
        existing = find_sale_by_reference(reference_code)
    except SQLAlchemyError:
        logger.exception("Duplicate check failed for reference %s", mask_reference_code(reference_code))
        db.session.rollback()
        return _reject(
            REASON_STORAGE_FAILED,
            "Failed to verify reference code. Please try again.",
            stage=STAGE_STORAGE,
            retryable=True,
        )

    if existing is not None:
        logger.warning(
            "Duplicate reference rejected: %s already used by sale %s",
            mask_reference_code(reference_code), existing.id,
        )
        return _reject(
            REASON_DUPLICATE_REFERENCE,
            f"Reference code {mask_reference_code(reference_code)} has already been used. "
            "Each transaction can only be used once.",
            data=data,
        )

    logger.info("Wallet transfer confirmed: reference %s", mask_reference_code(reference_code))
    return VerificationResult(
        success=True,
        status=STATUS_CONFIRMED,
        transaction_data=data,
    )
