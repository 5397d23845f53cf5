# Overview: Flask API routes for payments operations; parses input and returns JSON responses.

# backend/brewpos/routes/payments.py
"""
Wallet-Transfer Verification API

WHY: Before a wallet-transfer sale is finalized, the cashier uploads a
screenshot of the customer's receipt. This endpoint runs it through OCR and
the verification rules and returns the outcome; it never writes a sale.

RESPONSES:
- 200: Verification ran; body carries status confirmed or rejected
- 400: Upload missing, wrong type or too large (rejection_reason ocr_failed)
- 500: Text recognition failed (rejection_reason ocr_failed)
- 503: Duplicate check could not reach the store (retryable)
"""

from flask import Blueprint, request, jsonify, current_app

from ..services.wallet_verification_service import (
    STAGE_INPUT,
    STAGE_RECOGNITION,
    STAGE_STORAGE,
    verify_receipt,
)


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")

_STAGE_STATUS = {
    STAGE_INPUT: 400,
    STAGE_RECOGNITION: 500,
    STAGE_STORAGE: 503,
}


@payments_bp.post("/wallet/verify")
def verify_wallet_receipt_route():
    """
    Verify a wallet-transfer receipt image.

    Multipart form field "image": JPEG, PNG or WebP, at most 10 MB.
    """
    upload = request.files.get("image")
    image_bytes = upload.read() if upload else None
    mime_type = upload.mimetype if upload else None

    try:
        result = verify_receipt(image_bytes, mime_type)
    except Exception:
        current_app.logger.exception("Wallet receipt verification failed")
        return jsonify({
            "success": False,
            "status": "rejected",
            "rejection_reason": "ocr_failed",
            "transaction_data": None,
            "error": "Internal server error",
            "retryable": False,
        }), 500

    status = 200 if result.success else _STAGE_STATUS.get(result.stage, 200)
    return jsonify(result.to_dict()), status
