# backend/brewpos/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/brewpos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///brewpos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Browser frontends allowed to call the API (comma-separated)
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip() for o in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",") if o.strip()
    )

    # Wallet-transfer receipt verification
    WALLET_PROVIDER_KEYWORD = os.environ.get("WALLET_PROVIDER_KEYWORD", "gcash")
    WALLET_MAX_IMAGE_BYTES = int(os.environ.get("WALLET_MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))
    WALLET_FRESHNESS_MINUTES = int(os.environ.get("WALLET_FRESHNESS_MINUTES", "10"))

    # Wall-clock timezone printed on receipts; converted to UTC on extraction
    RECEIPT_TIMEZONE = os.environ.get("RECEIPT_TIMEZONE", "UTC")

    OCR_LANG = os.environ.get("OCR_LANG", "eng")
    OCR_TIMEOUT_SECONDS = float(os.environ.get("OCR_TIMEOUT_SECONDS", "20"))
