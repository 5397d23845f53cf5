"""
Pytest fixtures for brewpos backend tests.

Provides test database setup, domain fixtures (ingredients with lots, a
recipe-backed product, an open till session), a fake OCR provider and a
test client.
"""

from datetime import datetime
from decimal import Decimal

import pytest
from brewpos import create_app
from brewpos.extensions import db
from brewpos.models import Product
from brewpos.services import session_service
from brewpos.services.batch_service import add_ingredient, receive_batch
from brewpos.services.ocr_service import OcrError, OcrResult
from brewpos.services.recipe_service import sync_product_recipe


RECEIPT_TEXT = (
    "GCash\n"
    "You have sent money\n"
    "Amount: PHP 150.00\n"
    "Ref No. 1234 567 891234\n"
    "Nov 19, 2025 3:55 PM\n"
)
RECEIPT_REFERENCE = "1234567891234"
RECEIPT_TIME = datetime(2025, 11, 19, 15, 55)


class FakeOcrProvider:
    """Stands in for Tesseract; returns canned text or raises OcrError."""

    def __init__(self, text: str = RECEIPT_TEXT, confidence: float = 0.92):
        self.text = text
        self.confidence = confidence
        self.error: str | None = None
        self.calls = 0

    def recognize(self, image_bytes: bytes) -> OcrResult:
        self.calls += 1
        if self.error:
            raise OcrError(self.error)
        return OcrResult(text=self.text, confidence=self.confidence)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RECEIPT_TIMEZONE': 'UTC',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def fake_ocr(app):
    """Install a fake OCR provider for the duration of a test."""
    provider = FakeOcrProvider()
    previous = app.extensions.get("ocr_provider")
    app.extensions["ocr_provider"] = provider
    yield provider
    if previous is None:
        app.extensions.pop("ocr_provider", None)
    else:
        app.extensions["ocr_provider"] = previous


@pytest.fixture(scope='function')
def till_session(db_session):
    """An open register session."""
    return session_service.open_session()


@pytest.fixture(scope='function')
def beans(db_session):
    """Coffee beans: one lot of 1.000 kg at 2000 cents/kg."""
    ingredient = add_ingredient(name="Coffee Beans", unit="kg", low_stock_threshold="0.100")
    receive_batch(
        ingredient_id=ingredient.id,
        quantity="1.000",
        unit_cost_cents=2000,
        received_at=datetime(2025, 1, 1, 8, 0),
    )
    return ingredient


@pytest.fixture(scope='function')
def milk(db_session):
    """Milk: an older lot of 0.300 L at 100 cents/L and a newer lot of 1.000 L at 120."""
    ingredient = add_ingredient(name="Milk", unit="L", low_stock_threshold="0.500")
    receive_batch(
        ingredient_id=ingredient.id,
        quantity="0.300",
        unit_cost_cents=100,
        received_at=datetime(2025, 1, 1, 9, 0),
    )
    receive_batch(
        ingredient_id=ingredient.id,
        quantity="1.000",
        unit_cost_cents=120,
        received_at=datetime(2025, 1, 2, 9, 0),
    )
    return ingredient


@pytest.fixture(scope='function')
def latte(db_session, beans, milk):
    """Latte at 450 cents: 0.018 kg beans + 0.200 L milk per cup."""
    product = Product(name="Latte", category="coffee", price_cents=450)
    db_session.add(product)
    db_session.commit()
    sync_product_recipe(product.id, [
        {"ingredient_id": beans.id, "quantity": "0.018"},
        {"ingredient_id": milk.id, "quantity": "0.200"},
    ])
    return product


@pytest.fixture(scope='function')
def cookie(db_session):
    """A product with no recipe: selling it consumes nothing."""
    product = Product(name="Cookie", category="pastry", price_cents=150)
    db_session.add(product)
    db_session.commit()
    return product


def wallet_data(reference_code: str = RECEIPT_REFERENCE, timestamp: str = "2025-11-19T15:55:00Z") -> dict:
    return {
        "reference_code": reference_code,
        "transaction_timestamp": timestamp,
        "confidence": 0.92,
    }


def stock_of(ingredient_id: int) -> Decimal:
    from brewpos.services.batch_service import stock_matches_batches

    current, batch_total = stock_matches_batches(ingredient_id)
    assert current == batch_total
    return current
