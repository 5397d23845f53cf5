"""
Concurrency tests against a file-backed SQLite database.

In-memory SQLite shares one connection, so real contention needs a file:
each thread gets its own app context, session and connection, and
BEGIN IMMEDIATE serializes the finalizations.
"""

import threading
from decimal import Decimal

import pytest

from brewpos import create_app
from brewpos.extensions import db
from brewpos.models import Product, Sale
from brewpos.services import session_service
from brewpos.services.batch_service import add_ingredient, stock_matches_batches
from brewpos.services.recipe_service import sync_product_recipe
from brewpos.services.sales_service import finalize_sale

from conftest import wallet_data


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def espresso_shop(file_app):
    """Open session plus an espresso using 1 unit of beans, with 3 units on hand."""
    with file_app.app_context():
        session = session_service.open_session()
        beans = add_ingredient(name="Beans", unit="shot", initial_stock="3", unit_cost_cents=50)
        espresso = Product(name="Espresso", price_cents=300)
        db.session.add(espresso)
        db.session.commit()
        sync_product_recipe(espresso.id, [{"ingredient_id": beans.id, "quantity": "1"}])
        return {"session_id": session.id, "beans_id": beans.id, "product_id": espresso.id}


def _run_concurrently(app, count, target):
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(index):
        with app.app_context():
            barrier.wait()
            try:
                results[index] = target(index)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


def test_same_reference_only_one_sale_succeeds(file_app, espresso_shop):
    def submit(_):
        return finalize_sale(
            espresso_shop["session_id"],
            [{"product_id": espresso_shop["product_id"], "quantity": 1}],
            "wallet_transfer",
            wallet_data(),
        )

    results = _run_concurrently(file_app, 4, submit)

    assert sum(1 for r in results if r.success) == 1
    assert sorted(r.error_code for r in results if not r.success) == ["duplicate_reference"] * 3

    with file_app.app_context():
        assert db.session.query(Sale).count() == 1


def test_concurrent_sales_never_oversell(file_app, espresso_shop):
    def submit(_):
        return finalize_sale(
            espresso_shop["session_id"],
            [{"product_id": espresso_shop["product_id"], "quantity": 1}],
            "cash",
        )

    results = _run_concurrently(file_app, 5, submit)

    assert sum(1 for r in results if r.success) == 3
    assert sorted(r.error_code for r in results if not r.success) == ["insufficient_stock"] * 2

    with file_app.app_context():
        current, batch_total = stock_matches_batches(espresso_shop["beans_id"])
        assert current == batch_total == Decimal("0")
        assert db.session.query(Sale).count() == 3


def test_concurrent_opens_leave_one_open_session(file_app):
    def open_one(_):
        try:
            return session_service.open_session().id
        except session_service.SessionAlreadyOpen:
            return None

    results = _run_concurrently(file_app, 4, open_one)

    assert sum(1 for r in results if r is not None) == 1
