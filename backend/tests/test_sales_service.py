"""
Sale finalization tests: atomic sale + FIFO consumption, validation order,
payment variants and replay protection.
"""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from brewpos.models import BatchConsumption, Product, Sale, SaleItem
from brewpos.services import sales_service, session_service
from brewpos.services.batch_service import list_batches
from brewpos.services.sales_service import (
    CardPayment,
    CartItem,
    CashPayment,
    InvalidPaymentMethod,
    MissingWalletData,
    WalletTransferPayment,
    build_payment,
    finalize_sale,
    get_sale,
    get_sale_cost_cents,
)

from conftest import RECEIPT_REFERENCE, stock_of, wallet_data


def _count(db_session, model):
    return db_session.query(model).count()


def _nothing_written(db_session):
    return (
        _count(db_session, Sale) == 0
        and _count(db_session, SaleItem) == 0
        and _count(db_session, BatchConsumption) == 0
    )


class TestBuildPayment:
    def test_cash_and_card(self):
        assert isinstance(build_payment("cash"), CashPayment)
        assert isinstance(build_payment("card"), CardPayment)

    def test_wallet_transfer(self):
        payment = build_payment("wallet_transfer", wallet_data(reference_code="1234 567 891234"))

        assert isinstance(payment, WalletTransferPayment)
        assert payment.reference_code == RECEIPT_REFERENCE
        assert payment.transaction_timestamp == datetime(2025, 11, 19, 15, 55)
        assert payment.method == "wallet_transfer"

    @pytest.mark.parametrize("method", ["bitcoin", "", None, "CASH"])
    def test_unknown_method(self, method):
        with pytest.raises(InvalidPaymentMethod):
            build_payment(method)

    @pytest.mark.parametrize("data", [
        None,
        {},
        {"reference_code": "", "transaction_timestamp": "2025-11-19T15:55:00Z"},
        {"reference_code": "1234567890"},
        {"reference_code": "1234567890", "transaction_timestamp": "yesterday"},
        {"reference_code": "1234567890", "transaction_timestamp": "2025-11-19T15:55:00Z", "confidence": "high"},
    ])
    def test_incomplete_wallet_data(self, data):
        with pytest.raises(MissingWalletData):
            build_payment("wallet_transfer", data)


class TestFinalizeSale:
    def test_latte_sale_consumes_fifo_and_records_costs(self, db_session, till_session, latte, beans, milk):
        result = finalize_sale(till_session.id, [CartItem(product_id=latte.id, quantity=2)], "cash")

        assert result.success is True
        assert result.status == "committed"
        assert result.error_code is None

        sale = db_session.get(Sale, result.sale_id)
        assert sale.total_amount_cents == 900
        assert sale.payment_method == "cash"
        assert sale.reference_code is None

        assert stock_of(beans.id) == Decimal("0.964")
        assert stock_of(milk.id) == Decimal("0.9")
        assert [Decimal(str(b.quantity)) for b in list_batches(milk.id)] == [Decimal("0"), Decimal("0.9")]

        consumptions = db_session.query(BatchConsumption).filter_by(sale_id=sale.id).all()
        assert len(consumptions) == 3
        assert get_sale_cost_cents(sale.id) == 114

    def test_ingredients_are_consumed_in_ascending_id_order(self, db_session, till_session, latte, beans, milk):
        result = finalize_sale(till_session.id, [{"product_id": latte.id, "quantity": 1}], "card")

        rows = db_session.query(BatchConsumption).filter_by(
            sale_id=result.sale_id
        ).order_by(BatchConsumption.id.asc()).all()
        assert [r.ingredient_id for r in rows] == sorted(r.ingredient_id for r in rows)

    def test_product_without_recipe_consumes_nothing(self, db_session, till_session, cookie):
        result = finalize_sale(till_session.id, [{"product_id": cookie.id, "quantity": 3}], "cash")

        assert result.success is True
        assert _count(db_session, BatchConsumption) == 0
        assert db_session.get(Sale, result.sale_id).total_amount_cents == 450

    def test_supplied_price_wins_and_zero_falls_back(self, db_session, till_session, cookie):
        result = finalize_sale(till_session.id, [
            {"product_id": cookie.id, "quantity": 1, "unit_price_cents": 200},
            {"product_id": cookie.id, "quantity": 2, "unit_price_cents": 0},
        ], "cash")

        items = db_session.query(SaleItem).filter_by(sale_id=result.sale_id).order_by(SaleItem.id).all()
        assert [i.unit_price_cents for i in items] == [200, 150]
        assert db_session.get(Sale, result.sale_id).total_amount_cents == 500

    def test_insufficient_stock_rolls_back_everything(self, db_session, till_session, latte, beans, milk):
        # 7 lattes need 1.400 L milk; only 1.300 L on hand. Beans (lower id) are debited first.
        result = finalize_sale(till_session.id, [{"product_id": latte.id, "quantity": 7}], "cash")

        assert result.success is False
        assert result.error_code == "insufficient_stock"
        assert result.status == "aborted"
        assert result.details["ingredient_id"] == milk.id
        assert result.retryable is False

        assert _nothing_written(db_session)
        assert stock_of(beans.id) == Decimal("1")
        assert stock_of(milk.id) == Decimal("1.3")

    def test_closed_session_rejected(self, db_session, till_session, cookie):
        session_service.close_session(till_session.id)

        result = finalize_sale(till_session.id, [{"product_id": cookie.id, "quantity": 1}], "cash")

        assert result.error_code == "session_not_open"
        assert _nothing_written(db_session)

    def test_unknown_session_rejected(self, db_session, cookie):
        result = finalize_sale(424242, [{"product_id": cookie.id, "quantity": 1}], "cash")

        assert result.error_code == "session_not_open"

    def test_session_checked_before_cart(self, db_session):
        result = finalize_sale(424242, [], "bitcoin")

        assert result.error_code == "session_not_open"

    @pytest.mark.parametrize("items", [[], None])
    def test_empty_cart(self, db_session, till_session, items):
        assert finalize_sale(till_session.id, items, "cash").error_code == "empty_cart"

    @pytest.mark.parametrize("item", [
        {"product_id": 1, "quantity": 0},
        {"product_id": 1, "quantity": -2},
        {"product_id": 1, "quantity": 1.5},
        {"product_id": 1, "quantity": True},
        {"product_id": "1", "quantity": 1},
        {"product_id": 1, "quantity": 1, "unit_price_cents": -5},
        "latte",
    ])
    def test_invalid_cart_item(self, db_session, till_session, item):
        result = finalize_sale(till_session.id, [item], "cash")

        assert result.error_code == "invalid_cart_item"
        assert _nothing_written(db_session)

    def test_invalid_payment_method(self, db_session, till_session, cookie):
        result = finalize_sale(till_session.id, [{"product_id": cookie.id, "quantity": 1}], "cheque")

        assert result.error_code == "invalid_payment_method"

    def test_wallet_transfer_needs_wallet_data(self, db_session, till_session, cookie):
        result = finalize_sale(till_session.id, [{"product_id": cookie.id, "quantity": 1}], "wallet_transfer")

        assert result.error_code == "missing_wallet_data"
        assert _nothing_written(db_session)

    def test_unknown_product(self, db_session, till_session):
        result = finalize_sale(till_session.id, [{"product_id": 999_999, "quantity": 1}], "cash")

        assert result.error_code == "product_not_found"

    def test_inactive_product(self, db_session, till_session):
        retired = Product(name="Seasonal", price_cents=500, is_active=False)
        db_session.add(retired)
        db_session.commit()

        result = finalize_sale(till_session.id, [{"product_id": retired.id, "quantity": 1}], "cash")

        assert result.error_code == "product_not_found"


class TestWalletTransferSales:
    def test_records_verified_transfer(self, db_session, till_session, cookie):
        result = finalize_sale(
            till_session.id,
            [{"product_id": cookie.id, "quantity": 1}],
            "wallet_transfer",
            wallet_data(),
        )

        sale = db_session.get(Sale, result.sale_id)
        assert sale.reference_code == RECEIPT_REFERENCE
        assert sale.verification_status == "confirmed"
        assert sale.transaction_timestamp_utc == datetime(2025, 11, 19, 15, 55)
        assert sale.ocr_confidence == pytest.approx(0.92)

    def test_serialized_sale_masks_reference(self, db_session, till_session, cookie):
        result = finalize_sale(
            till_session.id,
            [{"product_id": cookie.id, "quantity": 1}],
            "wallet_transfer",
            wallet_data(),
        )

        assert get_sale(result.sale_id)["reference_code"] == "1234*******34"

    def test_duplicate_reference_rejected(self, db_session, till_session, cookie):
        items = [{"product_id": cookie.id, "quantity": 1}]
        first = finalize_sale(till_session.id, items, "wallet_transfer", wallet_data())
        second = finalize_sale(
            till_session.id, items, "wallet_transfer", wallet_data(reference_code="1234 567 891234")
        )

        assert first.success is True
        assert second.success is False
        assert second.error_code == "duplicate_reference"
        assert RECEIPT_REFERENCE not in second.error
        assert _count(db_session, Sale) == 1

    def test_reference_never_reusable_across_sessions(self, db_session, till_session, cookie):
        items = [{"product_id": cookie.id, "quantity": 1}]
        assert finalize_sale(till_session.id, items, "wallet_transfer", wallet_data()).success

        session_service.close_session(till_session.id)
        next_session = session_service.open_session()

        result = finalize_sale(next_session.id, items, "wallet_transfer", wallet_data())
        assert result.error_code == "duplicate_reference"

    def test_unique_index_catches_duplicate_missed_by_query(self, db_session, till_session, cookie, monkeypatch):
        items = [{"product_id": cookie.id, "quantity": 1}]
        assert finalize_sale(till_session.id, items, "wallet_transfer", wallet_data()).success

        # Simulate the race: the application-level check sees nothing
        monkeypatch.setattr(sales_service, "find_sale_by_reference", lambda code: None)

        result = finalize_sale(till_session.id, items, "wallet_transfer", wallet_data())

        assert result.error_code == "duplicate_reference"
        assert _count(db_session, Sale) == 1


class TestStorageFailures:
    def test_storage_error_is_retryable(self, db_session, till_session, cookie, monkeypatch):
        def broken(reference_code):
            raise SQLAlchemyError("connection lost")

        monkeypatch.setattr(sales_service, "find_sale_by_reference", broken)

        result = finalize_sale(
            till_session.id,
            [{"product_id": cookie.id, "quantity": 1}],
            "wallet_transfer",
            wallet_data(),
        )

        assert result.success is False
        assert result.error_code == "storage_failed"
        assert result.retryable is True
        assert _nothing_written(db_session)


class TestReads:
    def test_get_sale_includes_items_consumptions_and_cost(self, db_session, till_session, latte):
        result = finalize_sale(till_session.id, [{"product_id": latte.id, "quantity": 1}], "cash")

        data = get_sale(result.sale_id)

        assert data["total_amount_cents"] == 450
        assert len(data["items"]) == 1
        assert len(data["consumptions"]) == 2
        # 0.018 * 2000 + 0.200 * 100
        assert data["cost_cents"] == 56

    def test_get_missing_sale(self, db_session):
        with pytest.raises(sales_service.SaleNotFound):
            get_sale(31337)

    def test_finalize_result_to_dict(self):
        body = sales_service.FinalizeResult.failed("empty_cart", "Cart is empty").to_dict()

        assert body == {
            "success": False,
            "status": "aborted",
            "sale_id": None,
            "error_code": "empty_cart",
            "error": "Cart is empty",
            "details": {},
            "retryable": False,
        }
