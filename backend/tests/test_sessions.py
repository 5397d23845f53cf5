import pytest

from brewpos.models import RegisterSession
from brewpos.services import session_service
from brewpos.services.sales_service import finalize_sale
from brewpos.services.session_service import SessionAlreadyOpen, SessionError

from conftest import wallet_data


def test_open_session(db_session):
    session = session_service.open_session()

    assert session.is_open
    assert session.closed_at is None
    assert session_service.get_current_session().id == session.id


def test_only_one_open_session(db_session, till_session):
    with pytest.raises(SessionAlreadyOpen) as exc_info:
        session_service.open_session()

    assert exc_info.value.code == "session_already_open"
    assert exc_info.value.details["session_id"] == till_session.id


def test_unique_index_blocks_concurrent_open(db_session, till_session, monkeypatch):
    # The check-then-insert race: another opener's row is invisible to the check
    monkeypatch.setattr(session_service, "get_current_session", lambda: None)

    with pytest.raises(SessionAlreadyOpen):
        session_service.open_session()

    assert db_session.query(RegisterSession).count() == 1


def test_close_then_reopen(db_session, till_session):
    closed = session_service.close_session(till_session.id)

    assert closed.status == "closed"
    assert closed.closed_at is not None
    assert session_service.get_current_session() is None

    reopened = session_service.open_session()
    assert reopened.id != till_session.id


def test_close_twice(db_session, till_session):
    session_service.close_session(till_session.id)

    with pytest.raises(SessionError) as exc_info:
        session_service.close_session(till_session.id)

    assert exc_info.value.code == "session_closed"


def test_close_unknown(db_session):
    with pytest.raises(SessionError) as exc_info:
        session_service.close_session(8080)

    assert exc_info.value.code == "session_not_found"


def test_summary_totals_by_payment_method(db_session, till_session, cookie):
    items = [{"product_id": cookie.id, "quantity": 2}]
    finalize_sale(till_session.id, items, "cash")
    finalize_sale(till_session.id, items, "cash")
    finalize_sale(till_session.id, [{"product_id": cookie.id, "quantity": 1}], "card")
    finalize_sale(till_session.id, items, "wallet_transfer", wallet_data())

    summary = session_service.get_session_summary(till_session.id)

    assert summary["sales_count"] == 4
    assert summary["total_cents"] == 1050
    assert summary["by_payment_method"]["cash"] == {"count": 2, "total_cents": 600}
    assert summary["by_payment_method"]["card"] == {"count": 1, "total_cents": 150}
    assert summary["by_payment_method"]["wallet_transfer"] == {"count": 1, "total_cents": 300}
    assert summary["is_closed"] is False


def test_summary_of_empty_session(db_session, till_session):
    summary = session_service.get_session_summary(till_session.id)

    assert summary["sales_count"] == 0
    assert summary["total_cents"] == 0
    assert summary["by_payment_method"] == {}
