# Overview: Service-layer operations for till sessions; open, close and per-session totals.

"""
Register Session Service

WHY: Sales are only accepted while a session (shift) is open. At most one
session is open at any time.

SINGLE OPEN SESSION:
The application check below gives a friendly error; the partial unique index
uq_sessions_single_open is what makes two concurrent opens fail
deterministically.
"""

import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import RegisterSession, Sale, SESSION_OPEN, SESSION_CLOSED
from brewpos.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry


logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Raised for session lifecycle errors."""
    def __init__(self, message: str, code: str = "session_error", details: dict | None = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}


class SessionAlreadyOpen(SessionError):
    def __init__(self, session_id: int | None = None):
        super().__init__(
            "A session is already open",
            code="session_already_open",
            details={"session_id": session_id} if session_id else {},
        )


def get_current_session() -> RegisterSession | None:
    return db.session.query(RegisterSession).filter_by(status=SESSION_OPEN).first()


def open_session() -> RegisterSession:
    """
    Open a new session.

    Raises:
        SessionAlreadyOpen: If another session is open, including one opened
            concurrently between our check and our insert
    """
    existing = get_current_session()
    if existing is not None:
        raise SessionAlreadyOpen(existing.id)

    session = RegisterSession(status=SESSION_OPEN, opened_at=utcnow())
    db.session.add(session)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise SessionAlreadyOpen(getattr(get_current_session(), "id", None))

    logger.info("Session %s opened", session.id)
    return session


def close_session(session_id: int) -> RegisterSession:
    """Close an open session. Closed sessions are never reopened."""
    def _op():
        session = lock_for_update(
            db.session.query(RegisterSession).filter_by(id=session_id)
        ).first()
        if session is None:
            raise SessionError("Session not found", code="session_not_found",
                               details={"session_id": session_id})
        if session.status == SESSION_CLOSED:
            raise SessionError("Session already closed", code="session_closed",
                               details={"session_id": session_id})

        session.status = SESSION_CLOSED
        session.closed_at = utcnow()
        db.session.commit()
        logger.info("Session %s closed", session.id)
        return session

    return run_with_retry(_op)


def get_session_summary(session_id: int) -> dict:
    """
    Session details with sale count and totals per payment method.
    """
    session = db.session.query(RegisterSession).filter_by(id=session_id).first()
    if session is None:
        raise SessionError("Session not found", code="session_not_found",
                           details={"session_id": session_id})

    rows = db.session.query(
        Sale.payment_method,
        func.count(Sale.id).label("count"),
        func.coalesce(func.sum(Sale.total_amount_cents), 0).label("total"),
    ).filter(Sale.session_id == session_id).group_by(Sale.payment_method).all()

    by_method = {
        row.payment_method: {"count": int(row.count), "total_cents": int(row.total)}
        for row in rows
    }

    return {
        "session": session.to_dict(),
        "sales_count": sum(m["count"] for m in by_method.values()),
        "total_cents": sum(m["total_cents"] for m in by_method.values()),
        "by_payment_method": by_method,
        "is_closed": session.status == SESSION_CLOSED,
    }
