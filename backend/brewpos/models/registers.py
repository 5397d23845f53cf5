from __future__ import annotations

from ..extensions import db
from brewpos.time_utils import to_utc_z


SESSION_OPEN = "open"
SESSION_CLOSED = "closed"


class RegisterSession(db.Model):
    """
    Till shift. Sales may only be finalized while their session is open.

    LIFECYCLE:
    - open: Shift is active, can process sales
    - closed: Shift ended; never reopened

    SINGLE OPEN SESSION: enforced by the partial unique index on status, so two
    concurrent opens cannot both succeed regardless of application checks.
    """
    __tablename__ = "sessions"
    __table_args__ = (
        db.Index(
            "uq_sessions_single_open",
            "status",
            unique=True,
            sqlite_where=db.text("status = 'open'"),
            postgresql_where=db.text("status = 'open'"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    status = db.Column(db.String(16), nullable=False, default=SESSION_OPEN, index=True)

    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open(self) -> bool:
        return self.status == SESSION_OPEN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
        }
