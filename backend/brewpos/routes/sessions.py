# Overview: Flask API routes for till sessions; parses input and returns JSON responses.

from flask import Blueprint, jsonify, current_app

from ..services import session_service
from ..services.session_service import SessionError


sessions_bp = Blueprint("sessions", __name__, url_prefix="/api/sessions")


def _session_error(e: SessionError):
    status = 404 if e.code == "session_not_found" else 409
    return jsonify({"error": str(e), "code": e.code, "details": e.details}), status


@sessions_bp.post("/open")
def open_session_route():
    """Open a session. 409 if one is already open."""
    try:
        session = session_service.open_session()
        return jsonify({"session": session.to_dict()}), 201
    except SessionError as e:
        return _session_error(e)
    except Exception:
        current_app.logger.exception("Failed to open session")
        return jsonify({"error": "Internal server error"}), 500


@sessions_bp.post("/<int:session_id>/close")
def close_session_route(session_id: int):
    try:
        session = session_service.close_session(session_id)
        return jsonify({"session": session.to_dict()}), 200
    except SessionError as e:
        return _session_error(e)
    except Exception:
        current_app.logger.exception("Failed to close session")
        return jsonify({"error": "Internal server error"}), 500


@sessions_bp.get("/current")
def current_session_route():
    session = session_service.get_current_session()
    return jsonify({"session": session.to_dict() if session else None}), 200


@sessions_bp.get("/<int:session_id>/summary")
def session_summary_route(session_id: int):
    try:
        return jsonify(session_service.get_session_summary(session_id)), 200
    except SessionError as e:
        return _session_error(e)
