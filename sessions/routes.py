"""Mirror session completion and profile endpoints."""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from accounts.auth import get_twitter_auth
from accounts.service import normalize_handle, supabase_client

from . import service

sessions_blueprint = Blueprint("sessions", __name__, url_prefix="/api")


def _current_handle():
    return normalize_handle((get_twitter_auth() or {}).get("twitterHandle"))


@sessions_blueprint.post("/sessions/complete")
def complete_session():
    payload = request.get_json(silent=True) or {}
    try:
        result = service.complete_session(
            supabase_client(service.SessionServiceError), _current_handle(), payload
        )
    except service.SessionServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        current_app.logger.error("Session completion error: %s", exc)
        return jsonify({"error": "Internal server error"}), 500
    return jsonify(result)


@sessions_blueprint.get("/profile")
def load_profile():
    handle = normalize_handle(request.args.get("twitter_handle")) or _current_handle()
    try:
        result = service.load_user_data(supabase_client(service.SessionServiceError), handle)
    except service.SessionServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        current_app.logger.error("Profile load failed for %s: %s", handle, exc)
        return jsonify({"error": "Failed to load profile"}), 500
    return jsonify(result)
