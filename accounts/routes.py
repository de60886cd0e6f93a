"""Account maintenance endpoints: question recount, OG enforcement, session limits."""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from . import service
from .auth import admin_required, get_twitter_auth

accounts_api_blueprint = Blueprint("accounts_api", __name__, url_prefix="/api")


@accounts_api_blueprint.post("/reset-question-count")
def reset_question_count():
    payload = request.get_json(silent=True) or {}
    twitter_handle = service.normalize_handle(payload.get("twitterHandle"))
    if not twitter_handle:
        return jsonify({"error": "Twitter handle required"}), 400

    try:
        client = service.supabase_client()
        result = service.reset_question_count(client, twitter_handle)
    except service.AccountServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        current_app.logger.error("Reset question count error: %s", exc)
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(result)


@accounts_api_blueprint.post("/og-enforcement")
@admin_required
def og_enforcement():
    payload = request.get_json(silent=True) or {}
    twitter_handle = service.normalize_handle(payload.get("twitterHandle"))

    try:
        client = service.supabase_client()
        if twitter_handle:
            result = service.enforce_og_points(client, twitter_handle)
        else:
            result = service.enforce_og_points_for_all_users(client)
    except service.AccountServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        current_app.logger.error("OG enforcement failed: %s", exc)
        return jsonify({"error": "OG enforcement failed"}), 500

    status = 200 if result.get("success") else 404
    return jsonify(result), status


@accounts_api_blueprint.get("/session-limit")
def session_limit():
    twitter_handle = service.normalize_handle(request.args.get("twitter_handle"))
    if not twitter_handle:
        auth = get_twitter_auth() or {}
        twitter_handle = service.normalize_handle(auth.get("twitterHandle"))
    if not twitter_handle:
        return jsonify({"error": "Twitter handle required"}), 400

    try:
        client = service.supabase_client()
        result = service.session_limit_for(client, twitter_handle)
    except service.AccountServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        current_app.logger.error("Session limit lookup failed for %s: %s", twitter_handle, exc)
        return jsonify({"error": "Failed to check session limit"}), 500

    return jsonify(result)
