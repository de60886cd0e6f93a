from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from accounts.auth import get_twitter_auth, is_admin_handle
from accounts.service import supabase_client

from . import service

bug_bounty_blueprint = Blueprint("bug_bounty", __name__, url_prefix="/api/bug-bounty")


def _client():
    return supabase_client(service.BugBountyServiceError)


def _current_handle():
    return (get_twitter_auth() or {}).get("twitterHandle")


@bug_bounty_blueprint.post("/submit")
def submit_report():
    try:
        report = service.submit_bug_report(
            _client(),
            _current_handle(),
            request.form,
            request.files.getlist("files"),
        )
    except service.BugBountyServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        current_app.logger.error("Error in bug bounty submission: %s", exc)
        return jsonify({"error": "Internal server error"}), 500

    current_app.logger.info("Bug report %s submitted by @%s", report.get("id"), report.get("twitter_handle"))
    return jsonify({"success": True, "bugReport": report})


@bug_bounty_blueprint.get("/list")
def list_reports():
    try:
        page = int(request.args.get("page") or 1)
        limit = int(request.args.get("limit") or 10)
    except ValueError:
        return jsonify({"error": "page and limit must be integers"}), 400

    try:
        result = service.list_bug_reports(
            _client(),
            page=page,
            limit=limit,
            status=request.args.get("status") or None,
            severity=request.args.get("severity") or None,
            only_for_handle=_current_handle(),
            user_only=request.args.get("userOnly") == "true",
        )
    except service.BugBountyServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        current_app.logger.error("Error in bug bounty list: %s", exc)
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(result)


@bug_bounty_blueprint.post("/award-points")
def award_points():
    handle = _current_handle()
    if not handle:
        return jsonify({"error": "Authentication required"}), 401
    if not is_admin_handle(handle):
        return jsonify({"error": "Unauthorized. Only admins can award points."}), 403

    payload = request.get_json(silent=True) or {}
    try:
        result = service.award_points(_client(), handle, payload)
    except service.BugBountyServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        current_app.logger.error("Error in award points endpoint: %s", exc)
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(result)


@bug_bounty_blueprint.get("/award-points")
def can_award_points():
    handle = _current_handle()
    if not handle:
        return jsonify({"canAwardPoints": False})
    return jsonify({"canAwardPoints": is_admin_handle(handle), "handle": handle})
