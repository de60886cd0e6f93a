"""Public community JSON endpoints."""

from __future__ import annotations

import bleach
from flask import Blueprint, current_app, jsonify, request

from . import service

community_api_blueprint = Blueprint("community_api", __name__, url_prefix="/api")


@community_api_blueprint.get("/leaderboard")
def leaderboard():
    board = service.build_leaderboard(current_app.config.get("SUPABASE_CLIENT"))
    return jsonify({"leaderboard": board})


@community_api_blueprint.post("/maintenance-feedback")
def maintenance_feedback():
    payload = request.get_json(silent=True) or {}
    fields = service.feedback_fields(payload)
    if not fields:
        return jsonify({"error": "All fields are required"}), 400

    service.store_maintenance_feedback(
        current_app.config.get("SUPABASE_CLIENT"),
        fields["twitter"],
        fields["email"],
        bleach.clean(fields["message"], tags=[], attributes={}, strip=True),
    )
    return jsonify({"success": True})
