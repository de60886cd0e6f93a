"""Leaderboard aggregation and maintenance feedback storage."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List, Optional

from flask import current_app

from accounts.service import now_iso

LEADERBOARD_SIZE = 100
AVATAR_URL = "https://unavatar.io/twitter/{handle}"


def build_leaderboard(client, size: int = LEADERBOARD_SIZE) -> List[Dict[str, Any]]:
    """Top profiles by stored points plus completed session points.

    Any Supabase failure yields an empty board.
    """
    if not client:
        return []
    try:
        profiles = (
            client.table("user_profiles")
            .select("user_id, points, human_score, total_questions_answered, is_og_rewarded")
            .order("points", desc=True)
            .limit(size)
            .execute()
            .data
            or []
        )
        user_ids = [profile["user_id"] for profile in profiles]
        if not user_ids:
            return []
        users = (
            client.table("users")
            .select("id, twitter_handle, twitter_name, is_og")
            .in_("id", user_ids)
            .execute()
            .data
            or []
        )
        sessions = (
            client.table("sessions")
            .select("user_id, points_earned")
            .in_("user_id", user_ids)
            .eq("is_complete", True)
            .execute()
            .data
            or []
        )
    except Exception as exc:
        current_app.logger.error("Failed to fetch leaderboard: %s", exc)
        return []

    session_totals: Dict[Any, int] = defaultdict(int)
    for row in sessions:
        session_totals[row.get("user_id")] += int(row.get("points_earned") or 0)

    users_by_id = {user["id"]: user for user in users}
    board = []
    for profile in profiles:
        user = users_by_id.get(profile["user_id"])
        if not user:
            continue
        handle = user.get("twitter_handle")
        board.append(
            {
                "twitterHandle": handle,
                "twitterName": user.get("twitter_name") or handle,
                "profileImage": AVATAR_URL.format(handle=handle),
                "points": int(profile.get("points") or 0) + session_totals[user["id"]],
                "humanScore": profile.get("human_score") or 0,
                "isOG": bool(user.get("is_og")),
            }
        )

    board.sort(key=lambda entry: entry["points"], reverse=True)
    return [{"rank": index, **entry} for index, entry in enumerate(board, start=1)]


def store_maintenance_feedback(client, twitter: str, email: str, message: str) -> bool:
    """Best-effort insert; returns False when the row could not be stored."""
    if not client:
        current_app.logger.warning("Maintenance feedback from %s not stored: Supabase unavailable", twitter)
        return False
    try:
        client.table("maintenance_feedback").insert(
            {
                "twitter_handle": twitter,
                "email": email,
                "message": message,
                "created_at": now_iso(),
            }
        ).execute()
    except Exception as exc:
        current_app.logger.error("Error storing feedback: %s", exc)
        return False
    return True


def feedback_fields(payload: Dict[str, Any]) -> Optional[Dict[str, str]]:
    fields = {name: str(payload.get(name) or "").strip() for name in ("twitter", "email", "message")}
    if not all(fields.values()):
        return None
    return fields
