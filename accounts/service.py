"""User lookups, OG verification, and OG point enforcement against Supabase."""

from __future__ import annotations

import json
import os
import unicodedata
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from dateutil import parser as date_parser
from flask import current_app, has_app_context

from points import calculate_base_points, check_session_limit, sum_session_points

DEFAULT_OG_BASENAME = "og_handles.json"
_OG_CACHE: Dict[str, object] = {"data": None, "mtime": None, "path": None}


class AccountServiceError(Exception):
    """Raised when an account operation fails."""

    def __init__(self, message: str, status_code: int = 400, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {"error": message}


def supabase_client(error_cls=AccountServiceError):
    """Return the configured Supabase client or raise a 503 service error."""
    client = current_app.config.get("SUPABASE_CLIENT") if has_app_context() else None
    if not client:
        raise error_cls("Supabase unavailable", status_code=503, payload={"error": "supabase_unavailable"})
    return client


def normalize_handle(value: Optional[str]) -> str:
    cleaned = (value or "").strip()
    if cleaned.startswith("@"):
        cleaned = cleaned[1:]
    return cleaned


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ====== OG verification ======

def load_og_handles(force_refresh: bool = False) -> FrozenSet[str]:
    """Lower-cased OG handles from the JSON list plus the EVA_OG_HANDLES config."""
    handles = set(_configured_og_handles())

    config_path = _resolve_og_path()
    if config_path is None:
        return frozenset(handles)

    mtime = config_path.stat().st_mtime
    cached = _OG_CACHE.get("data")
    if not force_refresh and cached is not None and _OG_CACHE.get("mtime") == mtime and _OG_CACHE.get("path") == config_path:
        return frozenset(handles | cached)  # type: ignore[operator]

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, ValueError) as exc:
        _log_warning("reading OG handle list", exc)
        return frozenset(handles)

    from_file = frozenset(
        normalize_handle(str(entry)).lower()
        for entry in (payload if isinstance(payload, list) else [])
        if normalize_handle(str(entry))
    )
    _OG_CACHE["data"] = from_file
    _OG_CACHE["mtime"] = mtime
    _OG_CACHE["path"] = config_path
    return frozenset(handles | from_file)


def is_og_handle(twitter_handle: Optional[str]) -> bool:
    handle = normalize_handle(twitter_handle).lower()
    return bool(handle) and handle in load_og_handles()


def _configured_og_handles() -> List[str]:
    if not has_app_context():
        return []
    raw = current_app.config.get("EVA_OG_HANDLES") or []
    if isinstance(raw, str):
        raw = raw.split(",")
    return [normalize_handle(value).lower() for value in raw if normalize_handle(value)]


def _resolve_og_path() -> Optional[Path]:
    candidates: List[Path] = []
    override = None
    if has_app_context():
        override = current_app.config.get("EVA_OG_HANDLES_PATH")
    override = override or os.environ.get("EVA_OG_HANDLES_PATH")
    if override:
        candidates.append(Path(override).expanduser())
    candidates.append(Path(__file__).resolve().parent / "config" / DEFAULT_OG_BASENAME)

    for path in candidates:
        if path.exists():
            return path
    return None


# ====== Lookups ======

def find_user(client, twitter_handle: str) -> Optional[Dict[str, Any]]:
    handle = normalize_handle(twitter_handle)
    if not handle:
        return None
    resp = client.table("users").select("*").eq("twitter_handle", handle).limit(1).execute()
    rows = resp.data or []
    return rows[0] if rows else None


def find_profile(client, user_id: Any) -> Optional[Dict[str, Any]]:
    resp = client.table("user_profiles").select("*").eq("user_id", user_id).limit(1).execute()
    rows = resp.data or []
    return rows[0] if rows else None


def find_user_with_profile(client, twitter_handle: str) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    user = find_user(client, twitter_handle)
    if not user:
        return None, None
    return user, find_profile(client, user["id"])


def fetch_completed_sessions(client, user_id: Any, columns: str = "*") -> List[Dict[str, Any]]:
    resp = (
        client.table("sessions")
        .select(columns)
        .eq("user_id", user_id)
        .eq("is_complete", True)
        .execute()
    )
    return resp.data or []


# ====== OG enforcement ======

def enforce_og_points(client, twitter_handle: str) -> Dict[str, Any]:
    """Make sure an OG user carries at least base + OG bonus + session points.

    Returns a summary dict; never raises for a missing user.
    """
    handle = normalize_handle(twitter_handle)
    user_is_og = is_og_handle(handle)
    user, profile = find_user_with_profile(client, handle)
    if not user:
        return {
            "success": False,
            "isOG": user_is_og,
            "pointsFixed": False,
            "message": "User not found in database",
        }

    points_fixed = False
    if user_is_og and not user.get("is_og"):
        client.table("users").update({"is_og": True}).eq("id", user["id"]).execute()
        points_fixed = True

    if user_is_og:
        if not profile:
            client.table("user_profiles").insert(
                {
                    "user_id": user["id"],
                    "points": calculate_base_points(True),
                    "is_og_rewarded": True,
                }
            ).execute()
            points_fixed = True
        else:
            session_points = sum_session_points(profile.get("session_history") or [])
            minimum_expected = calculate_base_points(True) + session_points
            if int(profile.get("points") or 0) < minimum_expected or not profile.get("is_og_rewarded"):
                client.table("user_profiles").update(
                    {"points": max(minimum_expected, int(profile.get("points") or 0)), "is_og_rewarded": True}
                ).eq("user_id", user["id"]).execute()
                points_fixed = True

    return {
        "success": True,
        "isOG": user_is_og,
        "pointsFixed": points_fixed,
        "message": (
            f"OG points enforced for {handle}" if points_fixed else f"OG status verified for {handle}"
        ),
    }


def enforce_og_points_for_all_users(client) -> Dict[str, Any]:
    resp = client.table("users").select("twitter_handle").order("twitter_handle").execute()
    users = resp.data or []

    users_fixed = 0
    for row in users:
        result = enforce_og_points(client, row.get("twitter_handle") or "")
        if result.get("pointsFixed"):
            users_fixed += 1

    return {
        "success": True,
        "usersFixed": users_fixed,
        "message": f"Processed {len(users)} users, fixed {users_fixed} OG point issues",
    }


def create_or_update_user(client, twitter_handle: str, twitter_name: Optional[str] = None) -> Dict[str, Any]:
    """Upsert the Twitter user at login and make sure OG points are in place."""
    handle = normalize_handle(twitter_handle)
    existing = find_user(client, handle)
    if existing:
        enforcement = enforce_og_points(client, handle)
        user = find_user(client, handle) if enforcement["pointsFixed"] else existing
        return {"user": user, "isNew": False, "ogPointsAwarded": enforcement["pointsFixed"]}

    user_is_og = is_og_handle(handle)
    clean_name = _clean_display_name(twitter_name) or handle
    resp = client.table("users").insert(
        {
            "twitter_handle": handle,
            "twitter_name": clean_name,
            "is_og": user_is_og,
        }
    ).execute()
    rows = resp.data or []
    if not rows:
        raise AccountServiceError("User insert returned no row", status_code=500)
    new_user = rows[0]

    timestamp = now_iso()
    client.table("user_profiles").insert(
        {
            "user_id": new_user["id"],
            "points": calculate_base_points(user_is_og),
            "is_og_rewarded": user_is_og,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
    ).execute()
    return {"user": new_user, "isNew": True, "ogPointsAwarded": user_is_og}


def reset_question_count(client, twitter_handle: str) -> Dict[str, Any]:
    """Recount total_questions_answered from completed sessions."""
    user = find_user(client, twitter_handle)
    if not user:
        raise AccountServiceError("User not found", status_code=404)

    try:
        sessions = fetch_completed_sessions(client, user["id"], "questions_answered")
    except Exception as exc:
        current_app.logger.error("Error fetching sessions for %s: %s", twitter_handle, exc)
        raise AccountServiceError("Failed to fetch sessions", status_code=500) from exc

    actual_questions = sum(int(row.get("questions_answered") or 0) for row in sessions)
    try:
        client.table("user_profiles").update({"total_questions_answered": actual_questions}).eq(
            "user_id", user["id"]
        ).execute()
    except Exception as exc:
        current_app.logger.error("Error updating profile for %s: %s", twitter_handle, exc)
        raise AccountServiceError("Failed to update profile", status_code=500) from exc

    return {"success": True, "actualQuestions": actual_questions, "sessionsCount": len(sessions)}


def session_limit_for(client, twitter_handle: str) -> Dict[str, Any]:
    user = find_user(client, twitter_handle)
    if not user:
        raise AccountServiceError("User not found", status_code=404)
    sessions = fetch_completed_sessions(client, user["id"], "created_at, completed_at")
    times = [
        ts
        for ts in (parse_datetime(row.get("completed_at") or row.get("created_at")) for row in sessions)
        if ts is not None
    ]
    return check_session_limit(times).to_dict()


def _clean_display_name(value: Optional[str]) -> str:
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).strip()


def parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = date_parser.isoparse(str(value))
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _log_warning(action: str, exc: Exception) -> None:
    if not has_app_context():
        return
    current_app.logger.warning("Accounts error while %s: %s", action, exc)
