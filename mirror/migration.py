"""One-shot import of a device's locally cached profile into Supabase."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dateutil import parser as date_parser
from flask import current_app

from accounts.service import find_profile, find_user
from recovery.service import recover_user_points

from .local_store import STORAGE_KEYS, LocalStore


@dataclass
class MigrationResult:
    migrated: bool = False
    points_updated: bool = False
    onboarding_updated: bool = False
    sessions_imported: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "migrated": self.migrated,
            "pointsUpdated": self.points_updated,
            "onboardingUpdated": self.onboarding_updated,
            "sessionsImported": self.sessions_imported,
        }
        if self.error:
            payload["error"] = self.error
        return payload


def _session_datetime(raw: Any) -> Optional[datetime]:
    if raw in (None, ""):
        return None
    try:
        if isinstance(raw, (int, float)):
            dt = datetime.fromtimestamp(raw / 1000.0, tz=timezone.utc)
        else:
            dt = date_parser.isoparse(str(raw))
    except (TypeError, ValueError, OverflowError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def migrate_local_profile(client, store: LocalStore, twitter_handle: str) -> MigrationResult:
    """Copy onboarding flags and session history from `store`, then recalculate points.

    A session is imported only when the user has no row for that calendar
    date yet. Local keys are cleared once something was carried over.
    """
    result = MigrationResult()
    local_profile = store.read(STORAGE_KEYS["user_profile"])
    if not isinstance(local_profile, dict):
        current_app.logger.info("[Migration] No local profile found for @%s", twitter_handle)
        return result

    user = find_user(client, twitter_handle)
    if not user:
        result.error = "User not found"
        return result

    profile = find_profile(client, user["id"]) or {}
    profile_updates: Dict[str, Any] = {}
    if store.read(STORAGE_KEYS["onboarded"]) and not profile.get("has_onboarded"):
        profile_updates["has_onboarded"] = True
    soul_seed = store.read(STORAGE_KEYS["soul_seed"])
    if isinstance(soul_seed, dict) and soul_seed.get("alias") and soul_seed.get("vibe"):
        if not profile.get("has_soul_seed_onboarded"):
            profile_updates.update(
                {
                    "has_soul_seed_onboarded": True,
                    "soul_seed_alias": soul_seed["alias"],
                    "soul_seed_vibe": soul_seed["vibe"],
                }
            )
    if profile_updates and profile:
        client.table("user_profiles").update(profile_updates).eq("user_id", user["id"]).execute()
        result.onboarding_updated = True

    for session in local_profile.get("sessionHistory") or []:
        session_dt = _session_datetime(session.get("date"))
        if session_dt is None:
            continue
        session_date = session_dt.date().isoformat()
        existing = (
            client.table("sessions")
            .select("id")
            .eq("user_id", user["id"])
            .eq("session_date", session_date)
            .limit(1)
            .execute()
            .data
        )
        if existing:
            continue
        try:
            client.table("sessions").insert(
                {
                    "user_id": user["id"],
                    "session_date": session_date,
                    "is_complete": True,
                    "questions_answered": int(session.get("questionsAnswered") or 0),
                    "human_score": session.get("humanScore") or 0,
                    "points_earned": int(session.get("pointsEarned") or 0),
                    "created_at": session_dt.isoformat(),
                    "completed_at": session_dt.isoformat(),
                }
            ).execute()
        except Exception as exc:
            current_app.logger.warning("[Migration] Session %s not imported for @%s: %s", session_date, twitter_handle, exc)
            continue
        result.sessions_imported += 1

    recovery = recover_user_points(client, twitter_handle, dry_run=False)
    result.points_updated = bool(recovery and recovery.get("changed"))
    result.migrated = True

    if result.onboarding_updated or result.sessions_imported:
        for key in ("user_profile", "onboarded", "soul_seed"):
            store.remove(STORAGE_KEYS[key])

    current_app.logger.info("[Migration] Complete for @%s: %s", twitter_handle, result.to_dict())
    return result
