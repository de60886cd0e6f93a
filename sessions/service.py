"""Mirror session completion and profile loading against Supabase."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import bleach
from flask import current_app

from accounts.service import (
    enforce_og_points,
    fetch_completed_sessions,
    find_user_with_profile,
    is_og_handle,
    parse_datetime,
)
from points import (
    MAX_QUESTIONS_PER_SESSION,
    calculate_base_points,
    calculate_expected_total,
    calculate_question_points,
    calculate_session_points,
    check_session_limit,
    sum_session_points,
    validate_minimum_points,
)

DUPLICATE_WINDOW = timedelta(minutes=5)
MAX_HUMAN_SCORE = 100
RECENT_SESSIONS = 10


class SessionServiceError(Exception):
    """Raised when a session or profile operation fails."""

    def __init__(self, message: str, status_code: int = 400, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {"error": message}


@dataclass
class SessionSubmission:
    answers: List[Dict[str, Any]] = field(default_factory=list)
    human_score: int = 0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SessionSubmission":
        raw_answers = payload.get("answers")
        if not isinstance(raw_answers, list) or not raw_answers:
            raise SessionServiceError("At least one answer is required")

        answers = []
        for raw in raw_answers[:MAX_QUESTIONS_PER_SESSION]:
            if not isinstance(raw, dict):
                raise SessionServiceError("Each answer must be an object")
            answers.append(
                {
                    "questionId": raw.get("questionId"),
                    "answer": bleach.clean(str(raw.get("answer") or ""), tags=[], attributes={}, strip=True),
                    "quality": raw.get("quality"),
                    "sincerity": raw.get("sincerity"),
                }
            )

        try:
            human_score = int(payload.get("humanScore") or 0)
        except (TypeError, ValueError) as exc:
            raise SessionServiceError("humanScore must be an integer") from exc
        return cls(answers=answers, human_score=max(0, min(human_score, MAX_HUMAN_SCORE)))

    @property
    def questions_answered(self) -> int:
        return len(self.answers)

    @property
    def points_earned(self) -> int:
        return calculate_session_points(self.answers)


def _require_user(client, twitter_handle: Optional[str]):
    if not twitter_handle:
        raise SessionServiceError("Authentication required", status_code=401)
    user, profile = find_user_with_profile(client, twitter_handle)
    if not user:
        raise SessionServiceError("User not found", status_code=404)
    if not profile:
        raise SessionServiceError("User profile not found", status_code=404)
    return user, profile


def _completed_at(row: Dict[str, Any]) -> Optional[datetime]:
    return parse_datetime(row.get("completed_at") or row.get("created_at"))


def _is_duplicate(sessions: List[Dict[str, Any]], questions_answered: int, now: datetime) -> bool:
    for row in sessions:
        finished = _completed_at(row)
        if finished and finished > now - DUPLICATE_WINDOW and int(row.get("questions_answered") or 0) == questions_answered:
            return True
    return False


def averaged_human_score(profile: Dict[str, Any], human_score: int, questions_answered: int) -> int:
    """Question-weighted running average of the profile's human score."""
    previous_questions = int(profile.get("total_questions_answered") or 0)
    total_questions = previous_questions + questions_answered
    if not total_questions:
        return int(profile.get("human_score") or 0)
    weighted = int(profile.get("human_score") or 0) * previous_questions + human_score * questions_answered
    return round(weighted / total_questions)


def complete_session(
    client,
    twitter_handle: Optional[str],
    payload: Dict[str, Any],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Score a finished mirror session, store it, and fold it into the profile.

    Refuses a fourth session inside the rolling 24 hours (429) and a repeat
    of the same-sized session within five minutes (409).
    """
    user, profile = _require_user(client, twitter_handle)
    submission = SessionSubmission.from_payload(payload)
    now = now or datetime.now(timezone.utc)

    sessions = fetch_completed_sessions(client, user["id"], "created_at, completed_at, questions_answered")
    limit = check_session_limit((ts for ts in map(_completed_at, sessions) if ts), now)
    if not limit.can_start_session:
        raise SessionServiceError(
            "Session limit reached",
            status_code=429,
            payload={"error": "Session limit reached", "sessionLimit": limit.to_dict()},
        )
    if _is_duplicate(sessions, submission.questions_answered, now):
        raise SessionServiceError("Duplicate session", status_code=409)

    points_earned = submission.points_earned
    timestamp = now.isoformat()
    try:
        rows = (
            client.table("sessions")
            .insert(
                {
                    "user_id": user["id"],
                    "session_date": now.date().isoformat(),
                    "is_complete": True,
                    "questions_answered": submission.questions_answered,
                    "human_score": submission.human_score,
                    "points_earned": points_earned,
                    "answers": [
                        {**answer, "points": calculate_question_points(answer["quality"], answer["sincerity"])}
                        for answer in submission.answers
                    ],
                    "created_at": timestamp,
                    "completed_at": timestamp,
                }
            )
            .execute()
            .data
            or []
        )
    except Exception as exc:
        current_app.logger.error("Session insert failed for @%s: %s", user.get("twitter_handle"), exc)
        raise SessionServiceError("Failed to save session", status_code=500) from exc

    is_og = bool(user.get("is_og")) or is_og_handle(user.get("twitter_handle"))
    base = calculate_base_points(is_og)
    session_total = max(0, int(profile.get("points") or 0) - base) + points_earned
    updates = {
        "points": base + session_total,
        "human_score": averaged_human_score(profile, submission.human_score, submission.questions_answered),
        "total_questions_answered": int(profile.get("total_questions_answered") or 0) + submission.questions_answered,
        "updated_at": timestamp,
    }
    try:
        client.table("user_profiles").update(updates).eq("user_id", user["id"]).execute()
    except Exception as exc:
        current_app.logger.error("Profile update failed for @%s after session save: %s", user.get("twitter_handle"), exc)
        raise SessionServiceError("Session saved but profile update failed", status_code=500) from exc

    current_app.logger.info(
        "Session completed for @%s: +%s points (total %s)", user.get("twitter_handle"), points_earned, updates["points"]
    )
    return {
        "success": True,
        "session": rows[0] if rows else None,
        "pointsEarned": points_earned,
        "totalPoints": updates["points"],
        "humanScore": updates["human_score"],
        "totalQuestionsAnswered": updates["total_questions_answered"],
        "sessionLimit": check_session_limit(
            [ts for ts in map(_completed_at, sessions) if ts] + [now], now
        ).to_dict(),
    }


def load_user_data(client, twitter_handle: Optional[str]) -> Dict[str, Any]:
    """OG-enforced user + profile with recent sessions and point health."""
    if not twitter_handle:
        raise SessionServiceError("Twitter handle required")
    enforcement = enforce_og_points(client, twitter_handle)
    user, profile = _require_user(client, twitter_handle)

    sessions = (
        client.table("sessions")
        .select("*")
        .eq("user_id", user["id"])
        .eq("is_complete", True)
        .order("completed_at", desc=True)
        .execute()
        .data
        or []
    )
    is_og = bool(user.get("is_og"))
    points = int(profile.get("points") or 0)
    if not validate_minimum_points(points, is_og):
        current_app.logger.warning("@%s holds %s points, below the minimum", user.get("twitter_handle"), points)

    return {
        "user": user,
        "profile": profile,
        "recentSessions": sessions[:RECENT_SESSIONS],
        "sessionPoints": sum_session_points(sessions),
        "expectedPoints": calculate_expected_total(is_og, sessions),
        "pointsValid": validate_minimum_points(points, is_og),
        "ogPointsFixed": bool(enforcement.get("pointsFixed")),
        "sessionLimit": check_session_limit(ts for ts in map(_completed_at, sessions) if ts).to_dict(),
    }
