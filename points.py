"""Point rules shared by recovery jobs, OG enforcement, and the leaderboard."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

BASE_POINTS = 1000
OG_BONUS = 10000
MIN_TOTAL = BASE_POINTS
OG_MIN_TOTAL = BASE_POINTS + OG_BONUS

POINTS_PER_SCORE_UNIT = 25
MAX_ANSWER_SCORE = 10
MAX_QUESTIONS_PER_SESSION = 5
MAX_QUESTION_POINTS = 2 * MAX_ANSWER_SCORE * POINTS_PER_SCORE_UNIT
MAX_SESSION_POINTS = MAX_QUESTIONS_PER_SESSION * MAX_QUESTION_POINTS

MAX_SESSIONS_PER_24H = 3
SESSION_WINDOW = timedelta(hours=24)


def calculate_minimum_points(is_og: bool) -> int:
    """Minimum total any user should hold."""
    return OG_MIN_TOTAL if is_og else MIN_TOTAL


def calculate_base_points(is_og: bool) -> int:
    """Base points excluding sessions, OG bonus included when applicable."""
    return BASE_POINTS + (OG_BONUS if is_og else 0)


def validate_minimum_points(points: int, is_og: bool) -> bool:
    return points >= calculate_minimum_points(is_og)


def calculate_question_points(quality: Any, sincerity: Any) -> int:
    """Score one answer: (quality + sincerity) * 25, each score clamped to 0..10."""
    return (_clamp_score(quality) + _clamp_score(sincerity)) * POINTS_PER_SCORE_UNIT


def calculate_session_points(answers: Iterable[dict]) -> int:
    """Total for one session; only the first five answers count."""
    total = 0
    for index, answer in enumerate(answers):
        if index >= MAX_QUESTIONS_PER_SESSION:
            break
        total += calculate_question_points(answer.get("quality"), answer.get("sincerity"))
    return min(total, MAX_SESSION_POINTS)


def session_points_earned(session: dict) -> int:
    """Read the earned points of a session row or a local session-history entry."""
    for field in ("points_earned", "pointsEarned"):
        value = session.get(field)
        if value is None:
            continue
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            return 0
    return 0


def sum_session_points(sessions: Iterable[dict]) -> int:
    return sum(session_points_earned(session) for session in sessions)


def calculate_expected_total(is_og: bool, sessions: Iterable[dict]) -> int:
    """base + OG bonus (if applicable) + recorded session points."""
    return calculate_base_points(is_og) + sum_session_points(sessions)


@dataclass
class SessionLimitStatus:
    """Rolling 24-hour session allowance for a user."""

    can_start_session: bool
    sessions_used: int
    sessions_remaining: int
    next_available_time: Optional[str]
    oldest_session_time: Optional[str]

    def to_dict(self) -> dict:
        return asdict(self)


def check_session_limit(
    session_times: Iterable[datetime],
    reference: Optional[datetime] = None,
) -> SessionLimitStatus:
    now = reference or datetime.now(timezone.utc)
    window_start = now - SESSION_WINDOW
    recent = sorted(ts for ts in session_times if ts > window_start)

    used = len(recent)
    can_start = used < MAX_SESSIONS_PER_24H
    next_available = None
    oldest = None
    if not can_start and recent:
        oldest = recent[0]
        next_available = oldest + SESSION_WINDOW

    return SessionLimitStatus(
        can_start_session=can_start,
        sessions_used=used,
        sessions_remaining=max(0, MAX_SESSIONS_PER_24H - used),
        next_available_time=next_available.isoformat() if next_available else None,
        oldest_session_time=oldest.isoformat() if oldest else None,
    )


def _clamp_score(raw: Any) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return 0
    return max(0, min(value, MAX_ANSWER_SCORE))
