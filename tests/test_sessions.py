from datetime import datetime, timedelta, timezone

import pytest

from sessions import service
from tests.conftest import seed_sessions, seed_user

ANSWERS = [
    {"questionId": "q1", "answer": "<b>I remember</b> the rain", "quality": 8, "sincerity": 8},
    {"questionId": "q2", "answer": "Nothing else", "quality": 10, "sincerity": 10},
]


def _recent(fake, user_id, *hours, questions=5):
    now = datetime.now(timezone.utc)
    fake.seed(
        "sessions",
        *[
            {
                "user_id": user_id,
                "is_complete": True,
                "points_earned": 100,
                "questions_answered": questions,
                "completed_at": (now - timedelta(hours=h)).isoformat(),
            }
            for h in hours
        ],
    )


def test_completion_scores_answers_and_updates_profile(client, login, fake) -> None:
    seed_user(fake, "nova", points=1000)
    login("nova")

    resp = client.post("/api/sessions/complete", json={"answers": ANSWERS, "humanScore": 80})

    assert resp.status_code == 200
    body = resp.get_json()
    assert (body["pointsEarned"], body["totalPoints"]) == (900, 1900)
    assert body["sessionLimit"]["sessions_used"] == 1
    [session] = fake.rows("sessions")
    assert (session["is_complete"], session["questions_answered"], session["points_earned"]) == (True, 2, 900)
    assert [answer["points"] for answer in session["answers"]] == [400, 500]
    assert session["answers"][0]["answer"] == "I remember the rain"
    profile = fake.rows("user_profiles")[0]
    assert (profile["points"], profile["human_score"], profile["total_questions_answered"]) == (1900, 80, 2)


def test_human_score_is_weighted_by_questions(app, fake) -> None:
    seed_user(fake, "nova")
    fake.tables["user_profiles"][0].update({"human_score": 50, "total_questions_answered": 3})

    result = service.complete_session(fake, "nova", {"answers": ANSWERS, "humanScore": 100})

    assert result["humanScore"] == 70
    assert result["totalQuestionsAnswered"] == 5


def test_og_user_keeps_the_og_base(app, fake) -> None:
    seed_user(fake, "ogfriend", points=11000, is_og=True)

    result = service.complete_session(fake, "ogfriend", {"answers": ANSWERS[:1]})

    assert result["totalPoints"] == 11400


def test_completion_requires_login_and_answers(client, login, fake) -> None:
    seed_user(fake, "nova")

    assert client.post("/api/sessions/complete", json={"answers": ANSWERS}).status_code == 401

    login("nova")
    missing = client.post("/api/sessions/complete", json={"answers": []})
    assert missing.status_code == 400
    assert missing.get_json() == {"error": "At least one answer is required"}
    assert client.post("/api/sessions/complete", json={"answers": ["text"]}).status_code == 400
    assert fake.rows("sessions") == []


def test_fourth_session_in_a_day_is_refused(client, login, fake) -> None:
    user, _ = seed_user(fake, "nova")
    _recent(fake, user["id"], 1, 2, 3)
    login("nova")

    resp = client.post("/api/sessions/complete", json={"answers": ANSWERS})

    assert resp.status_code == 429
    assert resp.get_json()["sessionLimit"]["can_start_session"] is False
    assert len(fake.rows("sessions")) == 3
    assert fake.rows("user_profiles")[0]["points"] == 1000


def test_repeat_submission_within_minutes_is_refused(app, fake) -> None:
    user, _ = seed_user(fake, "nova")
    now = datetime.now(timezone.utc)
    fake.seed(
        "sessions",
        {
            "user_id": user["id"],
            "is_complete": True,
            "questions_answered": 2,
            "completed_at": (now - timedelta(minutes=1)).isoformat(),
        },
    )

    with pytest.raises(service.SessionServiceError) as excinfo:
        service.complete_session(fake, "nova", {"answers": ANSWERS}, now=now)
    assert excinfo.value.status_code == 409

    later = service.complete_session(fake, "nova", {"answers": ANSWERS}, now=now + timedelta(minutes=10))
    assert later["success"] is True


def test_failed_profile_update_reports_partial_save(app, fake) -> None:
    seed_user(fake, "nova")
    fake.fail("user_profiles", "update")

    with pytest.raises(service.SessionServiceError) as excinfo:
        service.complete_session(fake, "nova", {"answers": ANSWERS})
    assert excinfo.value.status_code == 500
    assert excinfo.value.payload == {"error": "Session saved but profile update failed"}
    assert len(fake.rows("sessions")) == 1


def test_profile_load_reports_expected_points(client, login, fake) -> None:
    user, _ = seed_user(fake, "nova", points=1500)
    seed_sessions(fake, user["id"], 200, 300)
    seed_sessions(fake, user["id"], 999, complete=False)
    login("nova")

    body = client.get("/api/profile").get_json()

    assert body["user"]["twitter_handle"] == "nova"
    assert body["sessionPoints"] == 500
    assert body["expectedPoints"] == 1500
    assert body["pointsValid"] is True
    assert body["ogPointsFixed"] is False
    assert len(body["recentSessions"]) == 2


def test_profile_load_enforces_og_points_first(client, fake) -> None:
    seed_user(fake, "ogfriend", points=1000)

    body = client.get("/api/profile?twitter_handle=@ogfriend").get_json()

    assert body["ogPointsFixed"] is True
    assert body["pointsValid"] is True
    assert body["profile"]["points"] == 11000
    assert body["expectedPoints"] == 11000


def test_profile_load_errors(client, fake) -> None:
    assert client.get("/api/profile").status_code == 400
    assert client.get("/api/profile?twitter_handle=ghost").status_code == 404
