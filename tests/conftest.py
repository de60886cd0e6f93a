from __future__ import annotations

from pathlib import Path

import pytest

from app import create_app
from tests.fakes import FakeSupabase

ADMIN_HANDLE = "evaadmin"


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ("SUPABASE_URL", "SUPABASE_KEY", "EVA_OG_HANDLES", "EVA_ADMIN_HANDLES", "DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)
    og_path = tmp_path / "og_handles.json"
    og_path.write_text('["ogfriend"]', encoding="utf-8")
    monkeypatch.setenv("EVA_OG_HANDLES_PATH", str(og_path))


@pytest.fixture
def fake() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def app(fake: FakeSupabase, tmp_path: Path):
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'eva.db'}",
            "SUPABASE_CLIENT": fake,
            "MIRROR_SYNC_ENABLED": False,
            "EVA_ADMIN_HANDLES": [ADMIN_HANDLE],
            "EVA_OG_HANDLES": [],
            "EVA_OG_HANDLES_PATH": str(tmp_path / "og_handles.json"),
            "TWITTER_CLIENT_ID": "client-id",
            "TWITTER_CLIENT_SECRET": "client-secret",
            "TWITTER_REDIRECT_URI": "http://localhost/api/auth/twitter/callback",
        }
    )
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    def _login(handle: str, user_id=None) -> None:
        with client.session_transaction() as sess:
            sess["twitter_auth"] = {"twitterHandle": handle, "twitterName": handle, "userId": user_id}

    return _login


@pytest.fixture
def admin_client(client, login):
    login(ADMIN_HANDLE)
    return client


def seed_user(fake: FakeSupabase, handle: str, *, points: int = 1000, is_og: bool = False, rewarded=None, history=None):
    user = fake.seed("users", {"twitter_handle": handle, "twitter_name": handle.title(), "is_og": is_og})[0]
    profile = fake.seed(
        "user_profiles",
        {
            "user_id": user["id"],
            "points": points,
            "is_og_rewarded": is_og if rewarded is None else rewarded,
            "session_history": history or [],
        },
    )[0]
    return user, profile


def seed_sessions(fake: FakeSupabase, user_id, *points_earned, complete: bool = True):
    return fake.seed(
        "sessions",
        *[
            {"user_id": user_id, "points_earned": value, "questions_answered": 5, "is_complete": complete}
            for value in points_earned
        ],
    )
