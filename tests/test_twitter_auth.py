import base64
import json
from unittest import mock
from urllib.parse import parse_qs, urlparse

from accounts.auth import generate_code_challenge, safe_return_path


def _start(client, return_to="/bug-bounty"):
    resp = client.get(f"/api/auth/twitter?returnTo={return_to}")
    with client.session_transaction() as sess:
        pending = dict(sess["twitter_oauth"])
    return resp, pending


def _response(ok=True, status_code=200, payload=None, text=""):
    return mock.Mock(ok=ok, status_code=status_code, text=text, json=mock.Mock(return_value=payload or {}))


def test_start_redirects_to_twitter_with_pkce(client) -> None:
    resp, pending = _start(client)

    assert resp.status_code == 302
    location = urlparse(resp.headers["Location"])
    assert location.netloc == "twitter.com"
    params = parse_qs(location.query)
    assert params["state"] == [pending["state"]]
    assert params["code_challenge"] == [generate_code_challenge(pending["code_verifier"])]
    assert params["code_challenge_method"] == ["S256"]
    assert pending["return_to"] == "/bug-bounty"


def test_start_without_credentials_reports_config_error(app, client) -> None:
    app.config["TWITTER_CLIENT_SECRET"] = None

    resp = client.get("/api/auth/twitter?returnTo=/profile")

    assert resp.headers["Location"].endswith("/profile?error=config_error")


def test_return_paths_are_whitelisted() -> None:
    assert safe_return_path("/bug-bounty") == "/bug-bounty"
    assert safe_return_path("https://evil.example") == "/mirror"
    assert safe_return_path("//evil.example") == "/mirror"
    assert safe_return_path("/admin") == "/mirror"
    assert safe_return_path(None) == "/mirror"
    assert safe_return_path("/") == "/"
    assert safe_return_path("/mirror/journal") == "/mirror/journal"
    assert safe_return_path("/profile?tab=points") == "/profile?tab=points"
    assert safe_return_path("/mirrorfake") == "/mirror"
    assert safe_return_path("/bug-bounty-admin") == "/mirror"


def test_start_falls_back_for_paths_outside_the_whitelist(client) -> None:
    _, pending = _start(client, return_to="/admin")

    assert pending["return_to"] == "/mirror"


def test_callback_rejects_unknown_state(client) -> None:
    _start(client)

    resp = client.get("/api/auth/twitter/callback?code=abc&state=forged")

    assert "error=invalid_state" in resp.headers["Location"]
    with client.session_transaction() as sess:
        assert "twitter_oauth" not in sess


def test_callback_requires_code_and_state(client) -> None:
    resp = client.get("/api/auth/twitter/callback")
    assert resp.headers["Location"].endswith("/mirror?error=missing_params")


def test_callback_surfaces_token_failure(client) -> None:
    _, pending = _start(client)

    with mock.patch("accounts.auth.requests.post", return_value=_response(ok=False, status_code=400, text="bad")):
        resp = client.get(f"/api/auth/twitter/callback?code=abc&state={pending['state']}")

    assert "error=token_failed" in resp.headers["Location"]


def test_successful_callback_creates_user_and_session(client, fake) -> None:
    _, pending = _start(client)
    token = _response(payload={"access_token": "tok"})
    me = _response(payload={"data": {"id": "42", "username": "ogfriend", "name": "OG Friend"}})

    with mock.patch("accounts.auth.requests.post", return_value=token) as post, mock.patch(
        "accounts.auth.requests.get", return_value=me
    ) as get:
        resp = client.get(f"/api/auth/twitter/callback?code=abc&state={pending['state']}")

    assert post.call_args.kwargs["data"]["code_verifier"] == pending["code_verifier"]
    assert get.call_args.kwargs["headers"] == {"Authorization": "Bearer tok"}

    location = urlparse(resp.headers["Location"])
    assert location.path == "/bug-bounty"
    query = parse_qs(location.query)
    assert query["auth"] == ["success"]
    encoded = query["data"][0]
    auth = json.loads(base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)))
    assert auth["twitterHandle"] == "ogfriend"
    assert auth["isOG"] is True
    assert auth["ogPointsAwarded"] is True
    assert auth["userId"] == fake.rows("users")[0]["id"]
    assert any(cookie.startswith("twitter_auth_client=") for cookie in resp.headers.getlist("Set-Cookie"))

    assert fake.rows("user_profiles")[0]["points"] == 11000

    session_body = client.get("/api/auth/twitter/session").get_json()
    assert session_body["authenticated"] is True
    assert session_body["isAdmin"] is False


def test_database_failure_does_not_block_login(client, fake) -> None:
    fake.fail("users", "select")
    _, pending = _start(client)
    token = _response(payload={"access_token": "tok"})
    me = _response(payload={"data": {"id": "7", "username": "nova"}})

    with mock.patch("accounts.auth.requests.post", return_value=token), mock.patch(
        "accounts.auth.requests.get", return_value=me
    ):
        resp = client.get(f"/api/auth/twitter/callback?code=abc&state={pending['state']}")

    assert "auth=success" in resp.headers["Location"]
    assert client.get("/api/auth/twitter/session").get_json()["auth"]["userId"] is None


def test_session_and_logout(client, login) -> None:
    assert client.get("/api/auth/twitter/session").status_code == 401

    login("evaadmin")
    assert client.get("/api/auth/twitter/session").get_json()["isAdmin"] is True

    assert client.post("/api/auth/twitter/logout").get_json() == {"success": True}
    assert client.get("/api/auth/twitter/session").status_code == 401


def test_debug_endpoint_reports_pkce_pair(client) -> None:
    body = client.get("/api/auth/twitter/debug").get_json()

    assert body["credentials"]["clientSecretExists"] is True
    assert body["pkce"]["codeChallenge"] == generate_code_challenge(body["pkce"]["codeVerifier"])
    assert body["urls"]["redirectUri"] == "http://localhost/api/auth/twitter/callback"
