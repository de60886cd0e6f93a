"""Twitter OAuth 2.0 (PKCE) login plus the session helpers other blueprints rely on."""

from __future__ import annotations

import base64
import hashlib
import json
import secrets
import time
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import requests
from flask import Blueprint, current_app, jsonify, redirect, request, session

from . import service

TWITTER_AUTH_URL = "https://twitter.com/i/oauth2/authorize"
TWITTER_TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
TWITTER_USER_URL = "https://api.twitter.com/2/users/me?user.fields=profile_image_url,verified"
TWITTER_SCOPE = "tweet.read users.read offline.access"

ALLOWED_RETURN_PATHS = ("/mirror", "/bug-bounty", "/profile", "/")
DEFAULT_RETURN_PATH = "/mirror"
AUTH_SESSION_KEY = "twitter_auth"
OAUTH_SESSION_KEY = "twitter_oauth"
CLIENT_COOKIE_NAME = "twitter_auth_client"
AUTH_MAX_AGE = 60 * 60 * 24 * 30
OAUTH_STATE_TTL = 60 * 10


twitter_auth_bp = Blueprint("twitter_auth", __name__, url_prefix="/api/auth/twitter")


# ====== Session helpers ======

def get_twitter_auth() -> Optional[Dict[str, Any]]:
    auth = session.get(AUTH_SESSION_KEY)
    if not isinstance(auth, dict) or not auth.get("twitterHandle"):
        return None
    return auth


def admin_handles() -> List[str]:
    raw = current_app.config.get("EVA_ADMIN_HANDLES") or []
    if isinstance(raw, str):
        raw = raw.split(",")
    return [service.normalize_handle(value).lower() for value in raw if service.normalize_handle(value)]


def is_admin_handle(twitter_handle: Optional[str]) -> bool:
    handle = service.normalize_handle(twitter_handle).lower()
    return bool(handle) and handle in admin_handles()


def admin_required(f):
    """JSON guard: 401 without a Twitter session, 403 for non-admin handles."""

    @wraps(f)
    def wrapper(*args, **kwargs):
        auth = get_twitter_auth()
        if not auth:
            return jsonify({"error": "Authentication required"}), 401
        if not is_admin_handle(auth.get("twitterHandle")):
            current_app.logger.warning("Admin endpoint %s refused for @%s", request.path, auth.get("twitterHandle"))
            return jsonify({"error": "Admin access required"}), 403
        return f(*args, **kwargs)

    return wrapper


def safe_return_path(value: Optional[str]) -> str:
    candidate = (value or "").strip() or DEFAULT_RETURN_PATH
    if not candidate.startswith("/") or candidate.startswith("//"):
        return DEFAULT_RETURN_PATH
    for path in ALLOWED_RETURN_PATHS:
        if path == "/":
            if candidate == "/" or candidate.startswith("/?"):
                return candidate
        elif candidate == path or candidate.startswith(path + "/") or candidate.startswith(path + "?"):
            return candidate
    return DEFAULT_RETURN_PATH


def _with_query(path: str, **params: str) -> str:
    separator = "&" if "?" in path else "?"
    return f"{path}{separator}{urlencode(params, quote_via=quote)}"


# ====== PKCE ======

def _base64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    return _base64url(secrets.token_bytes(32))


def generate_code_challenge(verifier: str) -> str:
    return _base64url(hashlib.sha256(verifier.encode("ascii")).digest())


def _oauth_settings() -> Dict[str, Optional[str]]:
    config = current_app.config
    redirect_uri = config.get("TWITTER_REDIRECT_URI") or request.host_url.rstrip("/") + "/api/auth/twitter/callback"
    return {
        "client_id": config.get("TWITTER_CLIENT_ID"),
        "client_secret": config.get("TWITTER_CLIENT_SECRET"),
        "redirect_uri": redirect_uri,
    }


def _authorize_params(client_id: str, redirect_uri: str, state: str, challenge: str) -> Dict[str, str]:
    return {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": TWITTER_SCOPE,
        "state": state,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }


# ====== Routes ======

@twitter_auth_bp.get("")
def start_login():
    return_to = safe_return_path(request.args.get("returnTo"))
    settings = _oauth_settings()
    if not settings["client_id"] or not settings["client_secret"]:
        current_app.logger.error(
            "Missing Twitter OAuth credentials (client id set: %s, secret set: %s)",
            bool(settings["client_id"]),
            bool(settings["client_secret"]),
        )
        return redirect(_with_query(return_to, error="config_error"))

    verifier = generate_code_verifier()
    state = secrets.token_urlsafe(16)
    params = _authorize_params(settings["client_id"], settings["redirect_uri"], state, generate_code_challenge(verifier))

    session.pop(AUTH_SESSION_KEY, None)
    session[OAUTH_SESSION_KEY] = {
        "state": state,
        "code_verifier": verifier,
        "return_to": return_to,
        "issued_at": int(time.time()),
    }

    response = redirect(f"{TWITTER_AUTH_URL}?{urlencode(params)}")
    response.delete_cookie(CLIENT_COOKIE_NAME, path="/")
    return response


@twitter_auth_bp.get("/callback")
def oauth_callback():
    pending = session.pop(OAUTH_SESSION_KEY, None) or {}
    return_to = safe_return_path(pending.get("return_to"))

    error = request.args.get("error")
    if error:
        details = request.args.get("error_description") or "No description"
        current_app.logger.error("Twitter OAuth error: %s (%s)", error, details)
        return redirect(_with_query(return_to, error=error, details=details))

    code = request.args.get("code")
    state = request.args.get("state")
    if not code or not state:
        return redirect(_with_query(return_to, error="missing_params"))

    expired = int(time.time()) - int(pending.get("issued_at") or 0) > OAUTH_STATE_TTL
    if not pending.get("state") or pending.get("state") != state or not pending.get("code_verifier") or expired:
        current_app.logger.error("OAuth state mismatch or missing code verifier")
        return redirect(_with_query(return_to, error="invalid_state"))

    settings = _oauth_settings()
    try:
        token_resp = requests.post(
            TWITTER_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": settings["redirect_uri"],
                "code_verifier": pending["code_verifier"],
            },
            auth=(settings["client_id"] or "", settings["client_secret"] or ""),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=10,
        )
    except requests.RequestException as exc:
        current_app.logger.error("Twitter token exchange failed: %s", exc)
        return redirect(_with_query(return_to, error="token_failed", details=str(exc)[:100]))

    if not token_resp.ok:
        body = (token_resp.text or "")[:100]
        current_app.logger.error("Token exchange failed: %s %s", token_resp.status_code, body)
        return redirect(_with_query(return_to, error="token_failed", details=body))

    token_data = token_resp.json()
    try:
        user_resp = requests.get(
            TWITTER_USER_URL,
            headers={"Authorization": f"Bearer {token_data.get('access_token', '')}"},
            timeout=10,
        )
    except requests.RequestException as exc:
        current_app.logger.error("Twitter user lookup failed: %s", exc)
        return redirect(_with_query(return_to, error="user_fetch_failed"))

    if not user_resp.ok:
        current_app.logger.error("Failed to get Twitter user info: %s", user_resp.status_code)
        return redirect(_with_query(return_to, error="user_fetch_failed"))

    twitter_user = (user_resp.json() or {}).get("data") or {}
    handle = twitter_user.get("username")
    if not handle:
        return redirect(_with_query(return_to, error="user_fetch_failed"))

    user_is_og = service.is_og_handle(handle)
    og_points_awarded = False
    user_id = None
    client = current_app.config.get("SUPABASE_CLIENT")
    if client:
        try:
            result = service.create_or_update_user(client, handle, twitter_user.get("name"))
            og_points_awarded = bool(result.get("ogPointsAwarded"))
            user_id = (result.get("user") or {}).get("id")
        except Exception as exc:
            current_app.logger.error("Database error during Twitter login (non-fatal): %s", exc)
    else:
        current_app.logger.info("Supabase not configured, skipping user persistence for @%s", handle)

    auth_data = {
        "twitterId": twitter_user.get("id"),
        "twitterHandle": handle,
        "twitterName": twitter_user.get("name"),
        "profileImage": twitter_user.get("profile_image_url"),
        "verifiedAt": datetime.now(timezone.utc).isoformat(),
        "lastChecked": int(time.time() * 1000),
        "isOG": user_is_og,
        "ogPointsAwarded": og_points_awarded,
        "userId": user_id,
    }
    session[AUTH_SESSION_KEY] = auth_data
    session.permanent = True

    encoded = _base64url(json.dumps(auth_data, separators=(",", ":")).encode("utf-8"))
    response = redirect(_with_query(return_to, auth="success", data=encoded))
    response.set_cookie(
        CLIENT_COOKIE_NAME,
        json.dumps(auth_data, separators=(",", ":")),
        max_age=AUTH_MAX_AGE,
        path="/",
        secure=bool(current_app.config.get("SESSION_COOKIE_SECURE")),
        httponly=False,
        samesite="Lax",
    )
    current_app.logger.info("Twitter login complete for @%s, returning to %s", handle, return_to)
    return response


@twitter_auth_bp.get("/session")
def current_session():
    auth = get_twitter_auth()
    if not auth:
        return jsonify({"authenticated": False}), 401
    return jsonify({"authenticated": True, "auth": auth, "isAdmin": is_admin_handle(auth.get("twitterHandle"))})


@twitter_auth_bp.post("/logout")
def logout():
    session.pop(AUTH_SESSION_KEY, None)
    session.pop(OAUTH_SESSION_KEY, None)
    response = jsonify({"success": True})
    response.delete_cookie(CLIENT_COOKIE_NAME, path="/")
    return response


@twitter_auth_bp.get("/debug")
def oauth_debug():
    settings = _oauth_settings()
    verifier = generate_code_verifier()
    challenge = generate_code_challenge(verifier)
    state = secrets.token_urlsafe(16)
    params = _authorize_params(settings["client_id"] or "", settings["redirect_uri"], state, challenge)
    auth_url = f"{TWITTER_AUTH_URL}?{urlencode(params)}"
    return jsonify(
        {
            "credentials": {
                "clientId": settings["client_id"],
                "clientIdLength": len(settings["client_id"] or ""),
                "clientSecretExists": bool(settings["client_secret"]),
                "clientSecretLength": len(settings["client_secret"] or ""),
            },
            "urls": {
                "redirectUri": settings["redirect_uri"],
                "authUrl": auth_url,
                "authUrlLength": len(auth_url),
            },
            "oauthParams": params,
            "pkce": {
                "codeVerifier": verifier,
                "codeChallenge": challenge,
                "verifierLength": len(verifier),
                "challengeLength": len(challenge),
            },
            "instructions": [
                "1. Check that clientId matches your Twitter app exactly",
                "2. Verify redirect_uri matches your Twitter app callback URL exactly",
                "3. Open authUrl to test the OAuth flow",
                "4. Twitter should redirect back to the redirect_uri",
            ],
        }
    )


@twitter_auth_bp.get("/test")
def oauth_connectivity_test():
    settings = _oauth_settings()
    try:
        resp = requests.post(
            TWITTER_TOKEN_URL,
            data={
                "grant_type": "client_credentials",
                "client_id": settings["client_id"] or "",
                "client_secret": settings["client_secret"] or "",
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=10,
        )
        if resp.ok:
            twitter_test = "OAuth endpoint reachable"
        else:
            twitter_test = f"OAuth test failed: {resp.status_code} - {(resp.text or '')[:100]}"
    except requests.RequestException as exc:
        twitter_test = f"Network error: {exc}"

    client_id = settings["client_id"] or ""
    return jsonify(
        {
            "environment": {"baseUrl": request.host_url.rstrip("/")},
            "credentials": {
                "hasClientId": bool(client_id),
                "clientIdLength": len(client_id),
                "clientIdPrefix": f"{client_id[:5]}...",
                "hasClientSecret": bool(settings["client_secret"]),
                "clientSecretLength": len(settings["client_secret"] or ""),
            },
            "urls": {
                "currentUrl": request.url,
                "expectedCallbackUrl": settings["redirect_uri"],
                "actualCallbackUrl": request.host_url.rstrip("/") + "/api/auth/twitter/callback",
            },
            "twitterTest": twitter_test,
            "headers": {
                "host": request.headers.get("Host"),
                "origin": request.headers.get("Origin"),
                "referer": request.headers.get("Referer"),
                "userAgent": request.headers.get("User-Agent"),
            },
        }
    )
