import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from extensions import db
from accounts import accounts_api_blueprint, twitter_auth_bp
from bug_bounty import bug_bounty_blueprint
from community import community_api_blueprint
from mirror import BackgroundSync, StorageManager, mirror_blueprint
from recovery import recovery_api_blueprint
from sessions import sessions_blueprint

# Try to import Supabase client
try:
    from supabase import create_client, Client  # type: ignore
except Exception:
    create_client, Client = None, None


# ====== Environment parsing ======
def _env_flag(name: str, default: bool) -> bool:
    """Parse truthy feature-toggle values from the environment."""
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        print(f"⚠️ Invalid {name} value: {raw!r}. Using default {default}.")
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        print(f"⚠️ Invalid {name} value: {raw!r}. Using default {default}.")
        return default


def _env_list(name: str, default: Optional[List[str]] = None) -> List[str]:
    raw = os.environ.get(name)
    if raw is None:
        return list(default or [])
    return [value.strip() for value in raw.split(",") if value.strip()]


def load_config() -> Dict[str, Any]:
    data_dir = Path(__file__).resolve().parent / "data"
    return {
        "USE_SUPABASE": _env_flag("USE_SUPABASE", True),  # ✅ Supabase for users, sessions, recovery
        "SUPABASE_URL": os.environ.get("SUPABASE_URL"),
        "SUPABASE_KEY": os.environ.get("SUPABASE_KEY"),
        "SECRET_KEY": os.environ.get("SECRET_KEY") or os.urandom(24),
        "SQLALCHEMY_DATABASE_URI": os.environ.get("DATABASE_URL") or f"sqlite:///{data_dir / 'eva.db'}",
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "SESSION_COOKIE_SECURE": _env_flag("SESSION_COOKIE_SECURE", False),
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        # 🐦 Twitter OAuth
        "TWITTER_CLIENT_ID": os.environ.get("TWITTER_CLIENT_ID"),
        "TWITTER_CLIENT_SECRET": os.environ.get("TWITTER_CLIENT_SECRET"),
        "TWITTER_REDIRECT_URI": os.environ.get("TWITTER_REDIRECT_URI"),
        # 🛡️ Admins and OG list
        "EVA_ADMIN_HANDLES": _env_list("EVA_ADMIN_HANDLES", ["evaonlinexyz"]),
        "EVA_OG_HANDLES": _env_list("EVA_OG_HANDLES"),
        "EVA_OG_HANDLES_PATH": os.environ.get("EVA_OG_HANDLES_PATH"),
        # 🔁 Mirror sync loop
        "MIRROR_SYNC_ENABLED": _env_flag("MIRROR_SYNC_ENABLED", True),
        "MIRROR_SYNC_INTERVAL_SECONDS": _env_float("MIRROR_SYNC_INTERVAL_SECONDS", 5.0, minimum=0.1),
        "MIRROR_SYNC_BATCH_SIZE": _env_int("MIRROR_SYNC_BATCH_SIZE", 10, minimum=1),
        "MIRROR_SYNC_MAX_RETRIES": _env_int("MIRROR_SYNC_MAX_RETRIES", 3, minimum=1),
        # 🧮 Point recovery
        "RECOVERY_LARGE_CHANGE_THRESHOLD": _env_int("RECOVERY_LARGE_CHANGE_THRESHOLD", 10000),
        "RECOVERY_MAX_POINT_CHANGE": _env_int("RECOVERY_MAX_POINT_CHANGE", 50000, minimum=1),
        "RECOVERY_BATCH_SIZE": _env_int("RECOVERY_BATCH_SIZE", 50, minimum=1),
    }


# ====== Supabase setup ======
def _init_supabase(config: Dict[str, Any]):
    url, key = config.get("SUPABASE_URL"), config.get("SUPABASE_KEY")
    if not (config.get("USE_SUPABASE") and create_client and url and key):
        print("ℹ️ Supabase not configured, running in demo mode.")
        return None
    try:
        client: Client = create_client(url, key)
    except Exception as e:
        print("⚠️ Could not init Supabase client:", e)
        return None
    return client


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(404)
    @app.errorhandler(405)
    def json_http_error(err):
        status_code = getattr(err, "code", 500) or 500
        message = err.description if isinstance(err, HTTPException) else "Request failed"
        return jsonify({"error": message}), status_code

    @app.errorhandler(500)
    def json_server_error(err):
        app.logger.error("Unhandled server error: %s", getattr(err, "original_exception", err))
        return jsonify({"error": "Internal server error"}), 500


# ====== Flask setup ======
def create_app(overrides: Optional[Dict[str, Any]] = None) -> Flask:
    overrides = dict(overrides or {})
    app = Flask(__name__)
    app.config.update(load_config())
    app.config.update(overrides)
    app.secret_key = app.config["SECRET_KEY"]
    app.permanent_session_lifetime = timedelta(days=30)

    if "SUPABASE_CLIENT" not in overrides:
        app.config["SUPABASE_CLIENT"] = _init_supabase(app.config)
    supabase = app.config["SUPABASE_CLIENT"]

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
        Path(app.config["SQLALCHEMY_DATABASE_URI"][len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    db.init_app(app)

    _register_error_handlers(app)
    app.register_blueprint(twitter_auth_bp)
    app.register_blueprint(accounts_api_blueprint)
    app.register_blueprint(community_api_blueprint)
    app.register_blueprint(bug_bounty_blueprint)
    app.register_blueprint(recovery_api_blueprint)
    app.register_blueprint(sessions_blueprint)
    app.register_blueprint(mirror_blueprint)

    with app.app_context():
        db.create_all()

    manager = StorageManager(
        supabase,
        batch_size=app.config["MIRROR_SYNC_BATCH_SIZE"],
        max_retries=app.config["MIRROR_SYNC_MAX_RETRIES"],
        logger=app.logger,
    )
    app.extensions["eva_mirror"] = manager

    if supabase and app.config["MIRROR_SYNC_ENABLED"]:
        background = BackgroundSync(manager, app.config["MIRROR_SYNC_INTERVAL_SECONDS"])
        background.start()
        app.extensions["eva_mirror_sync"] = background
        app.logger.info("Mirror sync loop started (every %ss)", background.interval)
    else:
        app.logger.info("Mirror sync loop disabled")

    return app


# ====== Entrypoint ======
def run_dev_server(app: Optional[Flask] = None) -> None:
    # The reloader would build a second app in its child process, each with its own sync thread.
    app = app or create_app()
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 8080)), debug=True, use_reloader=False)


if __name__ == "__main__":
    run_dev_server()
