"""Twitter login, OG verification and account maintenance."""

from .auth import admin_required, get_twitter_auth, is_admin_handle, twitter_auth_bp
from .routes import accounts_api_blueprint

__all__ = [
    "accounts_api_blueprint",
    "admin_required",
    "get_twitter_auth",
    "is_admin_handle",
    "twitter_auth_bp",
]
