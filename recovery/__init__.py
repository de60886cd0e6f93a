"""Administrative point recovery (recalculate, back up, restore)."""

from .routes import recovery_api_blueprint

__all__ = ["recovery_api_blueprint"]
