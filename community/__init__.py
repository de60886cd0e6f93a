"""Leaderboard and maintenance feedback."""

from .routes import community_api_blueprint

__all__ = ["community_api_blueprint"]
