"""Bug bounty submissions and awards."""

from .routes import bug_bounty_blueprint

__all__ = ["bug_bounty_blueprint"]
