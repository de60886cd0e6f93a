from .routes import sessions_blueprint

__all__ = ["sessions_blueprint"]
