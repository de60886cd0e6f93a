"""Device-local storage with background mirroring to Supabase."""

from .local_store import LocalStore, MemoryStorageBackend, SQLAlchemyStorageBackend
from .routes import mirror_blueprint
from .sync import BackgroundSync, StorageManager

__all__ = [
    "BackgroundSync",
    "LocalStore",
    "MemoryStorageBackend",
    "SQLAlchemyStorageBackend",
    "StorageManager",
    "mirror_blueprint",
]
