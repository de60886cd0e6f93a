"""Dual-write storage manager and the background loop that drains it to Supabase."""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from .local_store import LocalStore
from .write_queue import QueueItem, WriteQueue

USER_STORAGE_TABLE = "user_storage"
AUDIT_TABLE = "migration_audit_log"

DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_SYNC_INTERVAL = 5.0


class RemoteUnavailableError(RuntimeError):
    """Raised when a sync is attempted without a Supabase client."""


@dataclass
class SyncPassResult:
    attempted: int = 0
    synced: int = 0
    retried: int = 0
    dropped: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class StorageManager:
    """Writes locally first, then queues the value for a best-effort remote upsert.

    The queue lives in process memory only; anything still pending when the
    process exits is lost.
    """

    def __init__(
        self,
        client: Any,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.client = client
        self.batch_size = max(1, int(batch_size))
        self.max_retries = max(1, int(max_retries))
        self.logger = logger or logging.getLogger(__name__)
        self.queue = WriteQueue()
        self._sync_lock = threading.Lock()

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_lock.locked()

    def write(self, store: LocalStore, key: str, value: Any, user_id: Optional[str] = None) -> Optional[QueueItem]:
        store.write(key, value)
        return self.queue.enqueue(key, value, user_id)

    def read(self, store: LocalStore, key: str, fallback: Any = None) -> Any:
        return store.read(key, fallback)

    def queue_status(self) -> dict:
        items = self.queue.items()
        return {
            "size": len(items),
            "items": [item.to_dict() for item in items],
            "sync_in_progress": self.sync_in_progress,
        }

    def force_sync(self) -> Optional[SyncPassResult]:
        return self.process_queue()

    def process_queue(self) -> Optional[SyncPassResult]:
        """Run one sync pass; returns None when another pass is already running."""
        if not self._sync_lock.acquire(blocking=False):
            return None

        result = SyncPassResult()
        try:
            batch = self.queue.snapshot(self.batch_size)
            if batch:
                self.logger.info("Mirror sync pass starting, queue size: %s", len(self.queue))
            for queue_key, item in batch:
                result.attempted += 1
                try:
                    self._sync_item(item)
                except Exception as exc:
                    item.retry_count += 1
                    self.logger.warning("Mirror sync failed for %s (attempt %s): %s", item.key, item.retry_count, exc)
                    if self.queue.get(queue_key) is not item:
                        self.logger.info("Queued write for %s was replaced mid-pass, keeping the newer value", item.key)
                    elif item.retry_count >= self.max_retries:
                        if not self.queue.discard(queue_key, item):
                            continue
                        result.dropped += 1
                        self.logger.error("Max retries reached for %s, dropping queued write", item.key)
                        self._log_sync(item, "failed", exc)
                    else:
                        result.retried += 1
                    continue

                self.queue.discard(queue_key, item)
                result.synced += 1
                self._log_sync(item, "success")
        finally:
            self._sync_lock.release()
        return result

    def _sync_item(self, item: QueueItem) -> None:
        if not self.client:
            raise RemoteUnavailableError("Supabase client unavailable")
        payload = {
            "user_id": item.user_id,
            "storage_key": item.key,
            "value": item.value,
            "client_timestamp": item.timestamp,
            "updated_at": _now_iso(),
        }
        self.client.table(USER_STORAGE_TABLE).upsert(payload, on_conflict="user_id,storage_key").execute()

    def _log_sync(self, item: QueueItem, status: str, error: Optional[Exception] = None) -> None:
        if not self.client:
            return
        payload = {
            "user_id": item.user_id,
            "storage_key": item.key,
            "status": status,
            "retry_count": item.retry_count,
            "error": str(error) if error else None,
            "created_at": _now_iso(),
        }
        try:
            self.client.table(AUDIT_TABLE).insert(payload).execute()
        except Exception as exc:
            self.logger.warning("Mirror sync audit insert failed for %s: %s", item.key, exc)


class BackgroundSync:
    """Daemon thread that runs a sync pass every `interval` seconds when work is queued."""

    def __init__(self, manager: StorageManager, interval: float = DEFAULT_SYNC_INTERVAL) -> None:
        self.manager = manager
        self.interval = max(0.05, float(interval))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="eva-mirror-sync", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if self.manager.sync_in_progress or not len(self.manager.queue):
                continue
            try:
                self.manager.process_queue()
            except Exception:
                self.manager.logger.exception("Mirror background sync pass crashed")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
