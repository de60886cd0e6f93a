"""In-memory queue of local writes waiting to reach Supabase."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class QueueItem:
    key: str
    value: Any
    user_id: Optional[str]
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
    retry_count: int = 0

    @property
    def queue_key(self) -> str:
        return make_queue_key(self.user_id, self.key)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "value": self.value,
            "userId": self.user_id,
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
        }


def make_queue_key(user_id: Optional[str], key: str) -> str:
    return f"{user_id}:{key}"


class WriteQueue:
    """Last-enqueued-wins mapping of `user:key` to the pending value.

    A replaced entry keeps its original position, so a burst of writes to
    many keys drains strictly in first-seen order.
    """

    def __init__(self) -> None:
        self._items: Dict[str, QueueItem] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def enqueue(self, key: str, value: Any, user_id: Optional[str]) -> Optional[QueueItem]:
        """Queue a write for sync; anonymous writes stay local and return None."""
        if not user_id:
            return None
        item = QueueItem(key=key, value=value, user_id=str(user_id))
        with self._lock:
            self._items[item.queue_key] = item
        return item

    def get(self, queue_key: str) -> Optional[QueueItem]:
        with self._lock:
            return self._items.get(queue_key)

    def snapshot(self, limit: int) -> List[Tuple[str, QueueItem]]:
        with self._lock:
            return list(self._items.items())[: max(0, limit)]

    def discard(self, queue_key: str, item: QueueItem) -> bool:
        """Remove `item` unless a newer write has replaced it in the meantime."""
        with self._lock:
            if self._items.get(queue_key) is not item:
                return False
            del self._items[queue_key]
            return True

    def items(self) -> List[QueueItem]:
        with self._lock:
            return list(self._items.values())
