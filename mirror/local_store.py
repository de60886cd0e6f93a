"""Checksummed, versioned wrapper around device-local key/value storage."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional, Protocol

from extensions import db
from models import MirrorStorageEntry

NAMESPACE = "eva_mirror_v1"
RECORD_VERSION = 1
CHECKSUM_LENGTH = 16

STORAGE_KEYS = {
    "soul_seed": "soul_seed",
    "journal_draft": "journal_draft",
    "streak": "streak",
    "last_daily": "last_daily",
    "artifacts": "artifacts",
    "analytics_queue": "analytics_queue",
    "onboarded": "onboarded",
    "user_profile": "user_profile",
    "twitter_auth": "twitter_auth",
}

_ENVELOPE_FIELDS = {"version", "data"}

logger = logging.getLogger(__name__)


class StorageBackend(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, raw: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryStorageBackend:
    """Plain dict backend, used by scripts and tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, raw: str) -> None:
        self._items[key] = raw

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class SQLAlchemyStorageBackend:
    """Stores one device's entries in the local `mirror_storage_entries` table."""

    def __init__(self, device_id: str) -> None:
        if not device_id:
            raise ValueError("device_id is required for SQLAlchemy-backed storage.")
        self.device_id = device_id

    def _entry(self, key: str) -> Optional[MirrorStorageEntry]:
        return MirrorStorageEntry.query.filter_by(device_id=self.device_id, storage_key=key).first()

    def get_item(self, key: str) -> Optional[str]:
        entry = self._entry(key)
        return entry.raw_value if entry else None

    def set_item(self, key: str, raw: str) -> None:
        entry = self._entry(key)
        if entry is None:
            entry = MirrorStorageEntry(device_id=self.device_id, storage_key=key, raw_value=raw)
            db.session.add(entry)
        else:
            entry.raw_value = raw
            entry.touch()
        db.session.commit()

    def remove_item(self, key: str) -> None:
        entry = self._entry(key)
        if entry is None:
            return
        db.session.delete(entry)
        db.session.commit()


def generate_checksum(data: Any) -> str:
    """Short sha256 digest over the compact JSON form of `data`."""
    serialized = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()[:CHECKSUM_LENGTH]


def build_record(value: Any, now_ms: Optional[int] = None) -> Dict[str, Any]:
    return {
        "version": RECORD_VERSION,
        "data": value,
        "checksum": generate_checksum(value),
        "lastModified": now_ms if now_ms is not None else int(time.time() * 1000),
    }


class LocalStore:
    """Reads and writes VersionedRecord envelopes under a namespace prefix.

    Corrupted or unknown-version envelopes read as absent. Values written
    before envelopes existed are still returned, unvalidated, until the next
    write replaces them.
    """

    def __init__(self, backend: StorageBackend, namespace: str = NAMESPACE) -> None:
        self.backend = backend
        self.namespace = namespace

    def full_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def write(self, key: str, value: Any) -> None:
        record = build_record(value)
        self.backend.set_item(self.full_key(key), json.dumps(record, ensure_ascii=False))

    def read(self, key: str, default: Any = None) -> Any:
        raw = self.backend.get_item(self.full_key(key))
        if raw is None:
            return default

        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Mirror storage value for %s is not valid JSON", key)
            return default

        if not _looks_like_envelope(parsed):
            return default if parsed is None else parsed

        if parsed.get("version") != RECORD_VERSION:
            logger.warning("Unknown mirror storage version for %s: %r", key, parsed.get("version"))
            return default

        if parsed.get("checksum") != generate_checksum(parsed.get("data")):
            logger.error("Checksum mismatch for %s, data may be corrupted", key)
            return default

        return parsed.get("data")

    def remove(self, key: str) -> None:
        self.backend.remove_item(self.full_key(key))

    def wipe(self) -> None:
        for key in STORAGE_KEYS.values():
            self.remove(key)


def _looks_like_envelope(parsed: Any) -> bool:
    return isinstance(parsed, dict) and _ENVELOPE_FIELDS.issubset(parsed.keys())
