"""Database models for the EVA Online Flask app."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func

from extensions import db


class MirrorStorageEntry(db.Model):
    """Device-scoped key/value row standing in for browser local storage."""

    __tablename__ = "mirror_storage_entries"

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.String(64), index=True, nullable=False)
    storage_key = db.Column(db.String(255), nullable=False)
    raw_value = db.Column(db.Text, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        db.UniqueConstraint("device_id", "storage_key", name="uq_mirror_device_key"),
    )

    def touch(self, reference: Optional[datetime] = None) -> None:
        self.updated_at = reference or datetime.now(timezone.utc)

    def __repr__(self) -> str:  # pragma: no cover - helper for shell debugging
        return f"<MirrorStorageEntry device={self.device_id!r} key={self.storage_key!r}>"
