"""Per-user inbox notifications stored in Supabase."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import bleach
from flask import current_app, has_app_context

NOTIFICATION_ALLOWED_TAGS = ["a", "b", "br", "em", "i", "p", "strong", "u"]
NOTIFICATION_ALLOWED_ATTRS = {"a": ["href", "title", "target", "rel"]}


def sanitize_notification_html(body: Optional[str]) -> str:
    if not body:
        return ""
    normalized = body.replace("\r\n", "\n").replace("\n", "<br>")
    return bleach.clean(
        normalized,
        tags=NOTIFICATION_ALLOWED_TAGS,
        attributes=NOTIFICATION_ALLOWED_ATTRS,
        strip=True,
    )


def send_user_notification(
    client,
    user_id: Any,
    notif_type: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Insert an unread notification; returns the stored row or None on failure."""
    if not client:
        _warn("Failed to send notification: Supabase is unavailable.")
        return None

    payload = {
        "user_id": user_id,
        "type": notif_type,
        "title": bleach.clean(title or "", tags=[], attributes={}, strip=True),
        "message": sanitize_notification_html(message),
        "data": data or {},
        "read": False,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    try:
        resp = client.table("notifications").insert(payload).execute()
    except Exception as exc:
        _warn("Failed to send notification: %s", exc)
        return None
    rows = resp.data or []
    return rows[0] if rows else payload


def _warn(message: str, *args) -> None:
    if has_app_context():
        current_app.logger.warning(message, *args)
