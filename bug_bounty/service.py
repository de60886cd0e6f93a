"""Bug report submission, listing, and bounty awards."""

from __future__ import annotations

import math
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import bleach
from flask import current_app
from werkzeug.utils import secure_filename

from accounts.service import find_user

ATTACHMENT_BUCKET = "bug-report-attachments"
ALLOWED_ATTACHMENT_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
}
MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024
SIGNED_URL_TTL_SECONDS = 3600
DEFAULT_SEVERITY = "medium"
DEFAULT_CATEGORY = "functionality"

OPTIONAL_REPORT_FIELDS = {
    "email": "email",
    "browserInfo": "browser_info",
    "urlWhereFound": "url_where_found",
    "stepsToReproduce": "steps_to_reproduce",
    "expectedBehavior": "expected_behavior",
    "actualBehavior": "actual_behavior",
}


class BugBountyServiceError(Exception):
    """Raised when a bug bounty operation fails."""

    def __init__(self, message: str, status_code: int = 400, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {"error": message}


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = bleach.clean(value, tags=[], attributes={}, strip=True).strip()
    return cleaned or None


@dataclass
class BugReportSubmission:
    title: str
    description: str
    severity: str = DEFAULT_SEVERITY
    category: str = DEFAULT_CATEGORY
    extra: Dict[str, Optional[str]] = field(default_factory=dict)

    @classmethod
    def from_form(cls, form) -> "BugReportSubmission":
        title = _clean_text(form.get("title"))
        description = _clean_text(form.get("description"))
        if not title or not description:
            raise BugBountyServiceError("Title and description are required")
        extra = {column: _clean_text(form.get(name)) for name, column in OPTIONAL_REPORT_FIELDS.items()}
        return cls(
            title=title,
            description=description,
            severity=(form.get("severity") or "").strip() or DEFAULT_SEVERITY,
            category=(form.get("category") or "").strip() or DEFAULT_CATEGORY,
            extra=extra,
        )

    def to_row(self, user_id: Any, twitter_handle: str) -> Dict[str, Any]:
        row = {
            "user_id": user_id,
            "twitter_handle": twitter_handle,
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "category": self.category,
        }
        row.update(self.extra)
        return row


def _require_user(client, twitter_handle: Optional[str]) -> Dict[str, Any]:
    if not twitter_handle:
        raise BugBountyServiceError("Authentication required. Please sign in with Twitter.", status_code=401)
    user = find_user(client, twitter_handle)
    if not user:
        raise BugBountyServiceError(
            "User account not found. Please ensure you are properly logged in.", status_code=404
        )
    return user


def submit_bug_report(client, twitter_handle: Optional[str], form, files) -> Dict[str, Any]:
    """Create the report row, then upload each acceptable attachment.

    Attachments with a disallowed type or over 5 MB are skipped, as are ones
    whose upload fails; the report itself still succeeds.
    """
    user = _require_user(client, twitter_handle)
    submission = BugReportSubmission.from_form(form)

    try:
        resp = client.table("bug_reports").insert(submission.to_row(user["id"], user["twitter_handle"])).execute()
    except Exception as exc:
        current_app.logger.error("Error creating bug report: %s", exc)
        raise BugBountyServiceError("Failed to create bug report", status_code=500) from exc
    rows = resp.data or []
    if not rows:
        raise BugBountyServiceError("Failed to create bug report", status_code=500)
    report = rows[0]

    uploaded: List[Dict[str, Any]] = []
    for file_storage in files or []:
        attachment = _store_attachment(client, report["id"], file_storage)
        if attachment:
            uploaded.append(attachment)

    return {**report, "attachments": uploaded}


def _store_attachment(client, report_id: Any, file_storage) -> Optional[Dict[str, Any]]:
    filename = getattr(file_storage, "filename", "") or ""
    if not filename:
        return None

    content_type = (file_storage.mimetype or "").lower()
    if content_type not in ALLOWED_ATTACHMENT_TYPES:
        current_app.logger.warning("Skipping file %s - invalid type: %s", filename, content_type)
        return None

    file_storage.stream.seek(0)
    file_bytes = file_storage.read()
    size = len(file_bytes)
    if size == 0:
        return None
    if size > MAX_ATTACHMENT_BYTES:
        current_app.logger.warning("Skipping file %s - too large: %s", filename, size)
        return None

    safe_name = secure_filename(filename) or "attachment"
    ext = safe_name.rsplit(".", 1)[-1].lower() if "." in safe_name else "bin"
    storage_path = f"{report_id}/{int(time.time() * 1000)}-{secrets.token_hex(3)}.{ext}"

    try:
        client.storage.from_(ATTACHMENT_BUCKET).upload(
            storage_path,
            file_bytes,
            file_options={"content-type": content_type, "upsert": "false"},
        )
    except Exception as exc:
        current_app.logger.error("Error uploading file %s: %s", filename, exc)
        return None

    try:
        resp = client.table("bug_report_attachments").insert(
            {
                "bug_report_id": report_id,
                "file_name": filename,
                "file_size": size,
                "file_type": content_type,
                "storage_path": storage_path,
            }
        ).execute()
    except Exception as exc:
        current_app.logger.error("Error saving attachment record for %s: %s", filename, exc)
        return None
    rows = resp.data or []
    return rows[0] if rows else None


def list_bug_reports(
    client,
    *,
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    severity: Optional[str] = None,
    only_for_handle: Optional[str] = None,
    user_only: bool = False,
) -> Dict[str, Any]:
    page = max(1, page)
    limit = max(1, limit)
    empty = {"reports": [], "total": 0, "page": page, "totalPages": 0}

    query = client.table("bug_reports").select("*", count="exact")
    if status:
        query = query.eq("status", status)
    if severity:
        query = query.eq("severity", severity)
    if user_only:
        if not only_for_handle:
            return empty
        user = find_user(client, only_for_handle)
        if not user:
            return empty
        query = query.eq("user_id", user["id"])

    offset = (page - 1) * limit
    try:
        resp = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
    except Exception as exc:
        current_app.logger.error("Error fetching bug reports: %s", exc)
        raise BugBountyServiceError("Failed to fetch bug reports", status_code=500) from exc

    reports = resp.data or []
    attachments = _attachments_by_report(client, [report["id"] for report in reports])
    total = resp.count or 0
    return {
        "reports": [{**report, "attachments": attachments.get(report["id"], [])} for report in reports],
        "total": total,
        "page": page,
        "totalPages": math.ceil(total / limit),
    }


def _attachments_by_report(client, report_ids: List[Any]) -> Dict[Any, List[Dict[str, Any]]]:
    if not report_ids:
        return {}
    resp = (
        client.table("bug_report_attachments")
        .select("id, bug_report_id, file_name, file_size, file_type, storage_path")
        .in_("bug_report_id", report_ids)
        .execute()
    )
    grouped: Dict[Any, List[Dict[str, Any]]] = {}
    bucket = client.storage.from_(ATTACHMENT_BUCKET)
    for attachment in resp.data or []:
        grouped.setdefault(attachment["bug_report_id"], []).append(
            {**attachment, "url": _signed_url(bucket, attachment.get("storage_path"))}
        )
    return grouped


def _signed_url(bucket, storage_path: Optional[str]) -> Optional[str]:
    if not storage_path:
        return None
    try:
        signed = bucket.create_signed_url(storage_path, SIGNED_URL_TTL_SECONDS)
    except Exception as exc:
        current_app.logger.warning("Could not sign attachment %s: %s", storage_path, exc)
        return None
    if isinstance(signed, dict):
        return signed.get("signedURL") or signed.get("signedUrl")
    return None


def award_points(client, admin_handle: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    admin_user = find_user(client, admin_handle)
    if not admin_user:
        raise BugBountyServiceError("Admin user not found", status_code=404)

    bug_report_id = payload.get("bugReportId")
    if not bug_report_id:
        raise BugBountyServiceError("Bug report ID is required")

    raw_points = payload.get("customPoints") or payload.get("points")
    try:
        points = int(raw_points)
    except (TypeError, ValueError):
        points = 0
    if points <= 0:
        raise BugBountyServiceError("Valid points amount is required")

    try:
        client.rpc(
            "award_bug_bounty_points",
            {"p_bug_report_id": bug_report_id, "p_points": points, "p_awarded_by": admin_user["id"]},
        ).execute()
    except Exception as exc:
        message = str(exc)
        current_app.logger.error("Error awarding points for report %s: %s", bug_report_id, message)
        if "already been awarded" in message:
            raise BugBountyServiceError("Points have already been awarded for this bug report") from exc
        raise BugBountyServiceError("Failed to award points", status_code=500) from exc

    return {
        "success": True,
        "message": f"Successfully awarded {points} points",
        "pointsAwarded": points,
    }
