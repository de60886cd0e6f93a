"""Point reconciliation: recompute totals from sessions, back up, apply, and restore."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from flask import current_app, has_app_context

from accounts.service import (
    fetch_completed_sessions,
    find_profile,
    find_user,
    is_og_handle,
    normalize_handle,
    now_iso,
)
from notifications import send_user_notification
from points import (
    MIN_TOTAL,
    OG_MIN_TOTAL,
    calculate_base_points,
    calculate_expected_total,
    sum_session_points,
)

BACKUP_TABLE = "point_recovery_backups"
LOG_TABLE = "point_recovery_logs"

LARGE_CHANGE_THRESHOLD = 10000
DEFAULT_MAX_POINT_CHANGE = 50000
DEFAULT_BATCH_SIZE = 50
DEFAULT_BATCH_DELAY_SECONDS = 1.0
RECENT_RECOVERIES = 10


class RecoveryServiceError(Exception):
    """Raised when a recovery or restore operation fails."""

    def __init__(self, message: str, status_code: int = 400, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {"success": False, "error": message}


# ====== Request payloads ======

@dataclass
class BatchRecoveryOptions:
    batch_size: int = DEFAULT_BATCH_SIZE
    max_point_change: int = DEFAULT_MAX_POINT_CHANGE
    dry_run: bool = True
    start_after_handle: Optional[str] = None
    only_affected_users: bool = True
    delay_between_batches: float = DEFAULT_BATCH_DELAY_SECONDS

    @classmethod
    def from_payload(
        cls,
        payload: Dict[str, Any],
        *,
        default_batch_size: int = DEFAULT_BATCH_SIZE,
        default_max_point_change: int = DEFAULT_MAX_POINT_CHANGE,
    ) -> "BatchRecoveryOptions":
        """Parse the JSON body; `delayBetweenBatches` is given in milliseconds."""
        batch_size = _positive_int(payload.get("batchSize"), default_batch_size, "batchSize")
        max_point_change = _positive_int(payload.get("maxPointChange"), default_max_point_change, "maxPointChange")

        delay_ms = payload.get("delayBetweenBatches")
        if delay_ms is None:
            delay = DEFAULT_BATCH_DELAY_SECONDS
        else:
            try:
                delay = max(0.0, float(delay_ms) / 1000.0)
            except (TypeError, ValueError):
                raise RecoveryServiceError("delayBetweenBatches must be a number of milliseconds")

        return cls(
            batch_size=batch_size,
            max_point_change=max_point_change,
            dry_run=payload.get("dryRun") is not False,
            start_after_handle=normalize_handle(payload.get("startAfterHandle")) or None,
            only_affected_users=payload.get("onlyAffectedUsers") is not False,
            delay_between_batches=delay,
        )


@dataclass
class BackupSelector:
    twitter_handle: Optional[str] = None
    backup_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "BackupSelector":
        handle = normalize_handle(payload.get("twitterHandle")) or None
        backup_id = payload.get("backupId") or None
        if not handle and not backup_id:
            raise RecoveryServiceError("Either twitterHandle or backupId is required")
        return cls(twitter_handle=handle, backup_id=str(backup_id) if backup_id else None)


def _positive_int(value: Any, default: int, field_name: str) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise RecoveryServiceError(f"{field_name} must be a positive integer")
    if parsed < 1:
        raise RecoveryServiceError(f"{field_name} must be a positive integer")
    return parsed


# ====== Recalculation ======

@dataclass
class RecoveryPlan:
    user_id: Any
    twitter_handle: str
    old_points: int
    new_points: int
    was_og: bool
    is_now_og: bool
    old_session_total: int
    recalculated_session_total: int

    @property
    def difference(self) -> int:
        return self.new_points - self.old_points

    @property
    def changed(self) -> bool:
        return self.difference != 0 or self.was_og != self.is_now_og

    def og_status(self) -> Dict[str, bool]:
        return {"wasOG": self.was_og, "isNowOG": self.is_now_og}

    def session_points(self) -> Dict[str, int]:
        return {"oldTotal": self.old_session_total, "recalculatedTotal": self.recalculated_session_total}

    def snapshot(self) -> Dict[str, Any]:
        return {"points": self.old_points, "og_status": self.og_status(), "session_points": self.session_points()}

    def log_entry(self, operation: str = "recover", **extra: Any) -> Dict[str, Any]:
        entry = {
            "user_id": self.user_id,
            "twitter_handle": self.twitter_handle,
            "old_points": self.old_points,
            "new_points": self.new_points,
            "og_status": self.og_status(),
            "session_points": self.session_points(),
            "timestamp": now_iso(),
            "operation": operation,
        }
        entry.update({key: value for key, value in extra.items() if value is not None})
        return entry


def authoritative_sessions(client, user_id: Any, profile: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Completed `sessions` rows win; the profile's embedded history is the fallback."""
    rows = fetch_completed_sessions(client, user_id, "points_earned")
    if rows:
        return rows
    return list(profile.get("session_history") or [])


def plan_recovery(client, user: Dict[str, Any], profile: Dict[str, Any]) -> RecoveryPlan:
    handle = user.get("twitter_handle") or ""
    is_now_og = bool(user.get("is_og")) or is_og_handle(handle)
    was_og = bool(profile.get("is_og_rewarded"))
    old_points = int(profile.get("points") or 0)

    sessions = authoritative_sessions(client, user["id"], profile)
    return RecoveryPlan(
        user_id=user["id"],
        twitter_handle=handle,
        old_points=old_points,
        new_points=calculate_expected_total(is_now_og, sessions),
        was_og=was_og,
        is_now_og=is_now_og,
        old_session_total=max(0, old_points - calculate_base_points(was_og)),
        recalculated_session_total=sum_session_points(sessions),
    )


def apply_recovery(client, plan: RecoveryPlan) -> Dict[str, Any]:
    """Back up, overwrite, then log. Returns the log entry with the backup id."""
    backup_resp = client.table(BACKUP_TABLE).insert(
        {
            "user_id": plan.user_id,
            "twitter_handle": plan.twitter_handle,
            "points_snapshot": plan.snapshot(),
            "backup_date": now_iso(),
            "is_restored": False,
        }
    ).execute()
    backup_rows = backup_resp.data or []
    if not backup_rows:
        raise RecoveryServiceError("Failed to create backup", status_code=500)
    backup_id = backup_rows[0].get("id")

    client.table("user_profiles").update(
        {"points": plan.new_points, "is_og_rewarded": plan.is_now_og, "updated_at": now_iso()}
    ).eq("user_id", plan.user_id).execute()

    entry = plan.log_entry("recover", backup_id=backup_id)
    client.table(LOG_TABLE).insert(entry).execute()
    return entry


def recover_user_points(client, twitter_handle: str, dry_run: bool = True) -> Optional[Dict[str, Any]]:
    """Recompute one user's total. Returns None when the user or profile is missing."""
    user = find_user(client, twitter_handle)
    if not user:
        return None
    profile = find_profile(client, user["id"])
    if not profile:
        _logger().warning("Recovery skipped for %s: no profile row", twitter_handle)
        return None

    plan = plan_recovery(client, user, profile)
    if dry_run or not plan.changed:
        entry = plan.log_entry("recover")
    else:
        entry = apply_recovery(client, plan)
        _logger().info(
            "Recovered points for %s: %s -> %s", plan.twitter_handle, plan.old_points, plan.new_points
        )

    entry.update({"difference": plan.difference, "changed": plan.changed, "dry_run": bool(dry_run)})
    entry.setdefault("backup_id", None)
    return entry


def batch_recover_points(
    client,
    options: Optional[BatchRecoveryOptions] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """Walk users by handle in pages, applying capped recoveries.

    Changes larger than `max_point_change` are reported in `errors` and never
    applied. A failing user is recorded and the walk continues.
    """
    options = options or BatchRecoveryOptions()
    result: Dict[str, Any] = {
        "totalUsers": 0,
        "usersUpdated": 0,
        "totalPointsChanged": 0,
        "largestChange": None,
        "recoveries": [],
        "errors": [],
        "lastHandle": options.start_after_handle,
        "batches": 0,
        "dryRun": options.dry_run,
    }

    cursor = options.start_after_handle
    while True:
        query = client.table("users").select("*").order("twitter_handle")
        if cursor:
            query = query.gt("twitter_handle", cursor)
        users = query.limit(options.batch_size).execute().data or []
        if not users:
            break

        result["batches"] += 1
        for user in users:
            handle = user.get("twitter_handle") or ""
            result["totalUsers"] += 1
            result["lastHandle"] = handle
            try:
                _recover_batch_user(client, user, options, result)
            except Exception as exc:
                _logger().error("Batch recovery failed for %s: %s", handle, exc)
                result["errors"].append({"twitterHandle": handle, "error": str(exc)})

        cursor = users[-1].get("twitter_handle")
        if len(users) < options.batch_size:
            break
        if options.delay_between_batches:
            sleep(options.delay_between_batches)

    _logger().info(
        "Batch recovery finished (dry run: %s): %s users, %s updated, %s errors",
        options.dry_run,
        result["totalUsers"],
        result["usersUpdated"],
        len(result["errors"]),
    )
    return result


def _recover_batch_user(client, user: Dict[str, Any], options: BatchRecoveryOptions, result: Dict[str, Any]) -> None:
    handle = user.get("twitter_handle") or ""
    profile = find_profile(client, user["id"])
    if not profile:
        result["errors"].append({"twitterHandle": handle, "error": "User profile not found"})
        return

    plan = plan_recovery(client, user, profile)
    if not plan.changed and options.only_affected_users:
        return

    if abs(plan.difference) > options.max_point_change:
        message = f"Point change of {plan.difference} exceeds maximum allowed {options.max_point_change}"
        result["errors"].append({"twitterHandle": handle, "error": message, "difference": plan.difference})
        if not options.dry_run:
            client.table(LOG_TABLE).insert(plan.log_entry("recover", error=message)).execute()
        return

    if options.dry_run or not plan.changed:
        entry = plan.log_entry("recover")
    else:
        entry = apply_recovery(client, plan)
    entry.update({"difference": plan.difference, "changed": plan.changed, "dry_run": options.dry_run})

    result["recoveries"].append(entry)
    if plan.changed:
        result["usersUpdated"] += 1
        result["totalPointsChanged"] += plan.difference
        largest = result["largestChange"]
        if largest is None or abs(plan.difference) > abs(largest["difference"]):
            result["largestChange"] = {
                "twitterHandle": handle,
                "oldPoints": plan.old_points,
                "newPoints": plan.new_points,
                "difference": plan.difference,
            }


# ====== Backups & restore ======

def _serialize_backup(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row.get("id"),
        "twitterHandle": row.get("twitter_handle"),
        "backupDate": row.get("backup_date"),
        "pointsSnapshot": row.get("points_snapshot"),
        "isRestored": bool(row.get("is_restored")),
        "restoredDate": row.get("restored_date"),
    }


def list_backups(client, twitter_handle: str, limit: int = 10, include_restored: bool = False) -> List[Dict[str, Any]]:
    query = client.table(BACKUP_TABLE).select("*").eq("twitter_handle", normalize_handle(twitter_handle))
    if not include_restored:
        query = query.eq("is_restored", False)
    rows = query.order("backup_date", desc=True).limit(max(1, int(limit))).execute().data or []
    return [_serialize_backup(row) for row in rows]


def find_restorable_backup(client, backup_id: Optional[str] = None, twitter_handle: Optional[str] = None) -> Dict[str, Any]:
    if not backup_id and not twitter_handle:
        raise RecoveryServiceError("Either twitterHandle or backupId is required")

    query = client.table(BACKUP_TABLE).select("*")
    if backup_id:
        query = query.eq("id", backup_id)
    else:
        query = query.eq("twitter_handle", normalize_handle(twitter_handle))
    rows = (
        query.eq("is_restored", False)
        .order("backup_date", desc=True)
        .limit(1)
        .execute()
        .data
        or []
    )
    if not rows:
        raise RecoveryServiceError("No valid backup found", status_code=404)
    return rows[0]


def _backup_owner(client, backup: Dict[str, Any]):
    user = find_user(client, backup.get("twitter_handle") or "")
    if not user:
        raise RecoveryServiceError("User not found", status_code=404)
    profile = find_profile(client, user["id"])
    if not profile:
        raise RecoveryServiceError("User profile not found", status_code=404)
    return user, profile


def preview_restore(
    client,
    backup_id: Optional[str] = None,
    twitter_handle: Optional[str] = None,
    large_change_threshold: int = LARGE_CHANGE_THRESHOLD,
) -> Dict[str, Any]:
    backup = find_restorable_backup(client, backup_id, twitter_handle)
    user, profile = _backup_owner(client, backup)

    snapshot = backup.get("points_snapshot") or {}
    og_status = snapshot.get("og_status") or {}
    current_points = int(profile.get("points") or 0)
    backup_points = int(snapshot.get("points") or 0)
    point_difference = backup_points - current_points
    user_is_og = bool(user.get("is_og"))

    warning = ""
    if abs(point_difference) > large_change_threshold:
        warning = f"Large point change detected ({abs(point_difference)} points)"
    if bool(og_status.get("isNowOG")) != user_is_og:
        warning += (
            f"\nOG status will change from {'OG' if user_is_og else 'non-OG'}"
            f" to {'OG' if og_status.get('isNowOG') else 'non-OG'}"
        )

    preview = {
        "twitterHandle": backup.get("twitter_handle"),
        "currentPoints": current_points,
        "backupPoints": backup_points,
        "pointDifference": point_difference,
        "backupDate": backup.get("backup_date"),
        "ogStatus": {
            "current": {"isOG": user_is_og, "isRewarded": bool(profile.get("is_og_rewarded"))},
            "backup": og_status,
        },
        "sessionPoints": {
            "current": current_points - (OG_MIN_TOTAL if user_is_og else MIN_TOTAL),
            "backup": snapshot.get("session_points") or {},
        },
    }
    if warning.strip():
        preview["warning"] = warning.strip()
    return preview


def _claim_backup(client, backup: Dict[str, Any], restored_at: str) -> None:
    """Flip is_restored only if it is still False; a lost race reads as already restored."""
    try:
        rows = (
            client.table(BACKUP_TABLE)
            .update({"is_restored": True, "restored_date": restored_at})
            .eq("id", backup["id"])
            .eq("is_restored", False)
            .execute()
            .data
            or []
        )
    except Exception as exc:
        _logger().error("Could not claim backup %s: %s", backup.get("id"), exc)
        raise RecoveryServiceError("Failed to restore points", status_code=500) from exc
    if not rows:
        raise RecoveryServiceError("No valid backup found", status_code=404)


def _release_backup(client, backup: Dict[str, Any]) -> None:
    try:
        client.table(BACKUP_TABLE).update({"is_restored": False, "restored_date": None}).eq(
            "id", backup["id"]
        ).execute()
    except Exception as exc:
        _logger().error("Backup %s left claimed after a failed restore: %s", backup.get("id"), exc)


def restore_points(client, backup_id: Optional[str] = None, twitter_handle: Optional[str] = None) -> Dict[str, Any]:
    """Apply a backup snapshot. The snapshot is then terminal and cannot be restored again.

    The backup is claimed before points are touched, so a failure part way
    through never leaves a backup that can be applied twice.
    """
    backup = find_restorable_backup(client, backup_id, twitter_handle)
    _, profile = _backup_owner(client, backup)

    snapshot = backup.get("points_snapshot") or {}
    og_status = snapshot.get("og_status") or {}
    current_points = int(profile.get("points") or 0)
    backup_points = int(snapshot.get("points") or 0)
    restored_at = now_iso()

    _claim_backup(client, backup, restored_at)

    try:
        client.table("user_profiles").update(
            {"points": backup_points, "is_og_rewarded": bool(og_status.get("isNowOG"))}
        ).eq("user_id", backup["user_id"]).execute()
    except Exception as exc:
        _logger().error("Restore failed for backup %s: %s", backup.get("id"), exc)
        _release_backup(client, backup)
        raise RecoveryServiceError("Failed to restore points", status_code=500) from exc

    try:
        client.table(LOG_TABLE).insert(
            {
                "user_id": backup["user_id"],
                "twitter_handle": backup.get("twitter_handle"),
                "old_points": current_points,
                "new_points": backup_points,
                "og_status": og_status,
                "session_points": snapshot.get("session_points") or {},
                "timestamp": restored_at,
                "operation": "restore",
                "backup_id": backup["id"],
            }
        ).execute()
    except Exception as exc:
        _logger().error("Restore log for backup %s not written: %s", backup.get("id"), exc)
        raise RecoveryServiceError("Points restored but the restore log could not be written", status_code=500) from exc

    send_user_notification(
        client,
        backup["user_id"],
        "points_restored",
        "Points Restored",
        f"Your points have been restored to {backup_points:,}. Please refresh your profile to see the update.",
        {"oldPoints": current_points, "newPoints": backup_points, "difference": backup_points - current_points},
    )

    return {
        "twitterHandle": backup.get("twitter_handle"),
        "oldPoints": current_points,
        "restoredPoints": backup_points,
        "backupDate": backup.get("backup_date"),
    }


# ====== Dashboard ======

def recovery_stats(client) -> Dict[str, Any]:
    logs = client.table(LOG_TABLE).select("*").order("timestamp", desc=True).execute().data or []
    applied = [log for log in logs if not log.get("error")]

    largest = None
    for log in applied:
        difference = int(log.get("new_points") or 0) - int(log.get("old_points") or 0)
        if largest is None or abs(difference) > abs(largest["difference"]):
            largest = {
                "twitterHandle": log.get("twitter_handle"),
                "oldPoints": log.get("old_points"),
                "newPoints": log.get("new_points"),
                "difference": difference,
            }

    return {
        "totalUsersProcessed": len(applied),
        "totalPointsRecovered": sum(
            int(log.get("new_points") or 0) - int(log.get("old_points") or 0) for log in applied
        ),
        "largestPointChange": largest
        or {"twitterHandle": "", "oldPoints": 0, "newPoints": 0, "difference": 0},
        "recentRecoveries": [
            {
                "twitterHandle": log.get("twitter_handle"),
                "oldPoints": log.get("old_points"),
                "newPoints": log.get("new_points"),
                "timestamp": log.get("timestamp"),
                "operation": log.get("operation"),
                "ogStatus": log.get("og_status"),
            }
            for log in applied[:RECENT_RECOVERIES]
        ],
        "errorLogs": [
            {"twitterHandle": log.get("twitter_handle"), "error": log.get("error"), "timestamp": log.get("timestamp")}
            for log in logs
            if log.get("error")
        ],
    }


def _logger():
    if has_app_context():
        return current_app.logger
    return logging.getLogger(__name__)
