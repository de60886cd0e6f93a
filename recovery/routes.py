"""Admin JSON endpoints for point recovery, backups, and restores."""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from accounts.auth import admin_required
from accounts.service import normalize_handle

from . import service

recovery_api_blueprint = Blueprint("recovery_api", __name__, url_prefix="/api")


def _client():
    client = current_app.config.get("SUPABASE_CLIENT")
    if not client:
        raise service.RecoveryServiceError(
            "Supabase unavailable", status_code=503, payload={"success": False, "error": "supabase_unavailable"}
        )
    return client


def _internal_error(label: str, exc: Exception):
    current_app.logger.error("[%s] Error: %s", label, exc)
    return jsonify({"success": False, "error": "Internal server error"}), 500


@recovery_api_blueprint.post("/recover-points")
@admin_required
def recover_points():
    payload = request.get_json(silent=True) or {}
    twitter_handle = normalize_handle(payload.get("twitterHandle"))
    if not twitter_handle:
        return jsonify({"error": "Twitter handle is required"}), 400
    dry_run = payload.get("dryRun", True) is not False

    try:
        recovery_log = service.recover_user_points(_client(), twitter_handle, dry_run)
    except service.RecoveryServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        return _internal_error("RecoverPoints", exc)

    if not recovery_log:
        return jsonify({"error": "Recovery failed or user not found"}), 404
    return jsonify({"success": True, "data": recovery_log})


@recovery_api_blueprint.post("/batch-recover-points")
@admin_required
def batch_recover_points():
    payload = request.get_json(silent=True) or {}
    try:
        options = service.BatchRecoveryOptions.from_payload(
            payload,
            default_batch_size=current_app.config.get("RECOVERY_BATCH_SIZE", service.DEFAULT_BATCH_SIZE),
            default_max_point_change=current_app.config.get(
                "RECOVERY_MAX_POINT_CHANGE", service.DEFAULT_MAX_POINT_CHANGE
            ),
        )
        result = service.batch_recover_points(_client(), options)
    except service.RecoveryServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        return _internal_error("BatchRecoverPoints", exc)

    return jsonify({"success": True, "dryRun": options.dry_run, "data": result})


@recovery_api_blueprint.get("/list-backups")
@admin_required
def list_backups():
    twitter_handle = normalize_handle(request.args.get("twitter_handle"))
    if not twitter_handle:
        return jsonify({"success": False, "error": "Twitter handle is required"}), 400
    try:
        limit = int(request.args.get("limit") or 10)
    except ValueError:
        return jsonify({"success": False, "error": "limit must be an integer"}), 400
    include_restored = request.args.get("include_restored") == "true"

    try:
        backups = service.list_backups(_client(), twitter_handle, limit, include_restored)
    except service.RecoveryServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        current_app.logger.error("[ListBackups] Error: %s", exc)
        return jsonify({"success": False, "error": "Failed to fetch backups"}), 500

    return jsonify({"success": True, "backups": backups})


@recovery_api_blueprint.post("/preview-restore")
@admin_required
def preview_restore():
    payload = request.get_json(silent=True) or {}
    try:
        selector = service.BackupSelector.from_payload(payload)
        preview = service.preview_restore(
            _client(),
            selector.backup_id,
            selector.twitter_handle,
            large_change_threshold=current_app.config.get(
                "RECOVERY_LARGE_CHANGE_THRESHOLD", service.LARGE_CHANGE_THRESHOLD
            ),
        )
    except service.RecoveryServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        return _internal_error("PreviewRestore", exc)

    return jsonify({"success": True, "preview": preview})


@recovery_api_blueprint.post("/restore-points")
@admin_required
def restore_points():
    payload = request.get_json(silent=True) or {}
    try:
        selector = service.BackupSelector.from_payload(payload)
        restored = service.restore_points(_client(), selector.backup_id, selector.twitter_handle)
    except service.RecoveryServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        return _internal_error("RestorePoints", exc)

    current_app.logger.info(
        "Restored @%s to %s points (was %s)",
        restored["twitterHandle"],
        restored["restoredPoints"],
        restored["oldPoints"],
    )
    return jsonify({"success": True, "restored": restored})


@recovery_api_blueprint.get("/point-recovery/stats")
@admin_required
def point_recovery_stats():
    try:
        stats = service.recovery_stats(_client())
    except service.RecoveryServiceError as exc:
        return jsonify(exc.payload), exc.status_code
    except Exception as exc:
        return _internal_error("PointRecoveryStats", exc)
    return jsonify({"success": True, "stats": stats})
