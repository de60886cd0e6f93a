"""JSON endpoints over the device-local store and its sync queue."""

from __future__ import annotations

import uuid

from flask import Blueprint, current_app, jsonify, request, session

from accounts.auth import get_twitter_auth

from .local_store import STORAGE_KEYS, LocalStore, SQLAlchemyStorageBackend
from .migration import migrate_local_profile

DEVICE_SESSION_KEY = "device_id"

mirror_blueprint = Blueprint("mirror", __name__, url_prefix="/api/mirror")


def _device_id() -> str:
    device_id = session.get(DEVICE_SESSION_KEY)
    if not device_id:
        device_id = uuid.uuid4().hex
        session[DEVICE_SESSION_KEY] = device_id
        session.permanent = True
    return device_id


def _store() -> LocalStore:
    return LocalStore(SQLAlchemyStorageBackend(_device_id()))


def _manager():
    return current_app.extensions["eva_mirror"]


def _unknown_key(key: str):
    if key in STORAGE_KEYS.values():
        return None
    return jsonify({"error": "unknown_storage_key", "key": key}), 404


@mirror_blueprint.get("/storage/<key>")
def read_value(key: str):
    unknown = _unknown_key(key)
    if unknown:
        return unknown
    return jsonify({"key": key, "value": _manager().read(_store(), key, None)})


@mirror_blueprint.put("/storage/<key>")
def write_value(key: str):
    unknown = _unknown_key(key)
    if unknown:
        return unknown
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or "value" not in payload:
        return jsonify({"error": "missing_value"}), 400

    auth = get_twitter_auth() or {}
    item = _manager().write(_store(), key, payload["value"], auth.get("userId"))
    return jsonify({"success": True, "key": key, "queued": item is not None})


@mirror_blueprint.delete("/storage/<key>")
def remove_value(key: str):
    unknown = _unknown_key(key)
    if unknown:
        return unknown
    _store().remove(key)
    return jsonify({"success": True, "key": key})


@mirror_blueprint.get("/queue")
def queue_status():
    return jsonify(_manager().queue_status())


@mirror_blueprint.post("/sync")
def force_sync():
    if not get_twitter_auth():
        return jsonify({"error": "Authentication required"}), 401
    if not current_app.config.get("SUPABASE_CLIENT"):
        return jsonify({"error": "supabase_unavailable"}), 503

    result = _manager().force_sync()
    if result is None:
        return jsonify({"success": False, "skipped": True, "reason": "sync_in_progress"}), 409
    return jsonify({"success": True, "result": result.to_dict()})


@mirror_blueprint.post("/migrate")
def migrate():
    auth = get_twitter_auth()
    if not auth:
        return jsonify({"error": "Authentication required"}), 401
    client = current_app.config.get("SUPABASE_CLIENT")
    if not client:
        return jsonify({"error": "supabase_unavailable"}), 503

    try:
        result = migrate_local_profile(client, _store(), auth["twitterHandle"])
    except Exception as exc:
        current_app.logger.error("[Migration] Error for @%s: %s", auth.get("twitterHandle"), exc)
        return jsonify({"migrated": False, "error": "Migration failed"}), 500

    status = 404 if result.error == "User not found" else 200
    return jsonify(result.to_dict()), status
