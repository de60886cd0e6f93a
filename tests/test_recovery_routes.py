from tests.conftest import seed_sessions, seed_user


def test_recovery_endpoints_require_admin(client, login) -> None:
    assert client.post("/api/recover-points", json={"twitterHandle": "nova"}).status_code == 401

    login("someone")
    resp = client.post("/api/recover-points", json={"twitterHandle": "nova"})
    assert resp.status_code == 403
    assert client.get("/api/list-backups?twitter_handle=nova").status_code == 403


def test_recover_points_defaults_to_dry_run(admin_client, fake) -> None:
    user, _ = seed_user(fake, "nova", points=1000)
    seed_sessions(fake, user["id"], 500)

    resp = admin_client.post("/api/recover-points", json={"twitterHandle": "nova"})

    body = resp.get_json()
    assert resp.status_code == 200
    assert body["success"] is True
    assert body["data"]["dry_run"] is True
    assert body["data"]["new_points"] == 1500
    assert fake.rows("user_profiles")[0]["points"] == 1000


def test_recover_points_validation_and_not_found(admin_client) -> None:
    assert admin_client.post("/api/recover-points", json={}).status_code == 400
    resp = admin_client.post("/api/recover-points", json={"twitterHandle": "ghost"})
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Recovery failed or user not found"}


def test_batch_recover_only_mutates_when_dry_run_is_false(admin_client, fake) -> None:
    user, _ = seed_user(fake, "nova", points=1000)
    seed_sessions(fake, user["id"], 500)

    dry = admin_client.post("/api/batch-recover-points", json={"delayBetweenBatches": 0}).get_json()
    assert dry["dryRun"] is True
    assert fake.rows("user_profiles")[0]["points"] == 1000

    applied = admin_client.post(
        "/api/batch-recover-points", json={"dryRun": False, "delayBetweenBatches": 0}
    ).get_json()
    assert applied["dryRun"] is False
    assert applied["data"]["usersUpdated"] == 1
    assert fake.rows("user_profiles")[0]["points"] == 1500


def test_batch_recover_rejects_bad_options(admin_client) -> None:
    resp = admin_client.post("/api/batch-recover-points", json={"batchSize": 0})
    assert resp.status_code == 400
    assert "batchSize" in resp.get_json()["error"]


def test_backup_list_preview_and_restore_flow(admin_client, fake) -> None:
    user, _ = seed_user(fake, "nova", points=1000)
    seed_sessions(fake, user["id"], 500)
    admin_client.post("/api/recover-points", json={"twitterHandle": "nova", "dryRun": False})

    assert admin_client.get("/api/list-backups").status_code == 400
    backups = admin_client.get("/api/list-backups?twitter_handle=nova").get_json()["backups"]
    assert len(backups) == 1
    backup_id = backups[0]["id"]

    preview = admin_client.post("/api/preview-restore", json={"backupId": backup_id}).get_json()
    assert preview["preview"]["pointDifference"] == -500
    assert "warning" not in preview["preview"]

    restored = admin_client.post("/api/restore-points", json={"backupId": backup_id})
    assert restored.status_code == 200
    assert restored.get_json()["restored"]["restoredPoints"] == 1000

    again = admin_client.post("/api/restore-points", json={"backupId": backup_id})
    assert again.status_code == 404
    assert again.get_json() == {"success": False, "error": "No valid backup found"}

    everything = admin_client.get("/api/list-backups?twitter_handle=nova&include_restored=true").get_json()
    assert everything["backups"][0]["isRestored"] is True


def test_restore_requires_a_selector(admin_client) -> None:
    resp = admin_client.post("/api/restore-points", json={})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Either twitterHandle or backupId is required"


def test_stats_endpoint(admin_client, fake) -> None:
    fake.seed("point_recovery_logs", {"twitter_handle": "a", "old_points": 1000, "new_points": 1200, "timestamp": "t1"})

    stats = admin_client.get("/api/point-recovery/stats").get_json()["stats"]

    assert stats["totalUsersProcessed"] == 1
    assert stats["totalPointsRecovered"] == 200


def test_recovery_without_supabase_is_unavailable(app, admin_client) -> None:
    app.config["SUPABASE_CLIENT"] = None
    resp = admin_client.post("/api/recover-points", json={"twitterHandle": "nova"})
    assert resp.status_code == 503
