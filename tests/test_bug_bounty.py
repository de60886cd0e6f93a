import io

from tests.conftest import ADMIN_HANDLE, seed_user


def _submit(client, **extra):
    data = {"title": "Broken button", "description": "Clicking does nothing"}
    data.update(extra)
    return client.post("/api/bug-bounty/submit", data=data, content_type="multipart/form-data")


def test_submit_requires_login_and_known_user(client, login, fake) -> None:
    assert _submit(client).status_code == 401

    login("stranger")
    resp = _submit(client)
    assert resp.status_code == 404


def test_submit_validates_title_and_description(client, login, fake) -> None:
    seed_user(fake, "nova")
    login("nova")

    resp = _submit(client, title="", description="x")

    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Title and description are required"}


def test_submit_stores_report_and_valid_attachments(client, login, fake) -> None:
    seed_user(fake, "nova")
    login("nova")

    resp = _submit(
        client,
        email="nova@example.com",
        files=[
            (io.BytesIO(b"\x89PNG fake"), "shot.png", "image/png"),
            (io.BytesIO(b"MZ"), "virus.exe", "application/octet-stream"),
            (io.BytesIO(b"x" * (5 * 1024 * 1024 + 1)), "huge.pdf", "application/pdf"),
        ],
    )

    body = resp.get_json()
    assert resp.status_code == 200
    report = body["bugReport"]
    assert report["severity"] == "medium"
    assert report["category"] == "functionality"
    assert report["twitter_handle"] == "nova"
    assert report["email"] == "nova@example.com"
    [attachment] = report["attachments"]
    assert attachment["file_name"] == "shot.png"
    assert attachment["storage_path"].startswith(f"{report['id']}/")
    assert attachment["storage_path"].endswith(".png")
    assert list(fake.buckets["bug-report-attachments"]) == [attachment["storage_path"]]


def test_failed_upload_keeps_report(client, login, fake) -> None:
    seed_user(fake, "nova")
    login("nova")
    fake.fail_uploads = True

    resp = _submit(client, files=[(io.BytesIO(b"img"), "shot.jpg", "image/jpeg")])

    assert resp.status_code == 200
    assert resp.get_json()["bugReport"]["attachments"] == []
    assert len(fake.rows("bug_reports")) == 1


def test_list_paginates_and_signs_attachment_urls(client, fake) -> None:
    reports = fake.seed(
        "bug_reports",
        *[
            {"title": f"bug {i}", "status": "open", "severity": "high" if i % 2 else "low", "created_at": f"2026-01-0{i}"}
            for i in range(1, 6)
        ],
    )
    fake.seed("bug_report_attachments", {"bug_report_id": reports[4]["id"], "storage_path": "r5/a.png", "file_name": "a.png"})

    body = client.get("/api/bug-bounty/list?limit=2").get_json()

    assert body["total"] == 5
    assert body["totalPages"] == 3
    assert [r["title"] for r in body["reports"]] == ["bug 5", "bug 4"]
    assert body["reports"][0]["attachments"][0]["url"] == (
        "https://storage.test/bug-report-attachments/r5/a.png?expires=3600"
    )

    high = client.get("/api/bug-bounty/list?severity=high").get_json()
    assert [r["title"] for r in high["reports"]] == ["bug 5", "bug 3", "bug 1"]


def test_list_user_only_without_login_is_empty(client, fake) -> None:
    fake.seed("bug_reports", {"title": "x", "created_at": "2026-01-01"})

    body = client.get("/api/bug-bounty/list?userOnly=true").get_json()

    assert body == {"reports": [], "total": 0, "page": 1, "totalPages": 0}


def test_award_points_is_admin_only(client, login, fake) -> None:
    assert client.post("/api/bug-bounty/award-points", json={}).status_code == 401
    login("nova")
    assert client.post("/api/bug-bounty/award-points", json={"bugReportId": "r1", "points": 10}).status_code == 403
    assert client.get("/api/bug-bounty/award-points").get_json() == {"canAwardPoints": False, "handle": "nova"}


def test_award_points_calls_rpc(client, login, fake) -> None:
    admin, _ = seed_user(fake, ADMIN_HANDLE)
    fake.rpc_handlers["award_bug_bounty_points"] = lambda params: True
    login(ADMIN_HANDLE)

    resp = client.post("/api/bug-bounty/award-points", json={"bugReportId": "r1", "points": 100, "customPoints": 250})

    assert resp.get_json() == {"success": True, "message": "Successfully awarded 250 points", "pointsAwarded": 250}
    assert fake.rpc_calls == [
        ("award_bug_bounty_points", {"p_bug_report_id": "r1", "p_points": 250, "p_awarded_by": admin["id"]})
    ]
    assert client.get("/api/bug-bounty/award-points").get_json()["canAwardPoints"] is True


def test_award_points_already_awarded_is_a_client_error(client, login, fake) -> None:
    seed_user(fake, ADMIN_HANDLE)

    def _already(params):
        raise RuntimeError("Points have already been awarded for report")

    fake.rpc_handlers["award_bug_bounty_points"] = _already
    login(ADMIN_HANDLE)

    resp = client.post("/api/bug-bounty/award-points", json={"bugReportId": "r1", "points": 100})
    assert resp.status_code == 400

    bad = client.post("/api/bug-bounty/award-points", json={"bugReportId": "r1", "points": 0})
    assert bad.status_code == 400
    assert bad.get_json() == {"error": "Valid points amount is required"}
