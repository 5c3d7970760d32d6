from datetime import date, datetime, timedelta

import pytest

from app import EXTENSION_KEY, create_app, shutdown_app
from training_attendance.modules.qr_generator import parse_attendance_url

from conftest import PASSWORD

ADMIN_SECRET = "test-admin-secret"


@pytest.fixture
def app(tmp_path):
    application = create_app("testing", {
        "DATABASE_PATH": tmp_path / "app.db",
        "BASE_URL": "https://attendance.example.com",
    })
    yield application
    shutdown_app(application)


@pytest.fixture
def services(app):
    return app.extensions[EXTENSION_KEY]


def make_account(services, email, role="trainee", full_name=None):
    return services["auth_manager"].create_user(
        email, PASSWORD, full_name or email.split("@")[0].title(), role=role, status="active"
    )


def login(app, email):
    client = app.test_client()
    response = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200
    return client


@pytest.fixture
def classroom(app, services):
    """Trainer, two enrolled trainees and a session running today."""
    make_account(services, "trainer@example.com", "trainer", "Tina Trainer")
    alice = make_account(services, "alice@example.com", full_name="Alice Archer")
    bob = make_account(services, "bob@example.com", full_name="Bob Baker")
    trainer_client = login(app, "trainer@example.com")

    response = trainer_client.post("/api/sessions", json={
        "title": "Safety Induction",
        "scheduledDate": date.today().isoformat(),
        "startTime": "00:00",
        "endTime": "23:59",
        "location": "Room 4",
    })
    assert response.status_code == 201
    session_id = response.get_json()["session"]["id"]

    response = trainer_client.post(f"/api/sessions/{session_id}/participants",
                                   json={"userIds": [alice["id"], bob["id"]]})
    assert response.get_json()["assigned"] == 2

    response = trainer_client.post(f"/api/sessions/{session_id}/start")
    assert response.status_code == 200
    token, _ = parse_attendance_url(response.get_json()["qr"]["url"])

    return {
        "session_id": session_id,
        "token": token,
        "trainer": trainer_client,
        "alice": alice,
        "bob": bob,
    }


def test_bootstrap_admin(app):
    client = app.test_client()

    response = client.post("/api/admin/bootstrap", json={
        "email": "root@example.com", "password": PASSWORD, "adminSecret": "guess"
    })
    assert response.status_code == 401
    assert response.get_json()["message"] == "Unauthorized"

    response = client.post("/api/admin/bootstrap", json={"adminSecret": ADMIN_SECRET})
    assert response.status_code == 400
    assert response.get_json()["message"] == "Email and password required"

    response = client.post("/api/admin/bootstrap", json={
        "email": "root@example.com", "password": PASSWORD, "fullName": "Root", "adminSecret": ADMIN_SECRET
    })
    body = response.get_json()
    assert response.status_code == 200
    assert body["message"] == "Admin user created successfully"
    assert body["userId"]

    admin_client = login(app, "root@example.com")
    assert admin_client.get("/api/auth/me").get_json()["user"]["role"] == "admin"


def test_bootstrap_without_configured_secret(tmp_path):
    application = create_app("testing", {
        "DATABASE_PATH": tmp_path / "nosecret.db",
        "ADMIN_CREATION_SECRET": None,
    })
    try:
        response = application.test_client().post("/api/admin/bootstrap", json={
            "email": "root@example.com", "password": PASSWORD, "adminSecret": "anything"
        })
        assert response.status_code == 500
        assert response.get_json()["message"] == "Server misconfiguration"
    finally:
        shutdown_app(application)


def test_invalid_configuration_is_rejected(tmp_path):
    with pytest.raises(RuntimeError):
        create_app("testing", {
            "DATABASE_PATH": tmp_path / "bad.db",
            "ATTENDANCE_LATE_THRESHOLD_MINUTES": 40,
            "ATTENDANCE_PARTIAL_THRESHOLD_MINUTES": 10,
        })


def test_configured_grace_period_classifies_scans(tmp_path):
    application = create_app("testing", {
        "DATABASE_PATH": tmp_path / "grace.db",
        "ATTENDANCE_LATE_THRESHOLD_MINUTES": 5,
        "ATTENDANCE_PARTIAL_THRESHOLD_MINUTES": 10,
    })
    try:
        services = application.extensions[EXTENSION_KEY]
        trainer = make_account(services, "trainer@example.com", "trainer")
        late = make_account(services, "late@example.com")
        partial = make_account(services, "partial@example.com")
        training_session = services["session_manager"].create_session(
            "Forklift Basics", "2026-03-02", "09:00", "10:00", trainer_id=trainer["id"]
        )
        session_id = training_session["id"]
        services["participant_manager"].enroll(session_id, late["id"])
        services["participant_manager"].enroll(session_id, partial["id"])
        token = services["session_manager"].start_session(
            session_id, now=datetime(2026, 3, 2, 8, 55)
        )["qr"]["token"]
        attendance_manager = services["attendance_manager"]

        first = attendance_manager.record_scan(token, session_id, late["id"], now=datetime(2026, 3, 2, 9, 10))
        second = attendance_manager.record_scan(token, session_id, partial["id"], now=datetime(2026, 3, 2, 9, 11))

        assert (first.status, first.attendance_type) == ("late", "late")
        assert (second.status, second.attendance_type) == ("late", "partial")
    finally:
        shutdown_app(application)


def test_registration_and_approval(app, services):
    make_account(services, "admin@example.com", "admin")
    client = app.test_client()

    response = client.post("/api/auth/register", json={
        "email": "newbie@example.com", "password": PASSWORD, "fullName": "New Bie"
    })
    assert response.status_code == 201
    user_id = response.get_json()["user"]["id"]

    assert client.post("/api/auth/login", json={
        "email": "newbie@example.com", "password": PASSWORD
    }).status_code == 200
    assert client.get("/api/auth/me").get_json()["user"]["status"] == "pending"

    response = client.get("/api/sessions")
    assert response.status_code == 403
    assert response.get_json()["reason"] == "pending_approval"

    admin_client = login(app, "admin@example.com")
    pending = admin_client.get("/api/admin/users?status=pending").get_json()["users"]
    assert [u["id"] for u in pending] == [user_id]
    assert admin_client.post(f"/api/admin/users/{user_id}/approve").status_code == 200

    assert client.get("/api/sessions").status_code == 200


def test_login_failures(app, services):
    make_account(services, "alice@example.com")
    client = app.test_client()

    response = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "Nope12345"})
    assert response.status_code == 401
    assert response.get_json()["reason"] == "unauthorized"

    response = client.post("/api/auth/login", json={"email": "alice@example.com"})
    assert response.status_code == 400


def test_endpoints_require_login(app):
    client = app.test_client()

    assert client.get("/api/sessions").status_code == 401
    response = client.post("/api/attendance/mark", json={"token": "t", "session": "s"})
    assert response.status_code == 401
    assert response.get_json()["message"] == "Authentication required"


def test_trainee_cannot_manage_sessions(app, services):
    make_account(services, "alice@example.com")
    client = login(app, "alice@example.com")

    response = client.post("/api/sessions", json={
        "title": "Rogue", "scheduledDate": "2026-03-02", "startTime": "09:00", "endTime": "10:00"
    })
    assert response.status_code == 403
    assert response.get_json()["reason"] == "forbidden"


def test_create_session_requires_fields(app, services):
    make_account(services, "trainer@example.com", "trainer")
    client = login(app, "trainer@example.com")

    response = client.post("/api/sessions", json={"title": "No schedule"})
    assert response.status_code == 400
    assert response.get_json()["reason"] == "invalid_payload"

    response = client.post("/api/sessions", json={
        "title": "Bad grace", "scheduledDate": "2026-03-02", "startTime": "09:00",
        "endTime": "10:00", "lateThresholdMinutes": "abc",
    })
    assert response.status_code == 400
    assert response.get_json()["reason"] == "invalid_payload"


def test_scan_and_roster(app, classroom):
    alice_client = login(app, "alice@example.com")
    session_id = classroom["session_id"]

    response = alice_client.get("/scan", query_string={"token": classroom["token"], "session": session_id})
    body = response.get_json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["already_recorded"] is False

    response = alice_client.post("/api/attendance/mark", json={
        "token": classroom["token"], "sessionId": session_id
    })
    assert response.get_json()["already_recorded"] is True

    roster = classroom["trainer"].get(f"/api/sessions/{session_id}/attendance").get_json()
    statuses = {row["full_name"]: row["status"] for row in roster["records"]}
    assert statuses["Alice Archer"] in ("present", "late")
    assert statuses["Bob Baker"] == "pending"
    assert roster["summary"]["total"] == 2

    history = alice_client.get("/api/attendance/me").get_json()["attendance"]
    assert [h["session_id"] for h in history] == [session_id]

    inbox = alice_client.get("/api/notifications?unread=true").get_json()["notifications"]
    assert "attendance_confirmation" in [n["type"] for n in inbox]
    assert alice_client.post("/api/notifications/read-all").get_json()["updated"] == len(inbox)
    assert alice_client.post("/api/notifications/missing/read").status_code == 404


def test_refreshed_code_rejects_old_token(app, classroom):
    session_id = classroom["session_id"]
    response = classroom["trainer"].post(f"/api/sessions/{session_id}/qr/refresh")
    fresh_token, _ = parse_attendance_url(response.get_json()["qr"]["url"])

    bob_client = login(app, "bob@example.com")
    response = bob_client.post("/api/attendance/mark", json={
        "token": classroom["token"], "session": session_id
    })
    assert response.status_code == 410
    assert response.get_json()["reason"] == "qr_token_mismatch"

    response = bob_client.post("/api/attendance/mark", json={"token": fresh_token, "session": session_id})
    assert response.get_json()["success"] is True


def test_scan_rejections(app, services, classroom):
    make_account(services, "stranger@example.com")
    stranger = login(app, "stranger@example.com")

    response = stranger.post("/api/attendance/mark", json={
        "token": classroom["token"], "session": classroom["session_id"]
    })
    assert response.status_code == 403
    assert response.get_json()["reason"] == "not_enrolled"

    response = stranger.post("/api/attendance/mark", json={"token": classroom["token"], "session": "missing"})
    assert response.status_code == 404

    response = stranger.post("/api/attendance/mark", json={"token": classroom["token"]})
    assert response.status_code == 400


def test_qr_code_for_staff_only(app, classroom):
    session_id = classroom["session_id"]

    response = classroom["trainer"].get(f"/api/sessions/{session_id}/qr")
    qr = response.get_json()["qr"]
    assert qr["image"].startswith("data:image/png;base64,")
    assert parse_attendance_url(qr["url"])[0] == classroom["token"]

    response = classroom["trainer"].get(f"/api/sessions/{session_id}/qr?format=png")
    assert response.mimetype == "image/png"

    alice_client = login(app, "alice@example.com")
    assert alice_client.get(f"/api/sessions/{session_id}/qr").status_code == 403


def test_manual_override(app, classroom):
    session_id = classroom["session_id"]
    bob_id = classroom["bob"]["id"]

    response = classroom["trainer"].put(f"/api/sessions/{session_id}/attendance/{bob_id}",
                                        json={"status": "partial"})
    record = response.get_json()["record"]
    assert record["status"] == "late"
    assert record["attendance_type"] == "partial"

    alice_client = login(app, "alice@example.com")
    response = alice_client.put(f"/api/sessions/{session_id}/attendance/{bob_id}", json={"status": "present"})
    assert response.status_code == 403


def test_join_request_flow(app, services, classroom):
    make_account(services, "walkin@example.com", full_name="Walk In")
    walk_in = login(app, "walkin@example.com")
    session_id = classroom["session_id"]

    response = walk_in.post(f"/api/sessions/{session_id}/join-requests")
    assert response.status_code == 201
    request_id = response.get_json()["request"]["id"]
    assert walk_in.post(f"/api/sessions/{session_id}/join-requests").status_code == 409

    requests_listed = classroom["trainer"].get(f"/api/sessions/{session_id}/join-requests").get_json()
    assert [r["id"] for r in requests_listed["requests"]] == [request_id]

    response = classroom["trainer"].post(f"/api/join-requests/{request_id}/approve")
    assert response.get_json()["request"]["status"] == "approved"
    assert response.get_json()["record"]["status"] in ("present", "late")


def test_end_session_marks_absent(app, classroom):
    session_id = classroom["session_id"]

    response = classroom["trainer"].post(f"/api/sessions/{session_id}/end")
    body = response.get_json()
    assert body["session"]["status"] == "completed"
    assert body["marked_absent"] == 2

    response = classroom["trainer"].post(f"/api/sessions/{session_id}/end")
    assert response.status_code == 409
    assert response.get_json()["reason"] == "invalid_state"


def test_export_download(app, classroom):
    session_id = classroom["session_id"]

    response = classroom["trainer"].get(f"/api/sessions/{session_id}/export?format=csv")
    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    assert "attendance-Safety Induction-" in response.headers["Content-Disposition"]
    assert response.data.startswith(b'"Session Attendance Report"')

    response = classroom["trainer"].get(f"/api/sessions/{session_id}/export?format=doc")
    assert response.status_code == 400


def test_attendance_stream(app, services, classroom):
    session_id = classroom["session_id"]
    alice_client = login(app, "alice@example.com")
    alice_client.get("/scan", query_string={"token": classroom["token"], "session": session_id})
    assert alice_client.get(f"/api/sessions/{session_id}/attendance/stream").status_code == 403

    response = classroom["trainer"].get(f"/api/sessions/{session_id}/attendance/stream", buffered=False)
    assert response.mimetype == "text/event-stream"

    chunk = next(iter(response.response))
    response.close()

    assert b"event: attendance" in chunk
    assert classroom["alice"]["id"].encode() in chunk


def test_auto_complete_endpoint(app, services, classroom):
    yesterday = date.today() - timedelta(days=1)
    overdue = services["session_manager"].create_session(
        "Yesterday's Session", yesterday, "09:00", "10:00"
    )
    services["session_manager"].start_session(
        overdue["id"], now=datetime.combine(yesterday, datetime.min.time()).replace(hour=9)
    )

    response = app.test_client().post("/api/sessions/auto-complete")
    body = response.get_json()

    assert response.status_code == 200
    assert body["success"] is True
    assert body["sessionIds"] == [overdue["id"]]
    assert classroom["session_id"] not in body["sessionIds"]


def test_categories_api(app, services):
    make_account(services, "admin@example.com", "admin")
    make_account(services, "trainer@example.com", "trainer")
    trainee = make_account(services, "alice@example.com")
    admin_client = login(app, "admin@example.com")
    trainer_client = login(app, "trainer@example.com")

    response = admin_client.post("/api/categories", json={"name": "Night Shift"})
    assert response.status_code == 201
    category_id = response.get_json()["category"]["id"]

    assert trainer_client.post("/api/categories", json={"name": "Other"}).status_code == 403
    response = admin_client.post(f"/api/categories/{category_id}/members", json={"userId": trainee["id"]})
    assert response.get_json()["added"] is True

    categories = trainer_client.get("/api/categories").get_json()["categories"]
    assert {c["name"]: c["member_count"] for c in categories}["Night Shift"] == 1

    assert admin_client.delete(f"/api/categories/{category_id}/members/{trainee['id']}").get_json()["success"]
    assert admin_client.delete(f"/api/categories/{category_id}").status_code == 200
    assert admin_client.delete(f"/api/categories/{category_id}").status_code == 404
