import re

from fastapi.testclient import TestClient

from campus.core.audit import AuditRecorder
from campus.db.models.audit_log import AuditLog
from campus.db.models.interest import Interest
from campus.services.identity import IdentityService
from conftest import TEST_PASSWORD, make_superadmin, make_user

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _extract_error_payload(response):
    payload = response.json()
    assert payload["success"] is False
    assert "message" in payload
    assert "request_id" in payload
    return payload


def _extract_success_data(response):
    payload = response.json()
    assert payload["success"] is True
    assert "request_id" in payload
    return payload.get("data")


def _register_body(username: str, **extra) -> dict:
    body = {
        "name": f"{username.title()} Student",
        "username": username,
        "email": f"{username}@example.edu",
        "schoolEmail": f"{username}@school.example.edu",
        "password": "hunter22",
        "phone": "+15551234567",
        "dateOfBirth": "2001-09-03",
        "universityName": "Example University",
    }
    body.update(extra)
    return body


def _register(client, username: str, **extra) -> dict:
    response = client.post("/auth/register", json=_register_body(username, **extra))
    assert response.status_code == 201, response.text
    return _extract_success_data(response)


def _superadmin_token(client, session_factory) -> tuple[int, str]:
    with session_factory() as db:
        admin = make_superadmin(db)
        admin_id = admin.id
    response = client.post("/auth/superadmin/login", json={"email": "root@example.edu", "password": TEST_PASSWORD})
    assert response.status_code == 200, response.text
    return admin_id, _extract_success_data(response)["token"]


def _listing_form(title: str = "Graphing calculator") -> dict[str, str]:
    return {
        "title": title,
        "description": "TI-84, works perfectly",
        "price": "25.00",
        "category": "electronics",
        "location": "Library",
    }


def _audit_rows(session_factory, **filters) -> list[AuditLog]:
    with session_factory() as db:
        return db.query(AuditLog).filter_by(**filters).order_by(AuditLog.id).all()


def test_end_to_end_verification_and_contact_approval(client, session_factory, mailer):
    registered = _register(client, "una")
    user_id = registered["user"]["id"]
    user_headers = _auth_header(registered["token"])
    assert registered["user"]["isVerified"] is False
    assert "hashedPassword" not in registered["user"]

    rejected = client.post("/marketplace/listings", data=_listing_form(), headers=user_headers)
    assert rejected.status_code == 403
    assert _extract_error_payload(rejected)["code"] == "unverified"

    _, admin_token = _superadmin_token(client, session_factory)
    admin_headers = _auth_header(admin_token)

    verified = client.put(f"/admin/users/{user_id}/verify", headers=admin_headers)
    assert verified.status_code == 200, verified.text
    assert _extract_success_data(verified)["isVerified"] is True
    assert [to for to, _, _ in mailer.sent] == ["una@example.edu"]

    created = client.post("/marketplace/listings", data=_listing_form(), headers=user_headers)
    assert created.status_code == 201, created.text
    listing = _extract_success_data(created)
    assert listing["contactApproved"] is False
    assert "email" not in listing["seller"]
    assert "phone" not in listing["seller"]

    approved = client.put(f"/admin/users/{user_id}/approve-contact", headers=admin_headers)
    assert approved.status_code == 200, approved.text
    assert _extract_success_data(approved)["listingsUpdated"] == 1

    public_view = client.get(f"/marketplace/listings/{listing['id']}")
    assert public_view.status_code == 200
    data = _extract_success_data(public_view)
    assert data["contactApproved"] is True
    assert data["seller"]["email"] == "una@example.edu"
    assert data["seller"]["phone"] == "+15551234567"

    notifications = client.get("/notifications", headers=user_headers)
    payload = notifications.json()
    assert payload["unreadCount"] == 2
    assert {n["type"] for n in payload["data"]} == {"verification_approved", "contact_approved"}

    read_all = client.put("/notifications/read-all", headers=user_headers)
    assert _extract_success_data(read_all)["updated"] == 2
    count = client.get("/notifications/unread-count", headers=user_headers)
    assert _extract_success_data(count)["unreadCount"] == 0


def test_second_verify_is_rejected(client, session_factory):
    registered = _register(client, "vic")
    _, admin_token = _superadmin_token(client, session_factory)
    headers = _auth_header(admin_token)
    user_id = registered["user"]["id"]

    assert client.put(f"/admin/users/{user_id}/verify", headers=headers).status_code == 200
    again = client.put(f"/admin/users/{user_id}/verify", headers=headers)
    assert again.status_code == 400
    assert _extract_error_payload(again)["code"] == "already_verified"


def test_regular_user_cannot_use_admin_routes(client):
    registered = _register(client, "wes")
    response = client.put(
        f"/admin/users/{registered['user']['id']}/verify",
        headers=_auth_header(registered["token"]),
    )
    assert response.status_code == 403
    assert _extract_error_payload(response)["code"] == "http_403"


def test_login_errors_are_indistinguishable(client, session_factory):
    with session_factory() as db:
        make_user(db, username="xia")

    wrong_password = client.post("/auth/login", json={"email": "xia@example.edu", "password": "nope-nope"})
    unknown_email = client.post("/auth/login", json={"email": "ghost@example.edu", "password": "nope-nope"})

    assert wrong_password.status_code == unknown_email.status_code == 401
    first = _extract_error_payload(wrong_password)
    second = _extract_error_payload(unknown_email)
    first.pop("request_id")
    second.pop("request_id")
    assert first == second


def test_superadmin_login_rejects_regular_user_generically(client, session_factory):
    with session_factory() as db:
        make_user(db, username="yan")

    regular = client.post("/auth/superadmin/login", json={"email": "yan@example.edu", "password": TEST_PASSWORD})
    unknown = client.post("/auth/superadmin/login", json={"email": "who@example.edu", "password": TEST_PASSWORD})
    assert regular.status_code == unknown.status_code == 401
    assert regular.json()["message"] == unknown.json()["message"]
    assert regular.json()["code"] == unknown.json()["code"]


def test_duplicate_registration_conflict(client):
    _register(client, "zed")
    response = client.post(
        "/auth/register",
        json={
            "name": "Zed Again",
            "username": "zed2",
            "email": "zed@example.edu",
            "schoolEmail": "zed2@school.example.edu",
            "password": "hunter22",
            "dateOfBirth": "2001-09-03",
            "universityName": "Example University",
        },
    )
    assert response.status_code == 409
    assert _extract_error_payload(response)["code"] == "duplicate_email"


def test_validation_errors_are_400(client):
    response = client.post("/auth/register", json={"email": "bad"})
    assert response.status_code == 400
    payload = _extract_error_payload(response)
    assert payload["code"] == "validation_error"
    assert payload["errors"]


def test_update_password_flow(client, mailer):
    registered = _register(client, "abe")
    headers = _auth_header(registered["token"])

    short = client.put("/auth/update-password", json={"currentPassword": "hunter22", "newPassword": "abc"}, headers=headers)
    assert short.status_code == 400
    assert _extract_error_payload(short)["code"] == "password_too_short"

    wrong = client.put("/auth/update-password", json={"currentPassword": "wrong", "newPassword": "abcdef"}, headers=headers)
    assert wrong.status_code == 401
    assert _extract_error_payload(wrong)["code"] == "wrong_current_password"

    ok = client.put("/auth/update-password", json={"currentPassword": "hunter22", "newPassword": "abcdef"}, headers=headers)
    assert ok.status_code == 200
    assert [to for to, _, _ in mailer.sent] == ["abe@example.edu"]
    login = client.post("/auth/login", json={"email": "abe@example.edu", "password": "abcdef"})
    assert login.status_code == 200


def test_show_interest_over_http(client, session_factory):
    with session_factory() as db:
        seller = make_user(db, username="bea", is_verified=True)
        buyer = make_user(db, username="cal", is_verified=True)
        seller_id, buyer_id = seller.id, buyer.id

    seller_token = client.post("/auth/login", json={"email": "bea@example.edu", "password": TEST_PASSWORD}).json()["data"]["token"]
    buyer_token = client.post("/auth/login", json={"email": "cal@example.edu", "password": TEST_PASSWORD}).json()["data"]["token"]
    listing = client.post("/marketplace/listings", data=_listing_form(), headers=_auth_header(seller_token)).json()["data"]

    first = client.post(
        f"/marketplace/listings/{listing['id']}/interest",
        json={"message": "Is it still available?"},
        headers=_auth_header(buyer_token),
    )
    assert first.status_code == 201, first.text
    assert _extract_success_data(first)["sellerId"] == seller_id

    second = client.post(f"/marketplace/listings/{listing['id']}/interest", json={}, headers=_auth_header(buyer_token))
    assert second.status_code == 400
    assert _extract_error_payload(second)["code"] == "duplicate_interest"

    own = client.post(f"/marketplace/listings/{listing['id']}/interest", json={}, headers=_auth_header(seller_token))
    assert own.status_code == 400
    assert _extract_error_payload(own)["code"] == "self_interest"

    with session_factory() as db:
        assert db.query(Interest).filter_by(listing_id=listing["id"], buyer_id=buyer_id).count() == 1

    inbox = client.get("/notifications", headers=_auth_header(seller_token)).json()
    [notification] = inbox["data"]
    assert notification["type"] == "listing_interest"
    assert notification["relatedType"] == "Listing"
    assert notification["relatedId"] == listing["id"]


def test_lost_found_broadcast_skips_poster(client, session_factory):
    with session_factory() as db:
        make_user(db, username="dee", is_verified=True)
        make_user(db, username="eli", is_verified=True)
        make_user(db, username="fay", is_verified=False)

    tokens = {
        name: client.post("/auth/login", json={"email": f"{name}@example.edu", "password": TEST_PASSWORD}).json()["data"]["token"]
        for name in ("dee", "eli", "fay")
    }
    response = client.post(
        "/lost-found",
        json={
            "type": "lost",
            "title": "Blue backpack",
            "description": "Left near the gym",
            "location": "Gym",
            "dateLostOrFound": "2026-10-01",
        },
        headers=_auth_header(tokens["dee"]),
    )
    assert response.status_code == 201, response.text

    counts = {
        name: client.get("/notifications/unread-count", headers=_auth_header(token)).json()["data"]["unreadCount"]
        for name, token in tokens.items()
    }
    assert counts == {"dee": 0, "eli": 1, "fay": 0}


def test_audit_records_normalized_ip_and_redacts_password(client, session_factory):
    client.post(
        "/auth/login",
        json={"email": "ghost@example.edu", "password": "top-secret"},
        headers={"X-Forwarded-For": "::1"},
    )
    client.post(
        "/auth/login",
        json={"email": "ghost@example.edu", "password": "top-secret"},
        headers={"X-Forwarded-For": "::ffff:203.0.113.5"},
    )
    client.post(
        "/auth/login",
        json={"email": "ghost@example.edu", "password": "top-secret"},
        headers={"X-Forwarded-For": "2001:db8::5"},
    )

    rows = _audit_rows(session_factory, endpoint="/auth/login")
    assert [row.ip_address for row in rows] == ["127.0.0.1", "203.0.113.5", None]
    first = rows[0]
    assert first.action == "POST /auth/login"
    assert first.method == "POST"
    assert first.resource == "auth"
    assert first.response_status == 401
    assert first.error_message == "Invalid credentials"
    assert first.request_body == {"email": "ghost@example.edu", "password": "[REDACTED]"}


def test_audit_captures_actor_and_resource(client, session_factory):
    registered = _register(client, "gus")
    admin_id, admin_token = _superadmin_token(client, session_factory)
    user_id = registered["user"]["id"]
    client.put(f"/admin/users/{user_id}/verify", headers=_auth_header(admin_token))

    [row] = _audit_rows(session_factory, endpoint=f"/admin/users/{user_id}/verify")
    assert row.user_id == admin_id
    assert row.action == "PUT /admin/users/{id}/verify"
    assert row.resource == "users"
    assert row.resource_id == user_id
    assert row.response_status == 200

    logs = client.get("/admin/audit-logs", params={"method": "put"}, headers=_auth_header(admin_token))
    assert logs.status_code == 200
    assert [item["endpoint"] for item in _extract_success_data(logs)] == [f"/admin/users/{user_id}/verify"]

    stats = client.get("/admin/audit-logs/stats", headers=_auth_header(admin_token))
    assert _extract_success_data(stats)["totalLogs"] >= 3


def test_reads_and_health_are_not_audited(client, session_factory):
    client.get("/health")
    client.get("/marketplace/listings")
    assert _audit_rows(session_factory) == []


def test_audit_failure_does_not_change_response(client, session_factory):
    def broken_factory():
        raise RuntimeError("audit store down")

    client.app.state.audit_recorder = AuditRecorder(broken_factory)
    registered = _register(client, "hal")
    assert registered["user"]["username"] == "hal"


def _login_token(client, username: str, password: str = TEST_PASSWORD) -> str:
    response = client.post("/auth/login", json={"email": f"{username}@example.edu", "password": password})
    assert response.status_code == 200, response.text
    return _extract_success_data(response)["token"]


def test_listing_images_are_served_from_uploads(client, session_factory):
    with session_factory() as db:
        make_user(db, username="ivo", is_verified=True)
    headers = _auth_header(_login_token(client, "ivo"))

    created = client.post(
        "/marketplace/listings",
        data=_listing_form("Desk lamp"),
        files=[("images", ("lamp.png", PNG_BYTES, "image/png"))],
        headers=headers,
    )
    assert created.status_code == 201, created.text
    [image_url] = _extract_success_data(created)["imageUrls"]
    assert image_url.startswith("/uploads/listings/")

    served = client.get(image_url)
    assert served.status_code == 200
    assert served.content == PNG_BYTES
    assert client.get("/uploads/listings/missing.png").status_code == 404


def test_audit_records_multipart_form_fields_without_files(client, session_factory):
    with session_factory() as db:
        make_user(db, username="jon", is_verified=True)
    headers = _auth_header(_login_token(client, "jon"))

    created = client.post(
        "/marketplace/listings",
        data=_listing_form("Desk lamp"),
        files=[("images", ("lamp.png", PNG_BYTES, "image/png"))],
        headers=headers,
    )
    assert created.status_code == 201, created.text

    [row] = _audit_rows(session_factory, endpoint="/marketplace/listings")
    assert row.response_status == 201
    assert row.request_body == _listing_form("Desk lamp")


def test_audit_redacts_urlencoded_form_fields(client, session_factory):
    response = client.post("/auth/login", data={"email": "ghost@example.edu", "password": "top-secret"})
    assert response.status_code == 400

    [row] = _audit_rows(session_factory, endpoint="/auth/login")
    assert row.request_body == {"email": "ghost@example.edu", "password": "[REDACTED]"}


def test_unhandled_error_is_audited_as_500(client, session_factory, monkeypatch):
    def explode(self, payload):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(IdentityService, "register", explode)
    lenient = TestClient(client.app, raise_server_exceptions=False)

    response = lenient.post("/auth/register", json=_register_body("kip"))
    assert response.status_code == 500
    payload = _extract_error_payload(response)
    assert payload["message"] == "Internal server error"
    assert "disk on fire" not in response.text

    [row] = _audit_rows(session_factory, endpoint="/auth/register")
    assert row.response_status == 500
    assert row.error_message == "Internal server error"
    assert row.request_body["password"] == "[REDACTED]"


def _reset_code(mailer) -> str:
    _, subject, html_body = mailer.sent[-1]
    assert subject.startswith("Password Reset Code")
    return re.search(r"<strong[^>]*>(\d{6})</strong>", html_body).group(1)


def test_password_reset_flow(client, session_factory, mailer):
    with session_factory() as db:
        make_user(db, username="lou")

    unknown = client.post("/auth/forgot-password", json={"email": "nobody@example.edu"})
    known = client.post("/auth/forgot-password", json={"email": "lou@example.edu"})
    assert unknown.status_code == known.status_code == 200
    assert unknown.json()["message"] == known.json()["message"]
    assert [to for to, _, _ in mailer.sent] == ["lou@example.edu"]
    code = _reset_code(mailer)

    malformed = client.post("/auth/verify-reset-otp", json={"email": "lou@example.edu", "otp": "12ab"})
    assert malformed.status_code == 400

    verified = client.post("/auth/verify-reset-otp", json={"email": "lou@example.edu", "otp": code})
    assert verified.status_code == 200, verified.text
    assert _extract_success_data(verified)["email"] == "lou@example.edu"

    body = {"email": "lou@example.edu", "otp": code, "newPassword": "fresh-start"}
    reset = client.post("/auth/reset-password", json=body)
    assert reset.status_code == 200, reset.text

    reused = client.post("/auth/reset-password", json=body)
    assert reused.status_code == 400
    assert _extract_error_payload(reused)["code"] == "invalid_reset_code"

    assert client.post("/auth/login", json={"email": "lou@example.edu", "password": TEST_PASSWORD}).status_code == 401
    assert _login_token(client, "lou", "fresh-start")

    [row] = _audit_rows(session_factory, endpoint="/auth/reset-password", response_status=200)
    assert row.request_body["otp"] == "[REDACTED]"
    assert row.request_body["newPassword"] == "[REDACTED]"
