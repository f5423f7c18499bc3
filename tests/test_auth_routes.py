import re
from unittest import mock

import pytest
import resend

from backend.app import DEFAULT_ADMIN_EMAIL
from tests.conftest import PASSWORD, auth_headers, make_user


@pytest.fixture
def outbox(app):
    app.config["EMAIL_DELIVERY"] = "resend"
    app.config["RESEND_API_KEY"] = "re_test_key"
    sent = []

    def fake_send(payload):
        sent.append(payload)
        return {"id": f"email_{len(sent)}"}

    with mock.patch.object(resend.Emails, "send", side_effect=fake_send):
        yield sent


def latest_otp(outbox):
    match = re.search(r"code is (\d{6})", outbox[-1]["text"])
    assert match, outbox[-1]["text"]
    return match.group(1)


def register(client, email="new.user@example.com"):
    return client.post(
        "/api/v1/auth/register",
        json={"email": email, "full_name": "New User", "password": PASSWORD},
    )


def test_register_verify_and_login(client, db, outbox):
    response = register(client)
    assert response.status_code == 201
    assert response.get_json()["requires_verification"] is True
    assert outbox[-1]["to"] == ["new.user@example.com"]

    blocked = client.post(
        "/api/v1/auth/login", json={"email": "new.user@example.com", "password": PASSWORD}
    )
    assert blocked.status_code == 403
    assert blocked.get_json()["requires_verification"] is True

    verified = client.post(
        "/api/v1/auth/verify-otp",
        json={"email": "New.User@example.com", "otp": latest_otp(outbox)},
    )
    assert verified.status_code == 200
    assert db.users.find_one({"email": "new.user@example.com"})["verified"] is True
    assert db.email_verification_tokens.count_documents({}) == 0

    login = client.post(
        "/api/v1/auth/login", json={"email": "new.user@example.com", "password": PASSWORD}
    )
    body = login.get_json()
    assert login.status_code == 200
    assert body["user"]["role"] == "user"
    assert body["user"]["balance"] == 0.0

    me = client.get(
        "/api/v1/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"}
    )
    assert me.get_json()["user"]["email"] == "new.user@example.com"


def test_register_rejects_duplicates_and_bad_input(client, db, outbox):
    make_user(db, "taken@example.com")

    duplicate = register(client, "taken@example.com")
    invalid = client.post(
        "/api/v1/auth/register",
        json={"email": "not-an-email", "full_name": "X", "password": PASSWORD},
    )
    short = client.post(
        "/api/v1/auth/register",
        json={"email": "short@example.com", "full_name": "X", "password": "123"},
    )

    assert duplicate.status_code == 400
    assert invalid.status_code == 400
    assert short.status_code == 400
    assert outbox == []


def test_register_rolls_back_when_email_fails(app, client, db):
    app.config["EMAIL_DELIVERY"] = "resend"
    app.config["RESEND_API_KEY"] = "re_test_key"

    with mock.patch.object(resend.Emails, "send", side_effect=RuntimeError("smtp down")):
        response = register(client)

    assert response.status_code == 502
    assert db.users.count_documents({}) == 0
    assert db.email_verification_tokens.count_documents({}) == 0


def test_wrong_otp_attempts_are_limited(client, db, outbox):
    register(client)

    for _ in range(4):
        response = client.post(
            "/api/v1/auth/verify-otp", json={"email": "new.user@example.com", "otp": "000000"}
        )
        if latest_otp(outbox) == "000000":
            pytest.skip("generated code collided with the guess")
        assert response.get_json()["message"] == "The verification code is incorrect."

    locked = client.post(
        "/api/v1/auth/verify-otp", json={"email": "new.user@example.com", "otp": "000000"}
    )
    assert locked.get_json()["message"].startswith("Too many incorrect attempts")
    assert db.email_verification_tokens.count_documents({}) == 0


def test_send_otp_issues_fresh_code(client, db, outbox):
    register(client)
    first_code = latest_otp(outbox)

    response = client.post("/api/v1/auth/send-otp", json={"email": "new.user@example.com"})

    assert response.status_code == 200
    assert response.get_json()["otp_length"] == 6
    assert len(outbox) == 2
    if latest_otp(outbox) != first_code:
        stale = client.post(
            "/api/v1/auth/verify-otp", json={"email": "new.user@example.com", "otp": first_code}
        )
        assert stale.status_code == 400


def test_login_rejects_bad_credentials(client, db):
    make_user(db, "member@example.com")

    wrong = client.post(
        "/api/v1/auth/login", json={"email": "member@example.com", "password": "nope-nope"}
    )
    missing = client.post("/api/v1/auth/login", json={"email": "member@example.com"})

    assert wrong.status_code == 401
    assert missing.status_code == 400


def test_deactivated_user_token_is_rejected(app, client, db):
    make_user(db, "gone@example.com", is_active=False)

    response = client.get("/api/v1/auth/me", headers=auth_headers(app, "gone@example.com"))

    assert response.status_code == 401


def test_default_admin_email_is_always_admin(app, client, db):
    make_user(db, DEFAULT_ADMIN_EMAIL, role="user")

    response = client.get("/api/v1/auth/me", headers=auth_headers(app, DEFAULT_ADMIN_EMAIL))

    assert response.get_json()["user"]["role"] == "admin"
