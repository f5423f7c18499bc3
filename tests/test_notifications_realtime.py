from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from backend.realtime import socketio
from tests.conftest import (
    auth_headers,
    fund_wallet,
    make_project,
    make_user,
    signed_vnpay_params,
    token_for,
)


@pytest.fixture
def buyer(db):
    return make_user(db, "buyer@example.com")


@pytest.fixture
def headers(app, buyer):
    return auth_headers(app, buyer["email"])


def buy_projects(client, db, buyer, headers, count=2):
    author = make_user(db, "author@example.com", role="author")
    fund_wallet(db, buyer, 1000 * count)
    for index in range(count):
        project = make_project(db, author, title=f"Project {index}", price_cents=1000)
        response = client.post(
            "/api/v1/wallet/payment", json={"project_id": str(project["_id"])}, headers=headers
        )
        assert response.status_code == 201


def test_notifications_lifecycle(client, db, buyer, headers):
    buy_projects(client, db, buyer, headers)

    listing = client.get("/api/v1/notifications", headers=headers).get_json()
    assert listing["pagination"]["total"] == 2
    assert {item["type"] for item in listing["notifications"]} == {"purchase_success"}
    assert client.get("/api/v1/notifications/unread-count", headers=headers).get_json() == {
        "unread_count": 2
    }

    first_id = listing["notifications"][0]["id"]
    assert client.put(f"/api/v1/notifications/{first_id}/read", headers=headers).status_code == 200
    assert client.get("/api/v1/notifications/unread-count", headers=headers).get_json()[
        "unread_count"
    ] == 1
    unread = client.get(
        "/api/v1/notifications", query_string={"read": "false"}, headers=headers
    ).get_json()
    assert len(unread["notifications"]) == 1

    marked = client.put("/api/v1/notifications/read-all", headers=headers).get_json()
    assert marked["updated"] == 1

    assert client.delete(f"/api/v1/notifications/{first_id}", headers=headers).status_code == 200
    assert client.delete(f"/api/v1/notifications/{first_id}", headers=headers).status_code == 404


def test_notifications_are_private(app, client, db, buyer, headers):
    buy_projects(client, db, buyer, headers, count=1)
    notification_id = client.get("/api/v1/notifications", headers=headers).get_json()[
        "notifications"
    ][0]["id"]
    other = auth_headers(app, make_user(db, "other@example.com")["email"])

    assert client.get("/api/v1/notifications", headers=other).get_json()["notifications"] == []
    assert client.put(f"/api/v1/notifications/{notification_id}/read", headers=other).status_code == 404
    assert client.delete(f"/api/v1/notifications/{ObjectId()}", headers=headers).status_code == 404


def test_expired_notifications_are_hidden_and_cleaned_up(app, client, db, buyer, headers):
    buy_projects(client, db, buyer, headers, count=1)
    # Without the TTL index the command itself has to remove expired documents.
    db.notifications.drop_index("expires_at_1")
    db.notifications.update_many(
        {}, {"$set": {"expires_at": datetime.utcnow() - timedelta(days=1)}}
    )

    assert client.get("/api/v1/notifications", headers=headers).get_json()["notifications"] == []

    result = app.test_cli_runner().invoke(args=["cleanup-notifications"])
    assert result.exit_code == 0
    assert "Deleted 1 expired notifications." in result.output
    assert db.notifications.count_documents({}) == 0


def test_socket_connection_requires_valid_token(app, db, buyer):
    anonymous = socketio.test_client(app)
    forged = socketio.test_client(app, auth={"token": "not-a-jwt"})
    member = socketio.test_client(app, auth={"token": token_for(app, buyer["email"])})

    assert not anonymous.is_connected()
    assert not forged.is_connected()
    assert member.is_connected()
    member.disconnect()


def test_topup_pushes_balance_and_notification(app, client, db, buyer, headers):
    socket_client = socketio.test_client(app, auth={"token": token_for(app, buyer["email"])})
    bystander = make_user(db, "bystander@example.com")
    other_client = socketio.test_client(
        app, auth={"token": f"Bearer {token_for(app, bystander['email'])}"}
    )
    socket_client.get_received()
    other_client.get_received()

    transaction_id = client.post(
        "/api/v1/wallet/topup", json={"amount": 10, "payment_method": "vnpay"}, headers=headers
    ).get_json()["transaction_id"]
    client.get("/api/v1/wallet/vnpay/ipn", query_string=signed_vnpay_params(transaction_id, 250000))

    received = {event["name"]: event["args"][0] for event in socket_client.get_received()}
    assert received["balance_update"]["new_balance"] == 10.0
    assert received["balance_update"]["change"] == 10.0
    assert received["notification"]["type"] == "payment_success"
    assert other_client.get_received() == []

    socket_client.disconnect()
    other_client.disconnect()
