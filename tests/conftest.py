import hashlib
import hmac
import json
import time
from datetime import datetime

import bcrypt
import mongomock
import pytest
import requests
from flask_jwt_extended import create_access_token

from backend import ledger
from backend.app import create_app
from backend.payment_gateways import build_vnpay_query, sign_momo, sign_vnpay

FRONTEND_URL = "http://frontend.test"

TEST_CONFIG = {
    "TESTING": True,
    "JWT_SECRET_KEY": "test-secret-key-with-enough-length-for-hs256",
    "FRONTEND_URL": FRONTEND_URL,
    "EMAIL_DELIVERY": "log",
    "SOCKETIO_ASYNC_MODE": "threading",
    "STRIPE_SECRET_KEY": "sk_test_123",
    "STRIPE_WEBHOOK_SECRET": "whsec_test_123",
    "PAYPAL_CLIENT_ID": "paypal-client",
    "PAYPAL_CLIENT_SECRET": "paypal-secret",
    "PAYPAL_MODE": "sandbox",
    "PAYPAL_WEBHOOK_ID": "WH-123",
    "VNPAY_TMN_CODE": "TMNCODE1",
    "VNPAY_HASH_SECRET": "VNPAYSECRET",
    "VNPAY_URL": "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
    "MOMO_PARTNER_CODE": "MOMOTEST",
    "MOMO_ACCESS_KEY": "momo-access",
    "MOMO_SECRET_KEY": "momo-secret",
    "MOMO_ENDPOINT": "https://test-payment.momo.vn/v2/gateway/api/create",
}

PASSWORD = "s3cret-pass"


@pytest.fixture
def db():
    return mongomock.MongoClient().nextgen_test


@pytest.fixture
def app(db):
    return create_app(dict(TEST_CONFIG), database=db)


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(db, email, role="user", verified=True, is_active=True):
    document = {
        "email": email,
        "full_name": email.split("@")[0].title(),
        "password": bcrypt.hashpw(PASSWORD.encode("utf-8"), bcrypt.gensalt(4)),
        "role": role,
        "verified": verified,
        "balance_cents": 0,
        "is_active": is_active,
        "created_at": datetime.utcnow(),
    }
    document["_id"] = db.users.insert_one(document).inserted_id
    return document


def token_for(app, email):
    with app.app_context():
        return create_access_token(identity=email)


def auth_headers(app, email):
    return {"Authorization": f"Bearer {token_for(app, email)}"}


def fund_wallet(db, user, amount_cents, provider="stripe"):
    """Credit a wallet through a settled top-up so the ledger stays consistent."""
    user = db.users.find_one({"_id": user["_id"]})
    transaction = ledger.create_topup(
        db, user, amount_cents, provider, amount_cents, "USD"
    )
    return ledger.settle_topup(db, transaction["_id"], provider, amount_cents)


def make_project(db, author, title="Vision Starter Kit", price_cents=2500, **extra):
    document = {
        "title": title,
        "description": "A ready-made computer vision pipeline.",
        "price_cents": price_cents,
        "tech_stack": ["python", "pytorch"],
        "license_type": "commercial",
        "source_url": "https://cdn.example.com/vision.zip",
        "status": "published",
        "author_id": author["_id"],
        "author_name": author.get("full_name", ""),
        "purchase_count": 0,
        "created_at": datetime.utcnow(),
    }
    document.update(extra)
    document["_id"] = db.projects.insert_one(document).inserted_id
    return document


def signed_vnpay_params(transaction_id, amount_vnd, response_code="00", transaction_no="14220000"):
    params = {
        "vnp_Amount": str(int(amount_vnd) * 100),
        "vnp_BankCode": "NCB",
        "vnp_OrderInfo": f"Nap tien vi {transaction_id}",
        "vnp_PayDate": "20240101120000",
        "vnp_ResponseCode": response_code,
        "vnp_TmnCode": TEST_CONFIG["VNPAY_TMN_CODE"],
        "vnp_TransactionNo": transaction_no,
        "vnp_TransactionStatus": response_code,
        "vnp_TxnRef": str(transaction_id),
    }
    params["vnp_SecureHash"] = sign_vnpay(
        build_vnpay_query(params), TEST_CONFIG["VNPAY_HASH_SECRET"]
    )
    return params


def signed_momo_payload(order_id, amount_vnd, result_code=0, trans_id="3012345678"):
    payload = {
        "partnerCode": TEST_CONFIG["MOMO_PARTNER_CODE"],
        "orderId": str(order_id),
        "requestId": f"{order_id}-1700000000000",
        "amount": int(amount_vnd),
        "orderInfo": f"Top-up wallet {order_id}",
        "orderType": "momo_wallet",
        "transId": trans_id,
        "resultCode": result_code,
        "message": "Successful." if result_code == 0 else "Transaction denied by user.",
        "payType": "qr",
        "responseTime": 1700000000123,
        "extraData": "",
    }
    raw_signature = (
        f"accessKey={TEST_CONFIG['MOMO_ACCESS_KEY']}"
        f"&amount={payload['amount']}&extraData={payload['extraData']}"
        f"&message={payload['message']}&orderId={payload['orderId']}"
        f"&orderInfo={payload['orderInfo']}&orderType={payload['orderType']}"
        f"&partnerCode={payload['partnerCode']}&payType={payload['payType']}"
        f"&requestId={payload['requestId']}&responseTime={payload['responseTime']}"
        f"&resultCode={payload['resultCode']}&transId={payload['transId']}"
    )
    payload["signature"] = sign_momo(raw_signature, TEST_CONFIG["MOMO_SECRET_KEY"])
    return payload


def stripe_event_payload(event_id, event_type, intent):
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": intent},
        }
    ).encode("utf-8")


def stripe_signature(payload, secret=TEST_CONFIG["STRIPE_WEBHOOK_SECRET"]):
    timestamp = int(time.time())
    signed_payload = f"{timestamp}.{payload.decode('utf-8')}"
    signature = hmac.new(
        secret.encode("utf-8"), signed_payload.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = json.dumps(self._payload)

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")
