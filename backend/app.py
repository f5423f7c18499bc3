import math
import os
import re
import secrets
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import bcrypt
import resend
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, redirect, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
    verify_jwt_in_request,
)
from flask_pymongo import PyMongo
from werkzeug.middleware.proxy_fix import ProxyFix

from backend import ledger
from backend.jobs import register_commands
from backend.payment_gateways import (
    PaymentGatewayError,
    UnsupportedOperation,
    build_gateways,
)
from backend.realtime import (
    broadcast_balance_update,
    broadcast_notification,
    socketio,
)

load_dotenv()

API_PREFIX = "/api/v1"

_configured_admin_email = os.getenv(
    "DEFAULT_ADMIN_EMAIL", "admin@nextgenai.dev"
) or "admin@nextgenai.dev"
DEFAULT_ADMIN_EMAIL = _configured_admin_email.strip().lower()

GATEWAY_SETTINGS = (
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "PAYPAL_CLIENT_ID",
    "PAYPAL_CLIENT_SECRET",
    "PAYPAL_MODE",
    "PAYPAL_WEBHOOK_ID",
    "PAYPAL_CANCEL_URL",
    "VNPAY_TMN_CODE",
    "VNPAY_HASH_SECRET",
    "VNPAY_URL",
    "VNPAY_RETURN_URL",
    "MOMO_PARTNER_CODE",
    "MOMO_ACCESS_KEY",
    "MOMO_SECRET_KEY",
    "MOMO_ENDPOINT",
    "MOMO_IPN_URL",
    "MOMO_RETURN_URL",
)


def create_app(config_overrides: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Honor proxy headers so payment return URLs and client IPs keep the public origin.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        hours=int(os.getenv("JWT_ACCESS_TOKEN_EXPIRES_HOURS", "1"))
    )
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/nextgen"
    )
    app.config["FRONTEND_URL"] = (
        os.getenv("FRONTEND_URL", "http://localhost:3000") or "http://localhost:3000"
    ).rstrip("/")
    app.config["WALLET_CURRENCY"] = ledger.WALLET_CURRENCY
    app.config["MIN_TOPUP_USD"] = os.getenv("MIN_TOPUP_USD", "10")
    app.config["MAX_TOPUP_USD"] = os.getenv("MAX_TOPUP_USD", "10000")
    app.config["VND_PER_USD"] = int(os.getenv("VND_PER_USD", "25000"))
    app.config["PENDING_TOPUP_TTL_MINUTES"] = int(
        os.getenv("PENDING_TOPUP_TTL_MINUTES", "15")
    )
    app.config["EMAIL_DELIVERY"] = (
        os.getenv("EMAIL_DELIVERY", "resend").strip().lower() or "resend"
    )
    app.config["RESEND_API_KEY"] = (os.getenv("RESEND_API_KEY") or "").strip()
    app.config["EMAIL_SENDER"] = (
        os.getenv("EMAIL_SENDER", "no-reply@nextgenai.dev") or "no-reply@nextgenai.dev"
    )
    for setting in GATEWAY_SETTINGS:
        app.config[setting] = (os.getenv(setting) or "").strip()
    app.config["PAYPAL_MODE"] = app.config["PAYPAL_MODE"] or "sandbox"

    if config_overrides:
        app.config.update(config_overrides)

    # --- Initialize extensions ---
    allowed_origins = [
        app.config["FRONTEND_URL"],
        os.getenv("ADMIN_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    JWTManager(app)
    if database is None:
        mongo = PyMongo(app)
        database = mongo.db
    db = database
    app.extensions["nextgen_db"] = db

    socketio.init_app(
        app,
        cors_allowed_origins=allowed_origins or "*",
        async_mode=app.config.get("SOCKETIO_ASYNC_MODE", "threading"),
    )

    gateways = build_gateways(app.config)
    app.extensions["payment_gateways"] = gateways

    register_commands(app, db)

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    otp_code_length = 6
    otp_expiration_minutes = 10
    max_failed_otp_attempts = 5
    min_password_length = 6
    notification_ttl = timedelta(days=30)
    email_verification_collection = db.email_verification_tokens
    audit_logs_collection = db.audit_logs

    try:
        email_verification_collection.create_index(
            "expires_at", expireAfterSeconds=0
        )
        db.users.create_index("email", unique=True)
        db.notifications.create_index([("user_id", 1), ("created_at", -1)])
        db.notifications.create_index("expires_at", expireAfterSeconds=0)
        audit_logs_collection.create_index([("created_at", -1)])
        ledger.ensure_ledger_indexes(db)
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes: %s", exc)

    # --- Helpers ---

    ALLOWED_USER_ROLES = {"admin", "author", "user"}
    NOTIFICATION_TYPES = {
        "payment_success",
        "purchase_success",
        "payment_failed",
        "refund_processed",
        "system_announcement",
    }

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def normalize_role(value: Optional[str]) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in ALLOWED_USER_ROLES else "user"

    def get_user_role(user_document) -> str:
        if not user_document:
            return "user"

        email = normalize_email(user_document.get("email"))
        if email == DEFAULT_ADMIN_EMAIL:
            return "admin"

        return normalize_role(user_document.get("role", "user"))

    def require_role(*roles: str):
        allowed = {normalize_role(role) for role in roles if role}

        current_email = normalize_email(get_jwt_identity())
        current_user = (
            db.users.find_one({"email": current_email}) if current_email else None
        )
        if not current_user or current_user.get("is_active") is False:
            return (
                None,
                (
                    jsonify({"message": "Your session is no longer valid. Please sign in again."}),
                    401,
                ),
            )

        user_role = get_user_role(current_user)
        if user_role == "admin" or not allowed or user_role in allowed:
            return current_user, None

        return (
            None,
            (
                jsonify(
                    {"message": "You need additional permissions to perform this action."}
                ),
                403,
            ),
        )

    def require_admin_user():
        return require_role("admin")

    def format_timestamp(value) -> Optional[str]:
        return f"{value.isoformat()}Z" if isinstance(value, datetime) else None

    def optional_id(value) -> Optional[str]:
        return str(value) if value else None

    def safe_positive_int(value, default: int) -> int:
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            return default
        return parsed if parsed > 0 else default

    def get_pagination_args(default_limit: int = 20, max_limit: int = 100) -> Tuple[int, int]:
        page = safe_positive_int(request.args.get("page"), 1)
        limit = min(safe_positive_int(request.args.get("limit"), default_limit), max_limit)
        return page, limit

    def build_pagination(page: int, limit: int, total: int) -> Dict[str, object]:
        pages = math.ceil(total / limit) if total else 0
        return {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": pages,
            "has_next": page < pages,
            "has_prev": page > 1,
        }

    def parse_iso_date(value: Optional[str], *, end_of_day: bool = False):
        if not value:
            return None
        candidate = str(value).strip()
        if not candidate:
            return None
        normalized = candidate.replace("Z", "+00:00")
        if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
            normalized = f"{candidate}T00:00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta())
        if end_of_day and re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
            return parsed + timedelta(days=1)
        return parsed

    def generate_otp_code(length: int = otp_code_length) -> str:
        upper_bound = 10**length
        return f"{secrets.randbelow(upper_bound):0{length}d}"

    def persist_verification_code(email: str, otp: str) -> datetime:
        expires_at = datetime.utcnow() + timedelta(minutes=otp_expiration_minutes)
        hashed_code = bcrypt.hashpw(otp.encode("utf-8"), bcrypt.gensalt())

        email_verification_collection.update_one(
            {"email": email},
            {
                "$set": {
                    "email": email,
                    "otp_hash": hashed_code,
                    "expires_at": expires_at,
                    "created_at": datetime.utcnow(),
                    "failed_attempts": 0,
                }
            },
            upsert=True,
        )

        return expires_at

    def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(metadata, dict):
            return {}
        sanitized: Dict[str, str] = {}
        for key, value in metadata.items():
            if value is None:
                continue
            sanitized[str(key)] = str(value)
        return sanitized

    def record_audit_log(
        actor_email: Optional[str], action: str, metadata: Optional[Dict] = None
    ):
        if not action:
            return
        try:
            normalized_email = normalize_email(actor_email)
            log_document = {
                "user_email": normalized_email or None,
                "user_name": "",
                "action": action,
                "metadata": sanitize_metadata(metadata),
                "created_at": datetime.utcnow(),
            }
            if normalized_email:
                user_document = db.users.find_one({"email": normalized_email})
                if user_document:
                    log_document["user_name"] = user_document.get("full_name", "") or ""
                    log_document["metadata"].setdefault(
                        "user_role", get_user_role(user_document)
                    )
            audit_logs_collection.insert_one(log_document)
        except Exception as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    def serialize_audit_log(document):
        if not document:
            return {}
        metadata = document.get("metadata")
        return {
            "id": str(document.get("_id")),
            "user_email": document.get("user_email") or "",
            "user_name": document.get("user_name") or "",
            "action": document.get("action") or "",
            "metadata": metadata if isinstance(metadata, dict) else {},
            "created_at": format_timestamp(document.get("created_at")),
        }

    # --- Email ---

    def build_email_html(heading: str, lines: List[str]) -> str:
        paragraphs = "".join(
            f'<p style="margin:0 0 14px;font-size:15px;line-height:1.6;color:#d7e3ff;">{line}</p>'
            for line in lines
        )
        return f"""<!DOCTYPE html>
<html lang="en">
  <body style="margin:0;padding:0;background:#0b1020;font-family:'Segoe UI',Helvetica,Arial,sans-serif;">
    <div style="max-width:520px;margin:0 auto;padding:32px 24px;">
      <h1 style="margin:0 0 20px;font-size:22px;color:#ffffff;">{heading}</h1>
      {paragraphs}
      <p style="margin:24px 0 0;font-size:12px;color:#7c89a8;">NextGenAI Marketplace</p>
    </div>
  </body>
</html>"""

    def send_email_via_resend(payload: Dict[str, object]) -> Tuple[bool, Optional[str]]:
        if app.config["EMAIL_DELIVERY"] == "log":
            app.logger.info(
                "Email to %s (%s): %s", payload.get("to"), payload.get("subject"), payload.get("text")
            )
            return True, None

        configured_api_key = (app.config.get("RESEND_API_KEY") or "").strip()
        if not configured_api_key:
            return False, "Resend API key is not configured."

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = configured_api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None

    def send_verification_email(recipient_email: str, otp: str):
        text_body = (
            f"Your NextGenAI verification code is {otp}. "
            f"Enter it within {otp_expiration_minutes} minutes to confirm this email."
        )
        payload: Dict[str, object] = {
            "from": f"NextGenAI <{app.config['EMAIL_SENDER']}>",
            "to": [recipient_email],
            "subject": "NextGenAI • Verify your email",
            "html": build_email_html(
                "Verify your email",
                [
                    f"Your verification code is <strong>{otp}</strong>.",
                    f"It expires in {otp_expiration_minutes} minutes.",
                ],
            ),
            "text": text_body,
        }
        return send_email_via_resend(payload)

    def send_topup_receipt_email(user_document, transaction) -> Tuple[bool, Optional[str]]:
        recipient_email = normalize_email(user_document.get("email"))
        if not recipient_email:
            return False, "Missing email for the top-up receipt."

        amount = ledger.from_cents(transaction.get("amount_cents"))
        balance = ledger.from_cents(transaction.get("balance_after_cents"))
        provider = str(transaction.get("payment_method") or "").upper()
        text_body = (
            f"Your wallet was topped up with {amount:.2f} USD via {provider}.\n"
            f"Transaction: {transaction['_id']}.\n"
            f"New balance: {balance:.2f} USD.\n\n"
            "NextGenAI Team"
        )
        payload: Dict[str, object] = {
            "from": f"NextGenAI <{app.config['EMAIL_SENDER']}>",
            "to": [recipient_email],
            "subject": "Your wallet top-up receipt",
            "html": build_email_html(
                "Top-up received",
                [
                    f"We added <strong>{amount:.2f} USD</strong> to your wallet via {provider}.",
                    f"Transaction reference: {transaction['_id']}",
                    f"New balance: {balance:.2f} USD",
                ],
            ),
            "text": text_body,
        }
        return send_email_via_resend(payload)

    def dispatch_verification_code(email: str):
        otp = generate_otp_code()
        expires_at = persist_verification_code(email, otp)

        sent, error_details = send_verification_email(email, otp)
        if not sent:
            email_verification_collection.delete_one({"email": email})
            app.logger.error(
                "OTP dispatch failed for %s: %s", email, error_details or "Unknown Resend error"
            )
            return {
                "success": False,
                "error": error_details or "Failed to deliver verification email.",
            }

        return {
            "success": True,
            "expires_at": expires_at,
            "otp_length": otp_code_length,
        }

    # --- Serializers ---

    def serialize_user_profile(user_document) -> Dict[str, object]:
        if not user_document:
            return {}

        return {
            "id": str(user_document.get("_id")),
            "full_name": user_document.get("full_name", "") or "",
            "email": user_document.get("email", "") or "",
            "role": get_user_role(user_document),
            "verified": bool(user_document.get("verified")),
            "verified_at": format_timestamp(user_document.get("verified_at")),
            "balance": ledger.from_cents(user_document.get("balance_cents")),
            "currency": app.config["WALLET_CURRENCY"],
            "last_login_at": format_timestamp(user_document.get("last_login_at")),
            "created_at": format_timestamp(user_document.get("created_at")),
        }

    def serialize_project(project_document, is_purchased: Optional[bool] = None):
        serialized = {
            "id": str(project_document.get("_id")),
            "title": project_document.get("title", "") or "",
            "description": project_document.get("description", "") or "",
            "price": ledger.from_cents(project_document.get("price_cents")),
            "currency": app.config["WALLET_CURRENCY"],
            "tech_stack": list(project_document.get("tech_stack") or []),
            "license_type": project_document.get("license_type") or "commercial",
            "status": project_document.get("status") or "published",
            "author": {
                "id": optional_id(project_document.get("author_id")),
                "name": project_document.get("author_name", "") or "",
            },
            "purchase_count": int(project_document.get("purchase_count") or 0),
            "created_at": format_timestamp(project_document.get("created_at")),
        }
        if is_purchased is not None:
            serialized["is_purchased"] = is_purchased
        return serialized

    def serialize_transaction(document) -> Dict[str, object]:
        amount_cents = int(document.get("amount_cents") or 0)
        return {
            "id": str(document.get("_id")),
            "type": document.get("type"),
            "amount": ledger.from_cents(amount_cents),
            "display_amount": ledger.from_cents(abs(amount_cents)),
            "is_credit": amount_cents > 0,
            "fees": ledger.from_cents(document.get("fees_cents")),
            "net_amount": ledger.from_cents(document.get("net_amount_cents")),
            "currency": document.get("currency") or app.config["WALLET_CURRENCY"],
            "description": document.get("description", "") or "",
            "status": document.get("status"),
            "payment_method": document.get("payment_method"),
            "provider_amount": document.get("provider_amount"),
            "provider_currency": document.get("provider_currency"),
            "provider_reference": document.get("provider_reference"),
            "related_project_id": optional_id(document.get("related_project_id")),
            "related_purchase_id": optional_id(document.get("related_purchase_id")),
            "related_transaction_id": optional_id(document.get("related_transaction_id")),
            "balance_before": ledger.from_cents(document.get("balance_before_cents")),
            "balance_after": ledger.from_cents(document.get("balance_after_cents")),
            "failure_reason": document.get("failure_reason"),
            "processed_at": format_timestamp(document.get("processed_at")),
            "refunded_at": format_timestamp(document.get("refunded_at")),
            "created_at": format_timestamp(document.get("created_at")),
        }

    def serialize_purchase(document) -> Dict[str, object]:
        download_count = int(document.get("download_count") or 0)
        max_downloads = int(document.get("max_downloads") or ledger.MAX_DOWNLOADS)
        return {
            "id": str(document.get("_id")),
            "project_id": optional_id(document.get("project_id")),
            "transaction_id": optional_id(document.get("transaction_id")),
            "amount": ledger.from_cents(document.get("amount_cents")),
            "currency": document.get("currency") or app.config["WALLET_CURRENCY"],
            "status": document.get("status"),
            "license": document.get("license") or {},
            "download_url": f"{API_PREFIX}/purchases/{document.get('_id')}/download?token={document.get('download_token')}"
            if document.get("status") == "completed" and document.get("download_token")
            else None,
            "download_expires": format_timestamp(document.get("download_expires")),
            "remaining_downloads": max(0, max_downloads - download_count),
            "refunded_at": format_timestamp(document.get("refunded_at")),
            "created_at": format_timestamp(document.get("created_at")),
        }

    def serialize_notification(document) -> Dict[str, object]:
        return {
            "id": str(document.get("_id")),
            "type": document.get("type"),
            "title": document.get("title", "") or "",
            "message": document.get("message", "") or "",
            "data": document.get("data") or {},
            "read": bool(document.get("read")),
            "read_at": format_timestamp(document.get("read_at")),
            "priority": document.get("priority") or "medium",
            "category": document.get("category") or "system",
            "action_url": document.get("action_url"),
            "created_at": format_timestamp(document.get("created_at")),
        }

    # --- Notifications & wallet side effects ---

    def create_notification(
        user_id,
        notification_type: str,
        title: str,
        message: str,
        data: Optional[Dict] = None,
        priority: str = "medium",
        category: str = "transaction",
        action_url: Optional[str] = None,
    ):
        if notification_type not in NOTIFICATION_TYPES:
            notification_type = "system_announcement"
        now = datetime.utcnow()
        document = {
            "user_id": user_id,
            "type": notification_type,
            "title": title[:200],
            "message": message[:1000],
            "data": sanitize_metadata(data),
            "read": False,
            "read_at": None,
            "priority": priority,
            "category": category,
            "action_url": action_url,
            "expires_at": now + notification_ttl,
            "created_at": now,
        }
        try:
            document["_id"] = db.notifications.insert_one(document).inserted_id
        except Exception as exc:
            app.logger.warning("Unable to store notification for %s: %s", user_id, exc)
            return None
        broadcast_notification(user_id, serialize_notification(document))
        return document

    def on_topup_settled(result: ledger.SettlementResult):
        transaction = result.transaction
        amount = ledger.from_cents(result.amount_cents)
        new_balance = ledger.from_cents(result.balance_cents)

        create_notification(
            result.user_id,
            "payment_success",
            "Top-up successful",
            f"{amount:.2f} USD has been added to your wallet.",
            data={"transaction_id": transaction["_id"], "amount": amount},
            priority="high",
            action_url="/wallet",
        )
        broadcast_balance_update(result.user_id, new_balance, amount)

        user_document = db.users.find_one({"_id": result.user_id})
        if user_document:
            sent, email_error = send_topup_receipt_email(user_document, transaction)
            if not sent:
                app.logger.warning(
                    "Top-up receipt for %s was not sent: %s", transaction["_id"], email_error
                )
            record_audit_log(
                user_document.get("email"),
                "Wallet top-up settled",
                {
                    "transaction_id": transaction["_id"],
                    "provider": transaction.get("payment_method"),
                    "amount": f"{amount:.2f}",
                },
            )

    def on_topup_failed(transaction):
        create_notification(
            transaction["user_id"],
            "payment_failed",
            "Top-up failed",
            transaction.get("failure_reason") or "Your payment could not be completed.",
            data={"transaction_id": transaction["_id"]},
            priority="high",
            action_url="/wallet",
        )

    def apply_verified_callback(verification) -> str:
        """Apply a verified provider report to the ledger and return the outcome."""
        provider = verification.provider
        if verification.pending or not verification.transaction_id:
            ledger.record_payment_event(
                db, provider, verification.event_key, "ignored", verification.transaction_id
            )
            return "ignored"

        settlement = None
        failed_transaction = None
        try:
            if verification.success:
                settlement = ledger.settle_topup(
                    db,
                    verification.transaction_id,
                    provider,
                    provider_amount=verification.provider_amount,
                    provider_reference=verification.provider_reference,
                    details=verification.details,
                )
                outcome = "applied" if settlement.applied else "duplicate"
            else:
                failed_transaction = ledger.fail_topup(
                    db,
                    verification.transaction_id,
                    provider,
                    verification.failure_reason or "Payment failed.",
                    verification.details,
                )
                outcome = "failed" if failed_transaction is not None else "ignored"
        except ledger.WalletError as exc:
            ledger.record_payment_event(
                db,
                provider,
                verification.event_key,
                "rejected",
                verification.transaction_id,
                exc.message,
            )
            app.logger.warning(
                "%s callback for %s rejected: %s",
                provider,
                verification.transaction_id,
                exc.message,
            )
            raise

        deliveries = ledger.record_payment_event(
            db, provider, verification.event_key, outcome, verification.transaction_id
        )
        app.logger.info(
            "%s callback for %s: %s (delivery %s)",
            provider,
            verification.transaction_id,
            outcome,
            deliveries,
        )
        if outcome == "applied":
            on_topup_settled(settlement)
        elif outcome == "failed":
            on_topup_failed(failed_transaction)
        return outcome

    def frontend_redirect(status: str, message: Optional[str] = None, transaction=None):
        target = app.config["FRONTEND_URL"] + "/wallet/callback"
        if transaction:
            client_return_url = (transaction.get("metadata") or {}).get("client_return_url")
            if client_return_url:
                target = client_return_url
        params = {"status": status}
        if message:
            params["message"] = message
        if transaction:
            params["transaction_id"] = str(transaction["_id"])
        parts = urlsplit(target)
        query = [
            (key, value)
            for key, value in parse_qsl(parts.query, keep_blank_values=True)
            if key not in params
        ]
        query.extend(params.items())
        return redirect(urlunsplit(parts._replace(query=urlencode(query))))

    def redirect_after_callback(verification, provider: str):
        try:
            outcome = apply_verified_callback(verification)
        except ledger.WalletError as exc:
            return frontend_redirect("error", exc.message)

        transaction = ledger.find_topup(
            db, verification.transaction_id, provider, verification.provider_reference
        )
        if transaction and transaction.get("status") == "completed":
            return frontend_redirect("success", transaction=transaction)
        if outcome == "ignored" and verification.pending:
            return frontend_redirect("pending", transaction=transaction)
        return frontend_redirect(
            "error",
            (transaction or {}).get("failure_reason") or verification.failure_reason or "Payment failed.",
            transaction=transaction,
        )

    def default_return_url(provider: str) -> str:
        return urljoin(request.host_url, f"{API_PREFIX}/wallet/{provider}/return")

    def client_ip_address() -> str:
        # ProxyFix has already resolved remote_addr from the trusted hops.
        return request.remote_addr or "127.0.0.1"

    def fetch_project(project_id):
        try:
            object_id = ObjectId(str(project_id or ""))
        except (InvalidId, TypeError):
            return None, (jsonify({"message": "Invalid project identifier."}), 400)

        project_document = db.projects.find_one({"_id": object_id})
        if not project_document:
            return None, (jsonify({"message": "Project not found."}), 404)

        return project_document, None

    def topup_limits_cents() -> Tuple[int, int]:
        return (
            ledger.to_cents(app.config["MIN_TOPUP_USD"]),
            ledger.to_cents(app.config["MAX_TOPUP_USD"]),
        )

    # --- Error handlers ---

    @app.errorhandler(ledger.WalletError)
    def handle_wallet_error(exc):
        return jsonify({"message": exc.message}), exc.status_code

    @app.errorhandler(PaymentGatewayError)
    def handle_gateway_error(exc):
        app.logger.warning("Payment gateway error: %s", exc.message)
        return jsonify({"message": exc.message}), exc.status_code

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok", "timestamp": format_timestamp(datetime.utcnow())}, 200

    # Auth
    @app.route(f"{API_PREFIX}/auth/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        full_name = str(payload.get("full_name") or payload.get("name") or "").strip()
        password = str(payload.get("password", ""))

        if not email or not full_name or not password:
            return (
                jsonify(
                    {"message": "Email, full name, and password are required to create an account."}
                ),
                400,
            )
        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address."}), 400
        if len(password) < min_password_length:
            return (
                jsonify(
                    {"message": f"Password must be at least {min_password_length} characters."}
                ),
                400,
            )
        if len(full_name) > 100:
            return jsonify({"message": "Full name cannot exceed 100 characters."}), 400

        if db.users.find_one({"email": email}):
            return jsonify({"message": "An account with this email already exists."}), 400

        hashed_pw = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
        user_document = {
            "email": email,
            "full_name": full_name,
            "password": hashed_pw,
            "role": "admin" if email == DEFAULT_ADMIN_EMAIL else "user",
            "verified": False,
            "balance_cents": 0,
            "is_active": True,
            "created_at": datetime.utcnow(),
        }
        insert_result = db.users.insert_one(user_document)

        otp_result = dispatch_verification_code(email)
        if not otp_result.get("success"):
            db.users.delete_one({"_id": insert_result.inserted_id})
            return (
                jsonify(
                    {
                        "message": "Account creation failed while sending the verification code. Please try again.",
                        "error": otp_result.get("error"),
                    }
                ),
                502,
            )

        record_audit_log(
            email, "Registered new account", {"user_id": str(insert_result.inserted_id)}
        )

        return (
            jsonify(
                {
                    "message": "Account created. Enter the verification code we emailed to continue.",
                    "email": email,
                    "requires_verification": True,
                    "otp_length": otp_code_length,
                    "expires_in_seconds": otp_expiration_minutes * 60,
                }
            ),
            201,
        )

    @app.route(f"{API_PREFIX}/auth/send-otp", methods=["POST"])
    def issue_email_verification_code():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))

        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address."}), 400

        result = dispatch_verification_code(email)
        if not result.get("success"):
            return (
                jsonify(
                    {
                        "message": "We could not send the verification email. Please try again in a moment.",
                        "error": result.get("error"),
                    }
                ),
                502,
            )

        return jsonify(
            {
                "message": "Verification code sent.",
                "email": email,
                "expires_in_seconds": otp_expiration_minutes * 60,
                "otp_length": otp_code_length,
                "expires_at": format_timestamp(result.get("expires_at")),
            }
        )

    @app.route(f"{API_PREFIX}/auth/verify-otp", methods=["POST"])
    def verify_email_otp():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        otp = str(payload.get("otp", "")).strip()

        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address."}), 400

        if not (otp.isdigit() and len(otp) == otp_code_length):
            return (
                jsonify(
                    {"message": f"The verification code must be {otp_code_length} digits."}
                ),
                400,
            )

        code_record = email_verification_collection.find_one({"email": email})
        if not code_record:
            return (
                jsonify(
                    {
                        "message": "No verification request found for this email. Please request a new code."
                    }
                ),
                400,
            )

        expires_at = code_record.get("expires_at")
        if not expires_at or expires_at < datetime.utcnow():
            email_verification_collection.delete_one({"_id": code_record["_id"]})
            return (
                jsonify(
                    {"message": "The verification code has expired. Please request a new one."}
                ),
                400,
            )

        stored_hash = code_record.get("otp_hash")
        if not stored_hash or not bcrypt.checkpw(otp.encode("utf-8"), stored_hash):
            failed_attempts = int(code_record.get("failed_attempts", 0) or 0) + 1
            if failed_attempts >= max_failed_otp_attempts:
                email_verification_collection.delete_one({"_id": code_record["_id"]})
                return (
                    jsonify(
                        {
                            "message": "Too many incorrect attempts. Please request a new verification code."
                        }
                    ),
                    400,
                )

            email_verification_collection.update_one(
                {"_id": code_record["_id"]},
                {"$set": {"failed_attempts": failed_attempts}},
            )
            return jsonify({"message": "The verification code is incorrect."}), 400

        email_verification_collection.delete_one({"_id": code_record["_id"]})

        verified_at = datetime.utcnow()
        update_result = db.users.update_one(
            {"email": email},
            {"$set": {"verified": True, "verified_at": verified_at}},
        )
        if update_result.matched_count == 0:
            app.logger.warning(
                "OTP verified for %s but no matching user record was updated.", email
            )

        return jsonify(
            {
                "message": "Email verified successfully.",
                "verified": True,
                "verified_at": format_timestamp(verified_at),
            }
        )

    @app.route(f"{API_PREFIX}/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = db.users.find_one({"email": email})
        if not user or not bcrypt.checkpw(password.encode("utf-8"), user["password"]):
            return jsonify({"message": "Invalid credentials"}), 401

        if user.get("is_active") is False:
            return jsonify({"message": "This account has been deactivated."}), 403
        if not user.get("verified"):
            return (
                jsonify(
                    {
                        "message": "Please verify your email before logging in.",
                        "requires_verification": True,
                    }
                ),
                403,
            )

        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"last_login_at": datetime.utcnow()}},
        )
        user = db.users.find_one({"_id": user["_id"]})

        token = create_access_token(identity=email)

        record_audit_log(email, "Signed in", {"ip": client_ip_address()})

        return jsonify({"access_token": token, "user": serialize_user_profile(user)})

    @app.route(f"{API_PREFIX}/auth/me", methods=["GET"])
    @jwt_required()
    def current_profile():
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error
        return jsonify({"user": serialize_user_profile(current_user)})

    # Projects
    @app.route(f"{API_PREFIX}/projects", methods=["GET"])
    def list_projects():
        page, limit = get_pagination_args(default_limit=12)
        query: Dict[str, object] = {"status": "published"}
        search_term = (request.args.get("search") or "").strip()
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [{"title": regex}, {"description": regex}]

        cursor = (
            db.projects.find(query)
            .sort("created_at", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        projects = [serialize_project(document) for document in cursor]
        total = db.projects.count_documents(query)
        return jsonify({"projects": projects, "pagination": build_pagination(page, limit, total)})

    @app.route(f"{API_PREFIX}/projects", methods=["POST"])
    @jwt_required()
    def create_project():
        current_user, permission_error = require_role("author", "admin")
        if permission_error:
            return permission_error

        payload = request.get_json(silent=True) or {}
        title = str(payload.get("title") or "").strip()
        description = str(payload.get("description") or "").strip()
        if len(title) < 3:
            return jsonify({"message": "Please provide a title with at least three characters."}), 400

        try:
            price_cents = ledger.to_cents(payload.get("price", 0))
        except ValueError:
            return jsonify({"message": "Please provide a valid price."}), 400
        if price_cents < 0:
            return jsonify({"message": "Price cannot be negative."}), 400

        license_type = str(payload.get("license_type") or "commercial").strip().lower()
        if license_type not in ledger.LICENSE_TYPES:
            return jsonify({"message": "Unsupported license type."}), 400

        raw_stack = payload.get("tech_stack") or []
        if not isinstance(raw_stack, list):
            raw_stack = [raw_stack]
        tech_stack = [str(entry).strip() for entry in raw_stack if str(entry).strip()]

        now = datetime.utcnow()
        project_document = {
            "title": title,
            "description": description,
            "price_cents": price_cents,
            "tech_stack": tech_stack,
            "license_type": license_type,
            "source_url": str(payload.get("source_url") or "").strip(),
            "status": "published",
            "author_id": current_user["_id"],
            "author_name": current_user.get("full_name", "") or "",
            "purchase_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        project_document["_id"] = db.projects.insert_one(project_document).inserted_id

        record_audit_log(
            current_user.get("email"),
            "Created project",
            {"project_id": project_document["_id"], "title": title},
        )
        return (
            jsonify({"message": "Project created.", "project": serialize_project(project_document)}),
            201,
        )

    @app.route(f"{API_PREFIX}/projects/<project_id>", methods=["GET"])
    def get_project(project_id: str):
        project_document, project_error = fetch_project(project_id)
        if project_error:
            return project_error

        verify_jwt_in_request(optional=True)
        is_purchased = None
        current_email = normalize_email(get_jwt_identity())
        if current_email:
            viewer = db.users.find_one({"email": current_email}, {"_id": 1})
            if viewer:
                is_purchased = ledger.has_purchased(db, viewer["_id"], project_document["_id"])

        return jsonify({"project": serialize_project(project_document, is_purchased)})

    @app.route(f"{API_PREFIX}/projects/<project_id>/stats", methods=["GET"])
    @jwt_required()
    def get_project_stats(project_id: str):
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error
        project_document, project_error = fetch_project(project_id)
        if project_error:
            return project_error
        if (
            get_user_role(current_user) != "admin"
            and project_document.get("author_id") != current_user["_id"]
        ):
            return jsonify({"message": "You need additional permissions to perform this action."}), 403

        stats = {"total_purchases": 0, "total_revenue": 0.0, "unique_buyers": 0}
        for row in db.purchases.aggregate(
            [
                {"$match": {"project_id": project_document["_id"], "status": "completed"}},
                {
                    "$group": {
                        "_id": None,
                        "total_purchases": {"$sum": 1},
                        "total_revenue": {"$sum": "$amount_cents"},
                        "buyers": {"$addToSet": "$user_id"},
                    }
                },
            ]
        ):
            stats = {
                "total_purchases": int(row.get("total_purchases") or 0),
                "total_revenue": ledger.from_cents(row.get("total_revenue")),
                "unique_buyers": len(row.get("buyers") or []),
            }
        return jsonify({"project": serialize_project(project_document), "stats": stats})

    # Wallet
    @app.route(f"{API_PREFIX}/wallet/balance", methods=["GET"])
    @jwt_required()
    def get_balance():
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error
        return jsonify(
            {
                "balance": ledger.from_cents(current_user.get("balance_cents")),
                "currency": app.config["WALLET_CURRENCY"],
                "pending_amount": ledger.from_cents(
                    ledger.get_pending_amount(db, current_user["_id"])
                ),
                "last_updated": format_timestamp(datetime.utcnow()),
            }
        )

    @app.route(f"{API_PREFIX}/wallet/payment-methods", methods=["GET"])
    @jwt_required()
    def get_payment_methods():
        min_cents, max_cents = topup_limits_cents()
        methods = []
        for gateway in gateways.values():
            description = gateway.describe()
            description["min_amount"] = ledger.from_cents(min_cents)
            description["max_amount"] = ledger.from_cents(max_cents)
            methods.append(description)
        return jsonify({"methods": methods, "currency": app.config["WALLET_CURRENCY"]})

    @app.route(f"{API_PREFIX}/wallet/topup", methods=["POST"])
    @app.route(f"{API_PREFIX}/wallet/top-up", methods=["POST"])
    @jwt_required()
    def topup_wallet():
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        provider = str(
            payload.get("payment_method") or payload.get("paymentMethod") or ""
        ).strip().lower()
        gateway = gateways.get(provider)
        if gateway is None:
            return jsonify({"message": "Unsupported payment method."}), 400

        try:
            amount_cents = ledger.to_cents(payload.get("amount"))
        except ValueError:
            return jsonify({"message": "Please provide a valid amount."}), 400

        min_cents, max_cents = topup_limits_cents()
        if amount_cents < min_cents:
            return (
                jsonify({"message": f"Minimum top-up amount is ${ledger.from_cents(min_cents):.2f}"}),
                400,
            )
        if amount_cents > max_cents:
            return (
                jsonify({"message": f"Maximum top-up amount is ${ledger.from_cents(max_cents):.2f}"}),
                400,
            )
        gateway.require_configuration()

        metadata = {}
        client_return_url = str(payload.get("return_url") or payload.get("returnUrl") or "").strip()
        if client_return_url and client_return_url.startswith(app.config["FRONTEND_URL"] + "/"):
            metadata["client_return_url"] = client_return_url

        provider_amount, provider_currency = gateway.convert_amount(amount_cents)
        transaction = ledger.create_topup(
            db,
            current_user,
            amount_cents,
            provider,
            provider_amount,
            provider_currency,
            metadata=metadata,
        )

        return_url = default_return_url(provider)
        try:
            session = gateway.create_payment(transaction, return_url, client_ip_address())
        except PaymentGatewayError as exc:
            ledger.fail_topup(db, transaction["_id"], provider, exc.message)
            raise

        ledger.attach_provider_session(
            db,
            transaction["_id"],
            provider,
            session.get("provider_reference"),
            session.get("details"),
        )
        ledger.log_payment_event(
            "topup_initiated",
            current_user["_id"],
            ledger.from_cents(amount_cents),
            app.config["WALLET_CURRENCY"],
            provider=provider,
            transaction_id=transaction["_id"],
        )
        record_audit_log(
            current_user.get("email"),
            "Started wallet top-up",
            {"transaction_id": transaction["_id"], "provider": provider},
        )

        response = {
            "session_id": str(transaction["_id"]),
            "transaction_id": str(transaction["_id"]),
            "provider": provider,
            "amount": ledger.from_cents(amount_cents),
            "currency": app.config["WALLET_CURRENCY"],
            "provider_amount": provider_amount,
            "provider_currency": provider_currency,
            "return_url": return_url,
            "expires_at": format_timestamp(
                transaction["created_at"]
                + timedelta(minutes=app.config["PENDING_TOPUP_TTL_MINUTES"])
            ),
        }
        for key in ("payment_url", "client_secret", "qr_code_url", "deeplink"):
            if session.get(key):
                response[key] = session[key]
        return jsonify(response), 201

    @app.route(f"{API_PREFIX}/wallet/transactions", methods=["GET"])
    @jwt_required()
    def list_transactions():
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error

        page, limit = get_pagination_args()
        query: Dict[str, object] = {"user_id": current_user["_id"]}
        transaction_type = (request.args.get("type") or "").strip()
        status = (request.args.get("status") or "").strip()
        if transaction_type:
            query["type"] = transaction_type
        if status:
            query["status"] = status

        cursor = (
            db.transactions.find(query)
            .sort("created_at", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        transactions = [serialize_transaction(document) for document in cursor]
        total = db.transactions.count_documents(query)
        summary_cents = ledger.get_user_summary(db, current_user["_id"])
        summary = {
            key.replace("_cents", ""): ledger.from_cents(value)
            for key, value in summary_cents.items()
        }
        return jsonify(
            {
                "transactions": transactions,
                "pagination": build_pagination(page, limit, total),
                "summary": summary,
            }
        )

    @app.route(f"{API_PREFIX}/wallet/transactions/<transaction_id>", methods=["GET"])
    @jwt_required()
    def get_transaction(transaction_id: str):
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error
        object_id = ledger.parse_object_id(transaction_id)
        transaction = db.transactions.find_one(
            {"_id": object_id, "user_id": current_user["_id"]}
        )
        if not transaction:
            return jsonify({"message": "Transaction not found"}), 404
        return jsonify({"transaction": serialize_transaction(transaction)})

    @app.route(f"{API_PREFIX}/wallet/payment", methods=["POST"])
    @jwt_required()
    def pay_with_wallet():
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        project_document, project_error = fetch_project(
            payload.get("project_id") or payload.get("projectId")
        )
        if project_error:
            return project_error
        if project_document.get("status") != "published":
            return jsonify({"message": "This project is not available for purchase."}), 400

        result = ledger.purchase_project(db, current_user, project_document)
        price = ledger.from_cents(project_document.get("price_cents"))
        new_balance = ledger.from_cents(result["balance_cents"])

        create_notification(
            current_user["_id"],
            "purchase_success",
            "Purchase completed",
            f"You now own \"{project_document.get('title', 'this project')}\".",
            data={
                "project_id": project_document["_id"],
                "purchase_id": result["purchase"]["_id"],
            },
            category="project",
            action_url=f"/projects/{project_document['_id']}",
        )
        if price:
            broadcast_balance_update(current_user["_id"], new_balance, -price)
        record_audit_log(
            current_user.get("email"),
            "Purchased project",
            {
                "project_id": project_document["_id"],
                "transaction_id": result["transaction"]["_id"],
                "amount": f"{price:.2f}",
            },
        )

        return (
            jsonify(
                {
                    "message": "Purchase completed.",
                    "transaction": serialize_transaction(result["transaction"]),
                    "purchase": serialize_purchase(result["purchase"]),
                    "new_balance": new_balance,
                }
            ),
            201,
        )

    @app.route(f"{API_PREFIX}/wallet/purchases", methods=["GET"])
    @jwt_required()
    def list_purchases():
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error
        page, limit = get_pagination_args(default_limit=10)
        query = {"user_id": current_user["_id"], "status": "completed"}
        cursor = (
            db.purchases.find(query)
            .sort("created_at", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        purchases = [serialize_purchase(document) for document in cursor]
        total = db.purchases.count_documents(query)
        return jsonify({"purchases": purchases, "pagination": build_pagination(page, limit, total)})

    @app.route(f"{API_PREFIX}/purchases/<purchase_id>/download", methods=["GET"])
    @jwt_required()
    def download_purchase(purchase_id: str):
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error
        object_id = ledger.parse_object_id(purchase_id, "purchase")
        purchase = db.purchases.find_one({"_id": object_id, "user_id": current_user["_id"]})
        if not purchase or purchase.get("status") != "completed":
            return jsonify({"message": "Purchase not found."}), 404

        token = str(request.args.get("token") or "")
        stored_token = str(purchase.get("download_token") or "")
        if not token or not secrets.compare_digest(token, stored_token):
            return jsonify({"message": "Invalid download link."}), 403

        now = datetime.utcnow()
        if purchase.get("download_expires") and purchase["download_expires"] < now:
            # Links are short-lived; hand out a fresh one instead of failing the download.
            new_token = secrets.token_urlsafe(32)
            db.purchases.update_one(
                {"_id": object_id},
                {
                    "$set": {
                        "download_token": new_token,
                        "download_expires": now + ledger.DOWNLOAD_LINK_TTL,
                    }
                },
            )
            return (
                jsonify(
                    {
                        "message": "This download link has expired. Use the refreshed link.",
                        "download_url": f"{API_PREFIX}/purchases/{object_id}/download?token={new_token}",
                    }
                ),
                410,
            )

        recorded = db.purchases.update_one(
            {
                "_id": object_id,
                "download_count": {"$lt": int(purchase.get("max_downloads") or ledger.MAX_DOWNLOADS)},
            },
            {"$inc": {"download_count": 1}, "$set": {"last_downloaded_at": now}},
        )
        if recorded.modified_count == 0:
            return jsonify({"message": "The download limit for this purchase has been reached."}), 403

        project_document = db.projects.find_one({"_id": purchase["project_id"]}) or {}
        return jsonify(
            {
                "source_url": project_document.get("source_url") or "",
                "remaining_downloads": max(
                    0,
                    int(purchase.get("max_downloads") or ledger.MAX_DOWNLOADS)
                    - int(purchase.get("download_count") or 0)
                    - 1,
                ),
            }
        )

    # Provider callbacks
    @app.route(f"{API_PREFIX}/wallet/stripe/confirm", methods=["POST"])
    @jwt_required()
    def stripe_confirm():
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        payment_intent_id = str(
            payload.get("payment_intent_id") or payload.get("paymentIntentId") or ""
        ).strip()
        if not payment_intent_id:
            return jsonify({"message": "Payment intent id is required."}), 400

        transaction = ledger.find_topup(db, None, "stripe", payment_intent_id)
        if not transaction or transaction.get("user_id") != current_user["_id"]:
            return jsonify({"message": "Transaction not found"}), 404

        verification = gateways["stripe"].confirm(payment_intent_id)
        if not verification.transaction_id:
            verification.transaction_id = str(transaction["_id"])
        outcome = apply_verified_callback(verification)
        transaction = db.transactions.find_one({"_id": transaction["_id"]})
        current_user = db.users.find_one({"_id": current_user["_id"]})
        return jsonify(
            {
                "outcome": outcome,
                "transaction": serialize_transaction(transaction),
                "balance": ledger.from_cents(current_user.get("balance_cents")),
            }
        )

    @app.route(f"{API_PREFIX}/wallet/stripe/webhook", methods=["POST"])
    def stripe_webhook():
        verification = gateways["stripe"].verify_webhook(
            request.get_data(), request.headers.get("Stripe-Signature", "")
        )
        if verification is None:
            return jsonify({"status": "ignored"}), 200
        outcome = apply_verified_callback(verification)
        return jsonify({"status": outcome}), 200

    @app.route(f"{API_PREFIX}/wallet/stripe/return", methods=["GET"])
    def stripe_return():
        payment_intent_id = (request.args.get("payment_intent") or "").strip()
        if not payment_intent_id:
            return frontend_redirect("error", "Missing Stripe payment reference.")
        try:
            verification = gateways["stripe"].confirm(payment_intent_id)
        except PaymentGatewayError as exc:
            return frontend_redirect("error", exc.message)
        return redirect_after_callback(verification, "stripe")

    @app.route(f"{API_PREFIX}/wallet/paypal/return", methods=["GET"])
    def paypal_return():
        order_id = (request.args.get("token") or "").strip()
        if not order_id:
            return frontend_redirect("error", "Missing PayPal order reference.")
        try:
            verification = gateways["paypal"].capture(order_id)
        except PaymentGatewayError as exc:
            return frontend_redirect("error", exc.message)
        if not verification.transaction_id:
            transaction = ledger.find_topup(db, None, "paypal", order_id)
            if transaction:
                verification.transaction_id = str(transaction["_id"])
        return redirect_after_callback(verification, "paypal")

    @app.route(f"{API_PREFIX}/wallet/paypal/cancel", methods=["GET"])
    def paypal_cancel():
        transaction_id = (request.args.get("transaction_id") or "").strip()
        transaction = ledger.find_topup(db, transaction_id) if transaction_id else None
        if transaction and transaction.get("payment_method") == "paypal":
            failed = ledger.fail_topup(
                db, transaction["_id"], "paypal", "Payment cancelled by the payer."
            )
            if failed is not None:
                on_topup_failed(failed)
        return frontend_redirect("cancelled", "Payment was cancelled.", transaction=transaction)

    @app.route(f"{API_PREFIX}/wallet/paypal/webhook", methods=["POST"])
    def paypal_webhook():
        event = request.get_json(silent=True) or {}
        verification = gateways["paypal"].verify_webhook(request.headers, event)
        if verification is None:
            return jsonify({"status": "ignored"}), 200
        if not verification.transaction_id:
            transaction = ledger.find_topup(
                db, None, "paypal", verification.provider_reference
            )
            if transaction:
                verification.transaction_id = str(transaction["_id"])
        outcome = apply_verified_callback(verification)
        return jsonify({"status": outcome}), 200

    @app.route(f"{API_PREFIX}/wallet/vnpay/return", methods=["GET"])
    def vnpay_return():
        try:
            verification = gateways["vnpay"].verify_callback(request.args.to_dict())
        except PaymentGatewayError as exc:
            return frontend_redirect("error", exc.message)
        return redirect_after_callback(verification, "vnpay")

    @app.route(f"{API_PREFIX}/wallet/vnpay/ipn", methods=["GET"])
    def vnpay_ipn():
        try:
            verification = gateways["vnpay"].verify_callback(request.args.to_dict())
        except PaymentGatewayError as exc:
            if exc.status_code == 400:
                return jsonify({"RspCode": "97", "Message": "Invalid signature"})
            return jsonify({"RspCode": "99", "Message": "Unknown error"})

        try:
            outcome = apply_verified_callback(verification)
        except ledger.TransactionNotFound:
            return jsonify({"RspCode": "01", "Message": "Order not found"})
        except ledger.AmountMismatch:
            return jsonify({"RspCode": "04", "Message": "Invalid amount"})
        except ledger.WalletError:
            return jsonify({"RspCode": "99", "Message": "Unknown error"})

        if not verification.transaction_id:
            return jsonify({"RspCode": "01", "Message": "Order not found"})
        if outcome in ("duplicate", "ignored"):
            return jsonify({"RspCode": "02", "Message": "Order already confirmed"})
        return jsonify({"RspCode": "00", "Message": "Confirm Success"})

    def momo_callback_params() -> Dict[str, object]:
        params: Dict[str, object] = request.args.to_dict()
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            params.update(body)
        elif request.form:
            params.update(request.form.to_dict())
        return params

    @app.route(f"{API_PREFIX}/wallet/momo/return", methods=["GET", "POST"])
    def momo_return():
        try:
            verification = gateways["momo"].verify_callback(momo_callback_params())
        except PaymentGatewayError as exc:
            return frontend_redirect("error", exc.message)
        return redirect_after_callback(verification, "momo")

    @app.route(f"{API_PREFIX}/wallet/momo/ipn", methods=["POST"])
    def momo_ipn():
        verification = gateways["momo"].verify_callback(momo_callback_params())
        apply_verified_callback(verification)
        return "", 204

    @app.route(f"{API_PREFIX}/wallet/callback/<provider>", methods=["GET", "POST"])
    def provider_callback(provider: str):
        handlers = {
            "stripe": stripe_return,
            "paypal": paypal_return,
            "vnpay": vnpay_return,
            "momo": momo_return,
        }
        handler = handlers.get(str(provider or "").strip().lower())
        if handler is None:
            return jsonify({"message": "Unsupported payment provider"}), 400
        return handler()

    # Notifications
    @app.route(f"{API_PREFIX}/notifications", methods=["GET"])
    @jwt_required()
    def list_notifications():
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error

        page, limit = get_pagination_args()
        query: Dict[str, object] = {
            "user_id": current_user["_id"],
            "expires_at": {"$gt": datetime.utcnow()},
        }
        notification_type = (request.args.get("type") or "").strip()
        if notification_type:
            query["type"] = notification_type
        read_filter = request.args.get("read")
        if read_filter is not None:
            query["read"] = read_filter.strip().lower() == "true"

        cursor = (
            db.notifications.find(query)
            .sort("created_at", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        notifications = [serialize_notification(document) for document in cursor]
        total = db.notifications.count_documents(query)
        return jsonify(
            {"notifications": notifications, "pagination": build_pagination(page, limit, total)}
        )

    @app.route(f"{API_PREFIX}/notifications/unread-count", methods=["GET"])
    @jwt_required()
    def unread_notification_count():
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error
        count = db.notifications.count_documents(
            {
                "user_id": current_user["_id"],
                "read": False,
                "expires_at": {"$gt": datetime.utcnow()},
            }
        )
        return jsonify({"unread_count": count})

    @app.route(f"{API_PREFIX}/notifications/read-all", methods=["PUT"])
    @jwt_required()
    def mark_all_notifications_read():
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error
        result = db.notifications.update_many(
            {"user_id": current_user["_id"], "read": False},
            {"$set": {"read": True, "read_at": datetime.utcnow()}},
        )
        return jsonify(
            {"message": "All notifications marked as read.", "updated": result.modified_count}
        )

    @app.route(f"{API_PREFIX}/notifications/<notification_id>/read", methods=["PUT"])
    @jwt_required()
    def mark_notification_read(notification_id: str):
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error
        object_id = ledger.parse_object_id(notification_id, "notification")
        result = db.notifications.update_one(
            {"_id": object_id, "user_id": current_user["_id"]},
            {"$set": {"read": True, "read_at": datetime.utcnow()}},
        )
        if result.matched_count == 0:
            return jsonify({"message": "Notification not found"}), 404
        return jsonify({"message": "Notification marked as read"})

    @app.route(f"{API_PREFIX}/notifications/<notification_id>", methods=["DELETE"])
    @jwt_required()
    def delete_notification(notification_id: str):
        current_user, auth_error = require_role()
        if auth_error:
            return auth_error
        object_id = ledger.parse_object_id(notification_id, "notification")
        result = db.notifications.delete_one(
            {"_id": object_id, "user_id": current_user["_id"]}
        )
        if result.deleted_count == 0:
            return jsonify({"message": "Notification not found"}), 404
        return jsonify({"message": "Notification deleted"})

    # Admin
    @app.route(f"{API_PREFIX}/admin/wallet/reconcile", methods=["GET", "POST"])
    @jwt_required()
    def admin_reconcile_wallets():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        repair = request.method == "POST" and bool(payload.get("repair"))
        raw_user_id = request.args.get("user_id") or payload.get("user_id")
        target_user_id = ledger.parse_object_id(raw_user_id, "user") if raw_user_id else None

        drifts = ledger.reconcile_balances(db, repair=repair, user_id=target_user_id)
        for drift in drifts:
            if drift["repaired"]:
                record_audit_log(
                    admin_user.get("email"),
                    "Repaired wallet balance",
                    {
                        "user_id": drift["user_id"],
                        "from": drift["balance_cents"],
                        "to": drift["ledger_balance_cents"],
                    },
                )

        return jsonify(
            {
                "consistent": not drifts,
                "repaired": repair,
                "drifts": [
                    {
                        "user_id": str(drift["user_id"]),
                        "email": drift["email"],
                        "balance": ledger.from_cents(drift["balance_cents"]),
                        "ledger_balance": ledger.from_cents(drift["ledger_balance_cents"]),
                        "difference": ledger.from_cents(drift["difference_cents"]),
                        "repaired": drift["repaired"],
                    }
                    for drift in drifts
                ],
            }
        )

    @app.route(f"{API_PREFIX}/admin/purchases/<purchase_id>/refund", methods=["POST"])
    @jwt_required()
    def admin_refund_purchase(purchase_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        reason = str(payload.get("reason") or "").strip() or "Refunded by support"
        result = ledger.refund_purchase(db, purchase_id, reason)
        user_id = result["purchase"]["user_id"]
        amount = ledger.from_cents(result["transaction"]["amount_cents"])

        create_notification(
            user_id,
            "refund_processed",
            "Refund processed",
            f"{amount:.2f} USD has been returned to your wallet.",
            data={"purchase_id": result["purchase"]["_id"]},
            action_url="/wallet",
        )
        broadcast_balance_update(user_id, ledger.from_cents(result["balance_cents"]), amount)
        record_audit_log(
            admin_user.get("email"),
            "Refunded purchase",
            {"purchase_id": result["purchase"]["_id"], "amount": f"{amount:.2f}", "reason": reason},
        )
        return jsonify(
            {
                "message": "Purchase refunded to the wallet.",
                "purchase": serialize_purchase(result["purchase"]),
                "transaction": serialize_transaction(result["transaction"]),
            }
        )

    @app.route(f"{API_PREFIX}/admin/transactions/<transaction_id>/refund", methods=["POST"])
    @jwt_required()
    def admin_refund_topup(transaction_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        object_id = ledger.parse_object_id(transaction_id)
        topup = db.transactions.find_one({"_id": object_id, "type": "topup"})
        if not topup:
            return jsonify({"message": "Transaction not found"}), 404
        gateway = gateways.get(topup.get("payment_method"))
        if gateway is None or not gateway.supports_refunds:
            raise UnsupportedOperation(
                f"Refund not supported for {topup.get('payment_method')}."
            )

        payload = request.get_json(silent=True) or {}
        reason = str(payload.get("reason") or "").strip() or "Refunded by support"
        result = ledger.withdraw_topup(db, object_id, gateway.refund, reason)
        amount = ledger.from_cents(topup["amount_cents"])

        create_notification(
            topup["user_id"],
            "refund_processed",
            "Top-up refunded",
            f"{amount:.2f} USD was refunded to your {gateway.name} account.",
            data={"transaction_id": object_id},
            action_url="/wallet",
        )
        broadcast_balance_update(
            topup["user_id"], ledger.from_cents(result["balance_cents"]), -amount
        )
        record_audit_log(
            admin_user.get("email"),
            "Refunded top-up",
            {"transaction_id": object_id, "amount": f"{amount:.2f}", "reason": reason},
        )
        return jsonify(
            {
                "message": f"Top-up refunded through {gateway.name}.",
                "transaction": serialize_transaction(result["transaction"]),
            }
        )

    @app.route(f"{API_PREFIX}/admin/transactions/stats", methods=["GET"])
    @jwt_required()
    def admin_transaction_stats():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        stats = ledger.get_transaction_stats(
            db,
            parse_iso_date(request.args.get("start")),
            parse_iso_date(request.args.get("end"), end_of_day=True),
        )
        return jsonify(
            {
                "total_transactions": stats["total_transactions"],
                "completed_transactions": stats["completed_transactions"],
                "failed_transactions": stats["failed_transactions"],
                "pending_transactions": stats["pending_transactions"],
                "total_volume": ledger.from_cents(stats["total_volume_cents"]),
                "total_fees": ledger.from_cents(stats["total_fees_cents"]),
            }
        )

    @app.route(f"{API_PREFIX}/admin/logs", methods=["GET"])
    @jwt_required()
    def admin_list_logs():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        search_term = (request.args.get("search") or "").strip()
        page, limit = get_pagination_args(default_limit=50, max_limit=200)

        query: Dict[str, object] = {}
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [
                {"user_email": regex},
                {"user_name": regex},
                {"action": regex},
            ]

        start_date = parse_iso_date(request.args.get("start") or request.args.get("from"))
        end_date = parse_iso_date(
            request.args.get("end") or request.args.get("to"), end_of_day=True
        )
        if start_date or end_date:
            created_filter: Dict[str, datetime] = {}
            if start_date:
                created_filter["$gte"] = start_date
            if end_date:
                created_filter["$lt"] = end_date
            query["created_at"] = created_filter

        cursor = (
            audit_logs_collection.find(query)
            .sort("created_at", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        logs = [serialize_audit_log(document) for document in cursor]
        total = audit_logs_collection.count_documents(query)

        return jsonify({"logs": logs, "pagination": build_pagination(page, limit, total)})

    return app
