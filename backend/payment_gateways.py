"""Payment gateway clients for Stripe, PayPal, VNPay and MoMo.

Each gateway opens a provider payment session for a pending top-up and turns
a provider callback into a ``CallbackVerification`` after checking the
provider's signature scheme. Gateways never touch the ledger.
"""

import hashlib
import hmac
import json
import logging
import time
import urllib.parse
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Mapping, Optional, Tuple

import requests
import stripe

logger = logging.getLogger(__name__)

PAYMENT_SESSION_TTL = timedelta(minutes=15)
REQUEST_TIMEOUT_SECONDS = 20
VNPAY_TIMEZONE_OFFSET = timedelta(hours=7)
VNPAY_DATE_FORMAT = "%Y%m%d%H%M%S"
VND_PROVIDERS = ("vnpay", "momo")

PAYPAL_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

MOMO_IPN_SIGNATURE_FIELDS = (
    "amount",
    "extraData",
    "message",
    "orderId",
    "orderInfo",
    "orderType",
    "partnerCode",
    "payType",
    "requestId",
    "responseTime",
    "resultCode",
    "transId",
)

STRIPE_SUCCESS_EVENTS = ("payment_intent.succeeded",)
STRIPE_FAILURE_EVENTS = ("payment_intent.payment_failed", "payment_intent.canceled")
PAYPAL_SUCCESS_EVENTS = ("PAYMENT.CAPTURE.COMPLETED",)
PAYPAL_FAILURE_EVENTS = ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED")


class PaymentGatewayError(Exception):
    status_code = 502

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class GatewayNotConfigured(PaymentGatewayError):
    status_code = 503


class InvalidSignature(PaymentGatewayError):
    status_code = 400


class UnsupportedOperation(PaymentGatewayError):
    status_code = 400


class CallbackVerification:
    """A provider report whose authenticity has been checked."""

    def __init__(
        self,
        provider: str,
        transaction_id: Optional[str],
        success: bool,
        provider_reference: Optional[str] = None,
        provider_amount=None,
        provider_currency: Optional[str] = None,
        details: Optional[Dict] = None,
        failure_reason: Optional[str] = None,
        event_key: Optional[str] = None,
        pending: bool = False,
    ):
        self.provider = provider
        self.transaction_id = transaction_id
        self.success = success
        self.provider_reference = provider_reference
        self.provider_amount = provider_amount
        self.provider_currency = provider_currency
        self.details = details or {}
        self.failure_reason = failure_reason
        self.event_key = event_key
        self.pending = pending

    def __repr__(self):
        return (
            f"CallbackVerification(provider={self.provider!r}, "
            f"transaction_id={self.transaction_id!r}, success={self.success!r})"
        )


def wallet_to_provider_amount(
    provider: str, amount_cents: int, vnd_per_usd
) -> Tuple[object, str]:
    """Express a wallet (USD cents) amount in the unit the provider charges."""
    if provider in VND_PROVIDERS:
        vnd = (Decimal(int(amount_cents)) * Decimal(str(vnd_per_usd)) / 100).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return int(vnd), "VND"
    if provider == "paypal":
        value = (Decimal(int(amount_cents)) / 100).quantize(Decimal("0.01"))
        return str(value), "USD"
    return int(amount_cents), "USD"


def _field(source, name: str, default=None):
    if source is None:
        return default
    if isinstance(source, dict):
        return source.get(name, default)
    return getattr(source, name, default)


class PaymentGateway:
    provider_id = ""
    name = ""
    currencies: Tuple[str, ...] = ()
    fees = "0%"
    icon = ""
    supports_refunds = False
    required_settings: Tuple[str, ...] = ()

    def __init__(self, config: Mapping):
        self.config = config

    @property
    def enabled(self) -> bool:
        return all(self.config.get(key) for key in self.required_settings)

    def require_configuration(self):
        if not self.enabled:
            raise GatewayNotConfigured(
                f"{self.name} is not configured. Please choose another payment method."
            )

    def convert_amount(self, amount_cents: int) -> Tuple[object, str]:
        return wallet_to_provider_amount(
            self.provider_id, amount_cents, self.config.get("VND_PER_USD", 25000)
        )

    def describe(self) -> Dict[str, object]:
        return {
            "id": self.provider_id,
            "name": self.name,
            "icon": self.icon,
            "currencies": list(self.currencies),
            "fees": self.fees,
            "enabled": self.enabled,
            "refunds_supported": self.supports_refunds,
        }

    def create_payment(
        self, transaction: Dict, return_url: str, client_ip: str
    ) -> Dict[str, object]:
        raise NotImplementedError

    def refund(self, transaction: Dict) -> str:
        raise UnsupportedOperation(f"Refund not supported for {self.name}.")


class StripeGateway(PaymentGateway):
    provider_id = "stripe"
    name = "Stripe"
    currencies = ("USD",)
    fees = "2.9% + 30c"
    icon = "/icons/stripe.png"
    supports_refunds = True
    required_settings = ("STRIPE_SECRET_KEY",)

    def _configure(self):
        self.require_configuration()
        stripe.api_key = self.config.get("STRIPE_SECRET_KEY")

    def create_payment(self, transaction, return_url, client_ip):
        self._configure()
        try:
            intent = stripe.PaymentIntent.create(
                amount=int(transaction["provider_amount"]),
                currency="usd",
                metadata={
                    "transaction_id": str(transaction["_id"]),
                    "user_id": str(transaction["user_id"]),
                },
                automatic_payment_methods={"enabled": True},
                idempotency_key=f"topup-{transaction['_id']}",
            )
        except stripe.StripeError as exc:
            logger.error("Stripe PaymentIntent creation failed: %s", exc)
            raise PaymentGatewayError("Failed to create Stripe payment.") from exc

        return {
            "provider_reference": _field(intent, "id"),
            "client_secret": _field(intent, "client_secret"),
            "details": {"payment_intent_id": _field(intent, "id")},
        }

    def _verification_from_intent(self, intent, success: Optional[bool] = None, event_key=None):
        status = _field(intent, "status")
        if success is None:
            success = status == "succeeded"
        metadata = _field(intent, "metadata") or {}
        amount = _field(intent, "amount_received") or _field(intent, "amount")
        last_error = _field(intent, "last_payment_error")
        intent_id = _field(intent, "id")
        return CallbackVerification(
            provider=self.provider_id,
            transaction_id=_field(metadata, "transaction_id"),
            success=success,
            provider_reference=intent_id,
            provider_amount=int(amount) if success and amount is not None else None,
            provider_currency=str(_field(intent, "currency") or "usd").upper(),
            details={"payment_intent_id": intent_id, "status": status},
            failure_reason=None
            if success
            else (_field(last_error, "message") or f"Stripe payment {status}"),
            event_key=event_key or f"{intent_id}:{status}",
        )

    def confirm(self, payment_intent_id: str) -> CallbackVerification:
        self._configure()
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as exc:
            logger.error("Stripe PaymentIntent lookup failed: %s", exc)
            raise PaymentGatewayError("Failed to verify Stripe payment.") from exc
        status = _field(intent, "status")
        if status not in ("succeeded", "canceled"):
            # Still processing on Stripe's side; nothing to apply yet.
            return CallbackVerification(
                provider=self.provider_id,
                transaction_id=_field(_field(intent, "metadata"), "transaction_id"),
                success=False,
                provider_reference=_field(intent, "id"),
                details={"status": status},
                pending=True,
            )
        return self._verification_from_intent(intent)

    def verify_webhook(self, payload: bytes, signature_header: str) -> Optional[CallbackVerification]:
        secret = self.config.get("STRIPE_WEBHOOK_SECRET")
        if not secret:
            raise GatewayNotConfigured("Stripe webhook secret is not configured.")
        try:
            stripe.Webhook.construct_event(payload, signature_header or "", secret)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature("Invalid Stripe webhook signature.") from exc
        except ValueError as exc:
            raise InvalidSignature("Malformed Stripe webhook payload.") from exc

        event = json.loads(payload)
        event_type = event.get("type")
        if event_type in STRIPE_SUCCESS_EVENTS:
            success = True
        elif event_type in STRIPE_FAILURE_EVENTS:
            success = False
        else:
            return None
        intent = (event.get("data") or {}).get("object") or {}
        return self._verification_from_intent(
            intent, success=success, event_key=event.get("id")
        )

    def refund(self, transaction):
        self._configure()
        intent_id = transaction.get("provider_reference") or (
            (transaction.get("payment_details") or {}).get("stripe") or {}
        ).get("payment_intent_id")
        if not intent_id:
            raise PaymentGatewayError("Stripe payment reference is missing.", 409)
        try:
            refund = stripe.Refund.create(
                payment_intent=intent_id,
                amount=int(transaction["provider_amount"]),
                idempotency_key=f"refund-{transaction['_id']}",
            )
        except stripe.StripeError as exc:
            logger.error("Stripe refund failed for %s: %s", intent_id, exc)
            raise PaymentGatewayError("Stripe refund failed.") from exc
        return _field(refund, "id")


class PayPalGateway(PaymentGateway):
    provider_id = "paypal"
    name = "PayPal"
    currencies = ("USD",)
    fees = "3.5%"
    icon = "/icons/paypal.png"
    supports_refunds = True
    required_settings = ("PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET")

    def __init__(self, config):
        super().__init__(config)
        self._token_cache = {"access_token": None, "expires_at": None}

    @property
    def base_url(self) -> str:
        mode = str(self.config.get("PAYPAL_MODE") or "sandbox").strip().lower()
        return PAYPAL_BASE_URLS.get(mode, PAYPAL_BASE_URLS["sandbox"])

    def get_access_token(self) -> str:
        self.require_configuration()
        now = datetime.utcnow()
        if (
            self._token_cache["access_token"]
            and self._token_cache["expires_at"]
            and self._token_cache["expires_at"] > now + timedelta(seconds=30)
        ):
            return self._token_cache["access_token"]

        try:
            response = requests.post(
                f"{self.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(
                    self.config.get("PAYPAL_CLIENT_ID"),
                    self.config.get("PAYPAL_CLIENT_SECRET"),
                ),
                headers={"Accept": "application/json"},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("PayPal auth error: %s", exc)
            raise PaymentGatewayError("Failed to authenticate with PayPal.") from exc

        self._token_cache["access_token"] = data.get("access_token")
        self._token_cache["expires_at"] = now + timedelta(
            seconds=int(data.get("expires_in", 3600))
        )
        return self._token_cache["access_token"]

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.get_access_token()}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, payload: Dict, extra_headers: Optional[Dict] = None):
        headers = self._headers()
        if extra_headers:
            headers.update(extra_headers)
        try:
            return requests.post(
                f"{self.base_url}{path}",
                json=payload,
                headers=headers,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            logger.error("PayPal request to %s failed: %s", path, exc)
            raise PaymentGatewayError("PayPal is unreachable right now.") from exc

    def create_payment(self, transaction, return_url, client_ip):
        transaction_id = str(transaction["_id"])
        cancel_url = self.config.get("PAYPAL_CANCEL_URL") or return_url.replace(
            "/return", "/cancel"
        )
        order_payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": transaction_id,
                    "custom_id": transaction_id,
                    "description": f"Top-up wallet {transaction['provider_amount']} USD",
                    "amount": {
                        "currency_code": "USD",
                        "value": str(transaction["provider_amount"]),
                    },
                }
            ],
            "application_context": {
                "return_url": return_url,
                "cancel_url": f"{cancel_url}?transaction_id={transaction_id}",
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
            },
        }
        response = self._post(
            "/v2/checkout/orders",
            order_payload,
            {"PayPal-Request-Id": f"topup-{transaction_id}"},
        )
        if response.status_code not in (200, 201):
            logger.error("PayPal order creation failed: %s", response.text)
            raise PaymentGatewayError("Failed to create PayPal payment.")

        order = response.json()
        approve_url = next(
            (
                link.get("href")
                for link in order.get("links", [])
                if link.get("rel") in ("approve", "payer-action")
            ),
            None,
        )
        if not approve_url:
            raise PaymentGatewayError("PayPal did not return an approval link.")
        return {
            "provider_reference": order.get("id"),
            "payment_url": approve_url,
            "details": {"order_id": order.get("id")},
        }

    def _verification_from_capture(self, order_id: str, capture: Dict, unit: Dict, event_key=None):
        status = capture.get("status")
        success = status == "COMPLETED"
        amount = (capture.get("amount") or {}).get("value")
        return CallbackVerification(
            provider=self.provider_id,
            transaction_id=capture.get("custom_id") or unit.get("custom_id") or unit.get("reference_id"),
            success=success,
            provider_reference=order_id,
            provider_amount=amount if success else None,
            provider_currency=(capture.get("amount") or {}).get("currency_code"),
            details={
                "order_id": order_id,
                "capture_id": capture.get("id"),
                "status": status,
            },
            failure_reason=None if success else f"PayPal capture {status}",
            event_key=event_key or f"{order_id}:{capture.get('id')}:{status}",
        )

    def capture(self, order_id: str) -> CallbackVerification:
        response = self._post(f"/v2/checkout/orders/{order_id}/capture", {})
        if response.status_code == 422:
            # Already captured through another channel; read the order instead.
            try:
                response = requests.get(
                    f"{self.base_url}/v2/checkout/orders/{order_id}",
                    headers=self._headers(),
                    timeout=REQUEST_TIMEOUT_SECONDS,
                )
            except requests.RequestException as exc:
                raise PaymentGatewayError("PayPal is unreachable right now.") from exc
        if response.status_code not in (200, 201):
            logger.error("PayPal capture failed for %s: %s", order_id, response.text)
            raise PaymentGatewayError("Failed to capture PayPal payment.")

        order = response.json()
        units = order.get("purchase_units") or [{}]
        unit = units[0]
        captures = (unit.get("payments") or {}).get("captures") or []
        if not captures:
            return CallbackVerification(
                provider=self.provider_id,
                transaction_id=unit.get("custom_id") or unit.get("reference_id"),
                success=False,
                provider_reference=order_id,
                details={"order_id": order_id, "status": order.get("status")},
                failure_reason=f"PayPal order {order.get('status')}",
                event_key=f"{order_id}:{order.get('status')}",
            )
        return self._verification_from_capture(order_id, captures[0], unit)

    def verify_webhook(self, headers: Mapping, event: Dict) -> Optional[CallbackVerification]:
        webhook_id = self.config.get("PAYPAL_WEBHOOK_ID")
        if not webhook_id:
            raise GatewayNotConfigured("PayPal webhook id is not configured.")
        verification_payload = {
            "auth_algo": headers.get("PAYPAL-AUTH-ALGO"),
            "cert_url": headers.get("PAYPAL-CERT-URL"),
            "transmission_id": headers.get("PAYPAL-TRANSMISSION-ID"),
            "transmission_sig": headers.get("PAYPAL-TRANSMISSION-SIG"),
            "transmission_time": headers.get("PAYPAL-TRANSMISSION-TIME"),
            "webhook_id": webhook_id,
            "webhook_event": event,
        }
        if not all(verification_payload.values()):
            raise InvalidSignature("Missing PayPal transmission headers.")

        response = self._post(
            "/v1/notifications/verify-webhook-signature", verification_payload
        )
        if response.status_code != 200:
            logger.error("PayPal webhook verification failed: %s", response.text)
            raise PaymentGatewayError("Failed to verify PayPal webhook.")
        if response.json().get("verification_status") != "SUCCESS":
            raise InvalidSignature("Invalid PayPal webhook signature.")

        event_type = event.get("event_type")
        if event_type not in PAYPAL_SUCCESS_EVENTS + PAYPAL_FAILURE_EVENTS:
            return None
        resource = event.get("resource") or {}
        related_ids = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        order_id = related_ids.get("order_id") or resource.get("id")
        return self._verification_from_capture(
            order_id, resource, {}, event_key=event.get("id")
        )

    def refund(self, transaction):
        details = (transaction.get("payment_details") or {}).get("paypal") or {}
        capture_id = details.get("capture_id")
        if not capture_id:
            raise PaymentGatewayError("PayPal capture reference is missing.", 409)
        response = self._post(
            f"/v2/payments/captures/{capture_id}/refund",
            {
                "amount": {
                    "value": str(transaction["provider_amount"]),
                    "currency_code": "USD",
                }
            },
            {"PayPal-Request-Id": f"refund-{transaction['_id']}"},
        )
        if response.status_code not in (200, 201):
            logger.error("PayPal refund failed for %s: %s", capture_id, response.text)
            raise PaymentGatewayError("PayPal refund failed.")
        refund = response.json()
        if refund.get("status") not in ("COMPLETED", "PENDING"):
            raise PaymentGatewayError(f"PayPal refund {refund.get('status')}.")
        return refund.get("id")


def build_vnpay_query(params: Mapping[str, object]) -> str:
    return "&".join(
        f"{key}={urllib.parse.quote_plus(str(value))}"
        for key, value in sorted(params.items())
    )


def sign_vnpay(query: str, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha512
    ).hexdigest()


class VNPayGateway(PaymentGateway):
    provider_id = "vnpay"
    name = "VNPay"
    currencies = ("VND",)
    icon = "/icons/vnpay.png"
    required_settings = ("VNPAY_TMN_CODE", "VNPAY_HASH_SECRET", "VNPAY_URL")

    def create_payment(self, transaction, return_url, client_ip):
        self.require_configuration()
        transaction_id = str(transaction["_id"])
        local_now = datetime.utcnow() + VNPAY_TIMEZONE_OFFSET
        params = {
            "vnp_Version": "2.1.0",
            "vnp_Command": "pay",
            "vnp_TmnCode": self.config.get("VNPAY_TMN_CODE"),
            "vnp_Amount": int(transaction["provider_amount"]) * 100,
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": transaction_id,
            "vnp_OrderInfo": f"Nap tien vi {transaction_id}",
            "vnp_OrderType": "other",
            "vnp_Locale": "vn",
            "vnp_ReturnUrl": self.config.get("VNPAY_RETURN_URL") or return_url,
            "vnp_IpAddr": client_ip or "127.0.0.1",
            "vnp_CreateDate": local_now.strftime(VNPAY_DATE_FORMAT),
            "vnp_ExpireDate": (local_now + PAYMENT_SESSION_TTL).strftime(VNPAY_DATE_FORMAT),
        }
        query = build_vnpay_query(params)
        secure_hash = sign_vnpay(query, self.config.get("VNPAY_HASH_SECRET"))
        return {
            "provider_reference": transaction_id,
            "payment_url": f"{self.config.get('VNPAY_URL')}?{query}&vnp_SecureHash={secure_hash}",
            "details": {"txn_ref": transaction_id},
        }

    def verify_callback(self, params: Mapping[str, str]) -> CallbackVerification:
        self.require_configuration()
        received_hash = str(params.get("vnp_SecureHash") or "")
        signed = {
            key: value
            for key, value in params.items()
            if key.startswith("vnp_") and key not in ("vnp_SecureHash", "vnp_SecureHashType")
        }
        if not received_hash or not signed:
            raise InvalidSignature("Missing VNPay secure hash.")

        expected_hash = sign_vnpay(
            build_vnpay_query(signed), self.config.get("VNPAY_HASH_SECRET")
        )
        if not hmac.compare_digest(expected_hash.lower(), received_hash.lower()):
            raise InvalidSignature("Invalid VNPay secure hash.")

        response_code = signed.get("vnp_ResponseCode")
        transaction_status = signed.get("vnp_TransactionStatus")
        success = response_code == "00" and transaction_status in (None, "00")
        try:
            amount_vnd = int(signed.get("vnp_Amount") or 0) // 100
        except ValueError:
            raise PaymentGatewayError("VNPay reported a malformed amount.", 400)

        txn_ref = signed.get("vnp_TxnRef")
        transaction_no = signed.get("vnp_TransactionNo")
        return CallbackVerification(
            provider=self.provider_id,
            transaction_id=txn_ref,
            success=success,
            provider_reference=transaction_no,
            provider_amount=amount_vnd if success else None,
            provider_currency="VND",
            details={
                "txn_ref": txn_ref,
                "transaction_no": transaction_no,
                "response_code": response_code,
                "transaction_status": transaction_status,
                "bank_code": signed.get("vnp_BankCode"),
                "pay_date": signed.get("vnp_PayDate"),
            },
            failure_reason=None if success else f"VNPay response code {response_code}",
            event_key=f"{txn_ref}:{transaction_no}:{response_code}",
        )


def sign_momo(raw_signature: str, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"), raw_signature.encode("utf-8"), hashlib.sha256
    ).hexdigest()


class MoMoGateway(PaymentGateway):
    provider_id = "momo"
    name = "MoMo"
    currencies = ("VND",)
    icon = "/icons/momo.png"
    required_settings = (
        "MOMO_PARTNER_CODE",
        "MOMO_ACCESS_KEY",
        "MOMO_SECRET_KEY",
        "MOMO_ENDPOINT",
    )

    def describe(self):
        description = super().describe()
        description["qr_supported"] = True
        return description

    def create_payment(self, transaction, return_url, client_ip):
        self.require_configuration()
        order_id = str(transaction["_id"])
        request_id = f"{order_id}-{int(time.time() * 1000)}"
        amount = int(transaction["provider_amount"])
        order_info = f"Top-up wallet {order_id}"
        ipn_url = self.config.get("MOMO_IPN_URL") or return_url.replace("/return", "/ipn")
        redirect_url = self.config.get("MOMO_RETURN_URL") or return_url
        extra_data = ""
        raw_signature = (
            f"accessKey={self.config.get('MOMO_ACCESS_KEY')}&amount={amount}"
            f"&extraData={extra_data}&ipnUrl={ipn_url}&orderId={order_id}"
            f"&orderInfo={order_info}&partnerCode={self.config.get('MOMO_PARTNER_CODE')}"
            f"&redirectUrl={redirect_url}&requestId={request_id}&requestType=captureWallet"
        )
        body = {
            "partnerCode": self.config.get("MOMO_PARTNER_CODE"),
            "accessKey": self.config.get("MOMO_ACCESS_KEY"),
            "requestId": request_id,
            "amount": amount,
            "orderId": order_id,
            "orderInfo": order_info,
            "redirectUrl": redirect_url,
            "ipnUrl": ipn_url,
            "extraData": extra_data,
            "requestType": "captureWallet",
            "signature": sign_momo(raw_signature, self.config.get("MOMO_SECRET_KEY")),
            "lang": "en",
        }
        try:
            response = requests.post(
                self.config.get("MOMO_ENDPOINT"),
                json=body,
                headers={"Content-Type": "application/json"},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("MoMo payment request failed: %s", exc)
            raise PaymentGatewayError("MoMo is unreachable right now.") from exc

        if data.get("resultCode") != 0:
            logger.error("MoMo rejected payment request %s: %s", order_id, data)
            raise PaymentGatewayError(
                data.get("message") or "MoMo rejected the payment request."
            )
        return {
            "provider_reference": order_id,
            "payment_url": data.get("payUrl"),
            "qr_code_url": data.get("qrCodeUrl"),
            "deeplink": data.get("deeplink"),
            "details": {"order_id": order_id, "request_id": request_id},
        }

    def verify_callback(self, params: Mapping[str, object]) -> CallbackVerification:
        self.require_configuration()
        received_signature = str(params.get("signature") or "")
        if not received_signature:
            raise InvalidSignature("Missing MoMo signature.")

        raw_signature = f"accessKey={self.config.get('MOMO_ACCESS_KEY')}&" + "&".join(
            f"{field}={'' if params.get(field) is None else params.get(field)}"
            for field in MOMO_IPN_SIGNATURE_FIELDS
        )
        expected_signature = sign_momo(raw_signature, self.config.get("MOMO_SECRET_KEY"))
        if not hmac.compare_digest(expected_signature, received_signature.lower()):
            raise InvalidSignature("Invalid MoMo signature.")

        try:
            result_code = int(params.get("resultCode"))
            amount = int(params.get("amount") or 0)
        except (TypeError, ValueError):
            raise PaymentGatewayError("MoMo reported a malformed callback.", 400)

        success = result_code == 0
        order_id = str(params.get("orderId") or "")
        trans_id = str(params.get("transId") or "")
        return CallbackVerification(
            provider=self.provider_id,
            transaction_id=order_id,
            success=success,
            provider_reference=trans_id,
            provider_amount=amount if success else None,
            provider_currency="VND",
            details={
                "order_id": order_id,
                "request_id": str(params.get("requestId") or ""),
                "trans_id": trans_id,
                "result_code": result_code,
                "message": str(params.get("message") or ""),
                "pay_type": str(params.get("payType") or ""),
            },
            failure_reason=None if success else (params.get("message") or f"MoMo result code {result_code}"),
            event_key=f"{order_id}:{trans_id}:{result_code}",
        )


GATEWAY_CLASSES = (StripeGateway, PayPalGateway, VNPayGateway, MoMoGateway)


def build_gateways(config: Mapping) -> Dict[str, PaymentGateway]:
    return {gateway_class.provider_id: gateway_class(config) for gateway_class in GATEWAY_CLASSES}
