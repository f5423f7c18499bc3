"""Wallet ledger.

Every balance change is paired with a transaction document, and a user's
``balance_cents`` always equals the sum of ``amount_cents`` over that user's
completed transactions. Provider callbacks settle top-ups through a
conditional status transition so that a payment is credited exactly once no
matter how many times (or through how many channels) it is reported.
"""

import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)
payment_logger = logging.getLogger("backend.payments")

WALLET_CURRENCY = "USD"
TRANSACTION_TYPES = ("topup", "purchase", "refund", "withdrawal", "commission")
TRANSACTION_STATUSES = ("pending", "completed", "failed", "cancelled")
PAYMENT_METHODS = ("wallet_balance", "stripe", "paypal", "vnpay", "momo")
LICENSE_TYPES = ("mit", "commercial", "custom", "gpl", "apache")

# A late success report may still settle a top-up that was marked failed or
# expired; the provider has taken the money either way.
SETTLEABLE_STATUSES = ["pending", "failed", "cancelled"]

DESCRIPTION_MAX_LENGTH = 500
DOWNLOAD_LINK_TTL = timedelta(hours=1)
MAX_DOWNLOADS = 10


class WalletError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class TransactionNotFound(WalletError):
    status_code = 404


class InsufficientBalance(WalletError):
    status_code = 400


class AlreadyPurchased(WalletError):
    status_code = 409


class InvalidTransactionState(WalletError):
    status_code = 409


class AmountMismatch(WalletError):
    status_code = 400


class ProviderMismatch(WalletError):
    status_code = 400


class SettlementResult:
    """Outcome of applying a provider success report to a top-up."""

    def __init__(
        self,
        transaction: Dict,
        applied: bool,
        balance_cents: Optional[int] = None,
    ):
        self.transaction = transaction
        self.applied = applied
        self.balance_cents = balance_cents

    @property
    def user_id(self):
        return self.transaction.get("user_id")

    @property
    def amount_cents(self) -> int:
        return int(self.transaction.get("amount_cents") or 0)


def to_cents(value) -> int:
    """Convert a decimal currency amount ("12.5", 12.5, 12) to integer cents."""
    if value is None or isinstance(value, bool):
        raise ValueError("Amount is required.")
    try:
        amount = Decimal(str(value).strip())
        if not amount.is_finite():
            raise ValueError("Amount must be a number.")
        return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        raise ValueError("Amount must be a number.")


def from_cents(cents) -> float:
    return float(Decimal(int(cents or 0)) / 100)


def parse_object_id(value, label: str = "transaction") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        raise WalletError(f"Invalid {label} identifier.", 400)


def amounts_match(reported, expected) -> bool:
    try:
        return Decimal(str(reported)) == Decimal(str(expected))
    except (InvalidOperation, ValueError):
        return False


def log_payment_event(action: str, user_id, amount, currency: str, **details):
    payment_logger.info(
        "payment action=%s user=%s amount=%s currency=%s details=%s",
        action,
        str(user_id) if user_id else "-",
        amount,
        currency,
        {key: str(value) for key, value in details.items() if value is not None},
    )


def ensure_ledger_indexes(db):
    db.transactions.create_index([("user_id", 1), ("created_at", -1)])
    db.transactions.create_index([("status", 1), ("type", 1)])
    db.transactions.create_index("provider_reference")
    db.purchases.create_index([("user_id", 1), ("project_id", 1)], unique=True)
    db.purchases.create_index([("project_id", 1), ("status", 1)])
    db.payment_events.create_index(
        [("provider", 1), ("event_key", 1)], unique=True
    )


def _now() -> datetime:
    return datetime.utcnow()


def _current_balance(db, user_id) -> int:
    user = db.users.find_one({"_id": user_id}, {"balance_cents": 1})
    if not user:
        return 0
    return int(user.get("balance_cents") or 0)


def _build_transaction(
    user_id,
    transaction_type: str,
    amount_cents: int,
    status: str,
    payment_method: str,
    description: str,
    balance_before: int,
    balance_after: int,
    **extra,
) -> Dict:
    now = _now()
    fees_cents = int(extra.pop("fees_cents", 0) or 0)
    document = {
        "user_id": user_id,
        "type": transaction_type,
        "amount_cents": int(amount_cents),
        "fees_cents": fees_cents,
        "net_amount_cents": int(amount_cents) - fees_cents,
        "currency": WALLET_CURRENCY,
        "description": (description or "")[:DESCRIPTION_MAX_LENGTH],
        "status": status,
        "payment_method": payment_method,
        "payment_details": {},
        "related_project_id": None,
        "related_purchase_id": None,
        "related_transaction_id": None,
        "balance_before_cents": int(balance_before),
        "balance_after_cents": int(balance_after),
        "metadata": {},
        "failure_reason": None,
        "processed_at": now if status == "completed" else None,
        "refunded_at": None,
        "created_at": now,
        "updated_at": now,
    }
    document.update(extra)
    return document


# --- Top-ups ---


def create_topup(
    db,
    user: Dict,
    amount_cents: int,
    provider: str,
    provider_amount,
    provider_currency: str,
    metadata: Optional[Dict] = None,
) -> Dict:
    if amount_cents <= 0:
        raise WalletError("Top-up amount must be positive.")
    if provider not in PAYMENT_METHODS or provider == "wallet_balance":
        raise WalletError("Unsupported payment method.")

    balance = int(user.get("balance_cents") or 0)
    document = _build_transaction(
        user["_id"],
        "topup",
        amount_cents,
        "pending",
        provider,
        f"Top-up wallet via {provider}",
        balance,
        balance,
        provider_amount=provider_amount,
        provider_currency=provider_currency,
        provider_reference=None,
    )
    if metadata:
        document["metadata"] = dict(metadata)
    insert_result = db.transactions.insert_one(document)
    document["_id"] = insert_result.inserted_id
    return document


def attach_provider_session(
    db, transaction_id, provider: str, reference: Optional[str], details=None
):
    fields: Dict[str, object] = {"updated_at": _now()}
    if reference:
        fields["provider_reference"] = str(reference)
    if details:
        fields[f"payment_details.{provider}"] = details
    db.transactions.update_one(
        {"_id": parse_object_id(transaction_id)}, {"$set": fields}
    )


def find_topup(db, transaction_id=None, provider: Optional[str] = None, reference=None):
    """Locate a top-up by our id, falling back to the provider's reference."""
    if transaction_id:
        try:
            object_id = parse_object_id(transaction_id)
        except WalletError:
            object_id = None
        if object_id is not None:
            document = db.transactions.find_one({"_id": object_id, "type": "topup"})
            if document:
                return document
    if provider and reference:
        return db.transactions.find_one(
            {
                "type": "topup",
                "payment_method": provider,
                "provider_reference": str(reference),
            }
        )
    return None


def _load_topup_for_provider(db, transaction_id, provider: str) -> Dict:
    try:
        object_id = parse_object_id(transaction_id)
    except WalletError:
        raise TransactionNotFound("Transaction not found.")
    transaction = db.transactions.find_one({"_id": object_id})
    if not transaction or transaction.get("type") != "topup":
        raise TransactionNotFound("Transaction not found.")
    if transaction.get("payment_method") != provider:
        raise ProviderMismatch(
            f"Transaction was not started with {provider}."
        )
    return transaction


def settle_topup(
    db,
    transaction_id,
    provider: str,
    provider_amount=None,
    provider_reference: Optional[str] = None,
    details: Optional[Dict] = None,
) -> SettlementResult:
    transaction = _load_topup_for_provider(db, transaction_id, provider)

    if provider_amount is not None and not amounts_match(
        provider_amount, transaction.get("provider_amount")
    ):
        log_payment_event(
            "topup_amount_mismatch",
            transaction.get("user_id"),
            provider_amount,
            transaction.get("provider_currency") or "",
            transaction_id=transaction["_id"],
            expected=transaction.get("provider_amount"),
        )
        raise AmountMismatch("Reported amount does not match the transaction.")

    if transaction.get("status") == "completed":
        return SettlementResult(transaction, applied=False)

    now = _now()
    update_fields: Dict[str, object] = {
        "status": "completed",
        "processed_at": now,
        "updated_at": now,
        "failure_reason": None,
    }
    if provider_reference:
        update_fields["provider_reference"] = str(provider_reference)
    if details:
        update_fields[f"payment_details.{provider}"] = details

    claimed = db.transactions.find_one_and_update(
        {"_id": transaction["_id"], "status": {"$in": SETTLEABLE_STATUSES}},
        {"$set": update_fields},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        current = db.transactions.find_one({"_id": transaction["_id"]}) or transaction
        return SettlementResult(current, applied=False)

    amount_cents = int(claimed["amount_cents"])
    user = db.users.find_one_and_update(
        {"_id": claimed["user_id"]},
        {"$inc": {"balance_cents": amount_cents}},
        return_document=ReturnDocument.AFTER,
    )
    if user is None:
        db.transactions.update_one(
            {"_id": claimed["_id"]},
            {
                "$set": {
                    "status": "failed",
                    "failure_reason": "Wallet owner no longer exists.",
                    "updated_at": _now(),
                }
            },
        )
        logger.error("Top-up %s settled for a missing user", claimed["_id"])
        raise InvalidTransactionState("Wallet owner no longer exists.")

    balance_after = int(user.get("balance_cents") or 0)
    balance_fields = {
        "balance_before_cents": balance_after - amount_cents,
        "balance_after_cents": balance_after,
    }
    db.transactions.update_one({"_id": claimed["_id"]}, {"$set": balance_fields})
    claimed.update(balance_fields)

    log_payment_event(
        "topup_settled",
        claimed["user_id"],
        from_cents(amount_cents),
        claimed.get("currency", WALLET_CURRENCY),
        provider=provider,
        transaction_id=claimed["_id"],
        provider_reference=provider_reference,
    )
    return SettlementResult(claimed, applied=True, balance_cents=balance_after)


def fail_topup(
    db,
    transaction_id,
    provider: str,
    reason: str,
    details: Optional[Dict] = None,
) -> Optional[Dict]:
    """Mark a pending top-up failed. Returns None when nothing changed."""
    transaction = _load_topup_for_provider(db, transaction_id, provider)
    update_fields: Dict[str, object] = {
        "status": "failed",
        "failure_reason": (reason or "Payment failed.")[:DESCRIPTION_MAX_LENGTH],
        "processed_at": _now(),
        "updated_at": _now(),
    }
    if details:
        update_fields[f"payment_details.{provider}"] = details
    failed = db.transactions.find_one_and_update(
        {"_id": transaction["_id"], "status": "pending"},
        {"$set": update_fields},
        return_document=ReturnDocument.AFTER,
    )
    if failed is not None:
        log_payment_event(
            "topup_failed",
            failed["user_id"],
            from_cents(failed["amount_cents"]),
            failed.get("currency", WALLET_CURRENCY),
            provider=provider,
            transaction_id=failed["_id"],
            reason=reason,
        )
    return failed


def expire_pending_topups(db, older_than: datetime) -> int:
    result = db.transactions.update_many(
        {"type": "topup", "status": "pending", "created_at": {"$lt": older_than}},
        {
            "$set": {
                "status": "cancelled",
                "failure_reason": "Payment session expired.",
                "updated_at": _now(),
            }
        },
    )
    return result.modified_count


# --- Purchases ---


def _reserve_purchase(db, user_id, project: Dict, price_cents: int) -> Tuple[Dict, Optional[str]]:
    now = _now()
    license_type = project.get("license_type") or "commercial"
    document = {
        "user_id": user_id,
        "project_id": project["_id"],
        "transaction_id": None,
        "amount_cents": price_cents,
        "currency": WALLET_CURRENCY,
        "status": "pending",
        "license": {
            "type": license_type,
            "description": project.get("license_description")
            or "Can be used for commercial projects",
        },
        "download_token": None,
        "download_expires": None,
        "download_count": 0,
        "max_downloads": MAX_DOWNLOADS,
        "refunded_at": None,
        "refund_reason": None,
        "created_at": now,
        "updated_at": now,
    }
    try:
        insert_result = db.purchases.insert_one(document)
    except DuplicateKeyError:
        existing = db.purchases.find_one(
            {"user_id": user_id, "project_id": project["_id"]}
        )
        if existing and existing.get("status") == "refunded":
            reactivated = db.purchases.find_one_and_update(
                {"_id": existing["_id"], "status": "refunded"},
                {
                    "$set": {
                        "status": "pending",
                        "amount_cents": price_cents,
                        "refunded_at": None,
                        "refund_reason": None,
                        "download_count": 0,
                        "updated_at": now,
                    }
                },
                return_document=ReturnDocument.AFTER,
            )
            if reactivated is not None:
                return reactivated, "refunded"
        if existing and existing.get("status") == "pending":
            raise AlreadyPurchased("A purchase of this project is already in progress.")
        raise AlreadyPurchased("You have already purchased this project")

    document["_id"] = insert_result.inserted_id
    return document, None


def _release_purchase(db, purchase: Dict, previous_status: Optional[str]):
    if previous_status:
        db.purchases.update_one(
            {"_id": purchase["_id"], "status": "pending"},
            {"$set": {"status": previous_status, "updated_at": _now()}},
        )
    else:
        db.purchases.delete_one({"_id": purchase["_id"], "status": "pending"})


def has_purchased(db, user_id, project_id) -> bool:
    return (
        db.purchases.find_one(
            {"user_id": user_id, "project_id": project_id, "status": "completed"},
            {"_id": 1},
        )
        is not None
    )


def purchase_project(db, user: Dict, project: Dict) -> Dict:
    user_id = user["_id"]
    price_cents = int(project.get("price_cents") or 0)
    if price_cents < 0:
        raise WalletError("Project price is invalid.")

    purchase, previous_status = _reserve_purchase(db, user_id, project, price_cents)

    if price_cents > 0:
        debited = db.users.find_one_and_update(
            {"_id": user_id, "balance_cents": {"$gte": price_cents}},
            {"$inc": {"balance_cents": -price_cents}},
            return_document=ReturnDocument.AFTER,
        )
        if debited is None:
            _release_purchase(db, purchase, previous_status)
            raise InsufficientBalance("Insufficient balance")
        balance_after = int(debited.get("balance_cents") or 0)
    else:
        balance_after = _current_balance(db, user_id)

    transaction = _build_transaction(
        user_id,
        "purchase",
        -price_cents,
        "completed",
        "wallet_balance",
        f"Purchase project {project.get('title') or project['_id']}",
        balance_after + price_cents,
        balance_after,
        related_project_id=project["_id"],
        related_purchase_id=purchase["_id"],
    )
    transaction["_id"] = db.transactions.insert_one(transaction).inserted_id

    now = _now()
    purchase_fields = {
        "status": "completed",
        "transaction_id": transaction["_id"],
        "download_token": secrets.token_urlsafe(32),
        "download_expires": now + DOWNLOAD_LINK_TTL,
        "completed_at": now,
        "updated_at": now,
    }
    db.purchases.update_one({"_id": purchase["_id"]}, {"$set": purchase_fields})
    purchase.update(purchase_fields)
    db.projects.update_one({"_id": project["_id"]}, {"$inc": {"purchase_count": 1}})

    log_payment_event(
        "purchase_completed",
        user_id,
        from_cents(price_cents),
        WALLET_CURRENCY,
        project_id=project["_id"],
        transaction_id=transaction["_id"],
        purchase_id=purchase["_id"],
    )
    return {
        "transaction": transaction,
        "purchase": purchase,
        "balance_cents": balance_after,
    }


def refund_purchase(db, purchase_id, reason: str) -> Dict:
    object_id = parse_object_id(purchase_id, "purchase")
    now = _now()
    purchase = db.purchases.find_one_and_update(
        {"_id": object_id, "status": "completed"},
        {
            "$set": {
                "status": "refunded",
                "refunded_at": now,
                "refund_reason": reason,
                "updated_at": now,
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if purchase is None:
        if db.purchases.find_one({"_id": object_id}, {"_id": 1}) is None:
            raise TransactionNotFound("Purchase not found.")
        raise InvalidTransactionState("Only completed purchases can be refunded.")

    amount_cents = int(purchase.get("amount_cents") or 0)
    user_id = purchase["user_id"]
    balance_before = _current_balance(db, user_id)
    refund = _build_transaction(
        user_id,
        "refund",
        amount_cents,
        "completed",
        "wallet_balance",
        f"Refund for purchase {purchase['_id']}",
        balance_before,
        balance_before + amount_cents,
        related_project_id=purchase.get("project_id"),
        related_purchase_id=purchase["_id"],
        related_transaction_id=purchase.get("transaction_id"),
    )
    refund["metadata"] = {"reason": reason or ""}
    refund["_id"] = db.transactions.insert_one(refund).inserted_id

    user = db.users.find_one_and_update(
        {"_id": user_id},
        {"$inc": {"balance_cents": amount_cents}},
        return_document=ReturnDocument.AFTER,
    )
    balance_after = int((user or {}).get("balance_cents") or 0)
    balance_fields = {
        "balance_before_cents": balance_after - amount_cents,
        "balance_after_cents": balance_after,
    }
    db.transactions.update_one({"_id": refund["_id"]}, {"$set": balance_fields})
    refund.update(balance_fields)

    if purchase.get("transaction_id"):
        db.transactions.update_one(
            {"_id": purchase["transaction_id"]},
            {
                "$set": {
                    "refunded_at": now,
                    "related_transaction_id": refund["_id"],
                    "updated_at": now,
                }
            },
        )
    db.projects.update_one(
        {"_id": purchase.get("project_id"), "purchase_count": {"$gt": 0}},
        {"$inc": {"purchase_count": -1}},
    )

    log_payment_event(
        "purchase_refunded",
        user_id,
        from_cents(amount_cents),
        WALLET_CURRENCY,
        purchase_id=purchase["_id"],
        refund_transaction_id=refund["_id"],
    )
    return {"purchase": purchase, "transaction": refund, "balance_cents": balance_after}


# --- Withdrawals (top-up refunds through the provider) ---


def begin_withdrawal(db, transaction_id) -> Tuple[Dict, int]:
    object_id = parse_object_id(transaction_id)
    topup = db.transactions.find_one({"_id": object_id})
    if not topup or topup.get("type") != "topup":
        raise TransactionNotFound("Transaction not found.")
    if topup.get("status") != "completed":
        raise InvalidTransactionState("Only completed top-ups can be refunded.")

    claimed = db.transactions.find_one_and_update(
        {
            "_id": object_id,
            "status": "completed",
            "refunded_at": None,
            "withdrawal_started_at": None,
        },
        {"$set": {"withdrawal_started_at": _now()}},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        raise InvalidTransactionState("This top-up has already been refunded.")

    amount_cents = int(claimed["amount_cents"])
    debited = db.users.find_one_and_update(
        {"_id": claimed["user_id"], "balance_cents": {"$gte": amount_cents}},
        {"$inc": {"balance_cents": -amount_cents}},
        return_document=ReturnDocument.AFTER,
    )
    if debited is None:
        db.transactions.update_one(
            {"_id": object_id}, {"$set": {"withdrawal_started_at": None}}
        )
        raise InsufficientBalance("The wallet balance no longer covers this top-up.")
    return claimed, int(debited.get("balance_cents") or 0)


def complete_withdrawal(
    db, topup: Dict, balance_after: int, provider_refund_reference: Optional[str], reason: str
) -> Dict:
    amount_cents = int(topup["amount_cents"])
    withdrawal = _build_transaction(
        topup["user_id"],
        "withdrawal",
        -amount_cents,
        "completed",
        topup.get("payment_method") or "wallet_balance",
        f"Refund of top-up {topup['_id']} to {topup.get('payment_method')}",
        balance_after + amount_cents,
        balance_after,
        related_transaction_id=topup["_id"],
        provider_reference=provider_refund_reference,
    )
    withdrawal["metadata"] = {"reason": reason or ""}
    withdrawal["_id"] = db.transactions.insert_one(withdrawal).inserted_id

    now = _now()
    db.transactions.update_one(
        {"_id": topup["_id"]},
        {
            "$set": {
                "refunded_at": now,
                "related_transaction_id": withdrawal["_id"],
                "updated_at": now,
            }
        },
    )
    log_payment_event(
        "topup_refunded",
        topup["user_id"],
        from_cents(amount_cents),
        WALLET_CURRENCY,
        provider=topup.get("payment_method"),
        transaction_id=topup["_id"],
        withdrawal_id=withdrawal["_id"],
    )
    return withdrawal


def abort_withdrawal(db, topup: Dict, reason: str):
    db.users.update_one(
        {"_id": topup["user_id"]},
        {"$inc": {"balance_cents": int(topup["amount_cents"])}},
    )
    db.transactions.update_one(
        {"_id": topup["_id"]},
        {"$set": {"withdrawal_started_at": None, "updated_at": _now()}},
    )
    logger.warning("Withdrawal of top-up %s aborted: %s", topup["_id"], reason)


def withdraw_topup(db, transaction_id, refund_with_provider, reason: str) -> Dict:
    """Debit the wallet, refund through the provider, and record the withdrawal.

    ``refund_with_provider(topup)`` returns the provider's refund reference and
    raises on failure, in which case the debit is reversed.
    """
    topup, balance_after = begin_withdrawal(db, transaction_id)
    try:
        reference = refund_with_provider(topup)
    except Exception as exc:
        abort_withdrawal(db, topup, str(exc))
        raise
    withdrawal = complete_withdrawal(db, topup, balance_after, reference, reason)
    return {"transaction": withdrawal, "topup": topup, "balance_cents": balance_after}


# --- Reporting & reconciliation ---


def get_pending_amount(db, user_id) -> int:
    rows = db.transactions.aggregate(
        [
            {"$match": {"user_id": user_id, "type": "topup", "status": "pending"}},
            {"$group": {"_id": None, "total": {"$sum": "$amount_cents"}}},
        ]
    )
    for row in rows:
        return int(row.get("total") or 0)
    return 0


def get_user_summary(db, user_id) -> Dict[str, int]:
    rows = db.transactions.aggregate(
        [
            {"$match": {"user_id": user_id, "status": "completed"}},
            {
                "$group": {
                    "_id": "$type",
                    "total": {"$sum": "$amount_cents"},
                    "count": {"$sum": 1},
                }
            },
        ]
    )
    summary = {
        "total_topup_cents": 0,
        "total_purchase_cents": 0,
        "total_refund_cents": 0,
        "total_withdrawal_cents": 0,
        "ledger_balance_cents": 0,
    }
    for row in rows:
        total = int(row.get("total") or 0)
        summary["ledger_balance_cents"] += total
        key = f"total_{row['_id']}_cents"
        if key in summary:
            summary[key] = abs(total)
    return summary


def reconcile_balances(db, repair: bool = False, user_id=None) -> List[Dict]:
    match: Dict[str, object] = {"status": "completed"}
    if user_id is not None:
        match["user_id"] = user_id
    ledger_totals = {
        row["_id"]: int(row.get("total") or 0)
        for row in db.transactions.aggregate(
            [
                {"$match": match},
                {"$group": {"_id": "$user_id", "total": {"$sum": "$amount_cents"}}},
            ]
        )
    }

    user_query = {"_id": user_id} if user_id is not None else {}
    drifts: List[Dict] = []
    for user in db.users.find(user_query, {"balance_cents": 1, "email": 1}):
        stored = user.get("balance_cents")
        expected = ledger_totals.get(user["_id"], 0)
        actual = int(stored or 0)
        if actual == expected:
            continue
        drift = {
            "user_id": user["_id"],
            "email": user.get("email", ""),
            "balance_cents": actual,
            "ledger_balance_cents": expected,
            "difference_cents": actual - expected,
            "repaired": False,
        }
        if repair:
            result = db.users.update_one(
                {"_id": user["_id"], "balance_cents": stored},
                {"$set": {"balance_cents": expected}},
            )
            drift["repaired"] = result.modified_count == 1
            logger.warning(
                "Wallet balance for %s reset from %s to %s cents",
                user["_id"],
                actual,
                expected,
            )
        drifts.append(drift)
    return drifts


def get_transaction_stats(
    db, start: Optional[datetime] = None, end: Optional[datetime] = None
) -> Dict[str, int]:
    match: Dict[str, object] = {}
    if start or end:
        created_filter: Dict[str, datetime] = {}
        if start:
            created_filter["$gte"] = start
        if end:
            created_filter["$lt"] = end
        match["created_at"] = created_filter

    stats = {
        "total_transactions": db.transactions.count_documents(match),
        "completed_transactions": db.transactions.count_documents(
            {**match, "status": "completed"}
        ),
        "failed_transactions": db.transactions.count_documents(
            {**match, "status": "failed"}
        ),
        "pending_transactions": db.transactions.count_documents(
            {**match, "status": "pending"}
        ),
        "total_volume_cents": 0,
        "total_fees_cents": 0,
    }
    for row in db.transactions.aggregate(
        [
            {"$match": {**match, "status": "completed"}},
            {
                "$group": {
                    "_id": None,
                    "volume": {"$sum": "$amount_cents"},
                    "fees": {"$sum": "$fees_cents"},
                }
            },
        ]
    ):
        stats["total_volume_cents"] = int(row.get("volume") or 0)
        stats["total_fees_cents"] = int(row.get("fees") or 0)
    return stats


def record_payment_event(
    db,
    provider: str,
    event_key: Optional[str],
    outcome: str,
    transaction_id=None,
    details: Optional[str] = None,
) -> int:
    """Count a provider delivery and remember its latest outcome."""
    if not event_key:
        return 0
    now = _now()
    document = db.payment_events.find_one_and_update(
        {"provider": provider, "event_key": str(event_key)},
        {
            "$setOnInsert": {"first_seen_at": now},
            "$inc": {"deliveries": 1},
            "$set": {
                "outcome": outcome,
                "transaction_id": str(transaction_id) if transaction_id else None,
                "details": details,
                "last_seen_at": now,
            },
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int((document or {}).get("deliveries") or 0)
