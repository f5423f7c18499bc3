from datetime import datetime, timedelta

import pytest

from backend import ledger
from tests.conftest import fund_wallet, make_project, make_user


@pytest.fixture
def ledger_db(db):
    ledger.ensure_ledger_indexes(db)
    return db


@pytest.fixture
def buyer(ledger_db):
    return make_user(ledger_db, "buyer@example.com")


@pytest.fixture
def project(ledger_db):
    author = make_user(ledger_db, "author@example.com", role="author")
    return make_project(ledger_db, author, price_cents=2500)


def balance_of(db, user):
    return db.users.find_one({"_id": user["_id"]})["balance_cents"]


def start_topup(db, user, amount_cents=5000, provider="stripe", provider_amount=None):
    user = db.users.find_one({"_id": user["_id"]})
    return ledger.create_topup(
        db,
        user,
        amount_cents,
        provider,
        amount_cents if provider_amount is None else provider_amount,
        "USD",
    )


def test_to_cents_rounds_half_up():
    assert ledger.to_cents("12.345") == 1235
    assert ledger.to_cents(10) == 1000
    assert ledger.to_cents("0.1") == 10


@pytest.mark.parametrize("value", [None, "abc", "nan", True, "1e30", "-1e40"])
def test_to_cents_rejects_non_numbers(value):
    with pytest.raises(ValueError):
        ledger.to_cents(value)


def test_create_topup_starts_pending_without_touching_balance(ledger_db, buyer):
    transaction = start_topup(ledger_db, buyer)

    stored = ledger_db.transactions.find_one({"_id": transaction["_id"]})
    assert stored["status"] == "pending"
    assert stored["amount_cents"] == 5000
    assert stored["type"] == "topup"
    assert balance_of(ledger_db, buyer) == 0


def test_settle_topup_credits_exactly_once(ledger_db, buyer):
    transaction = start_topup(ledger_db, buyer)

    first = ledger.settle_topup(ledger_db, transaction["_id"], "stripe", 5000, "pi_1")
    second = ledger.settle_topup(ledger_db, transaction["_id"], "stripe", 5000, "pi_1")

    assert first.applied is True
    assert first.balance_cents == 5000
    assert second.applied is False
    assert balance_of(ledger_db, buyer) == 5000

    stored = ledger_db.transactions.find_one({"_id": transaction["_id"]})
    assert stored["status"] == "completed"
    assert stored["provider_reference"] == "pi_1"
    assert stored["balance_before_cents"] == 0
    assert stored["balance_after_cents"] == 5000


def test_settle_topup_rejects_amount_mismatch(ledger_db, buyer):
    transaction = start_topup(ledger_db, buyer)

    with pytest.raises(ledger.AmountMismatch):
        ledger.settle_topup(ledger_db, transaction["_id"], "stripe", 4999)

    assert ledger_db.transactions.find_one({"_id": transaction["_id"]})["status"] == "pending"
    assert balance_of(ledger_db, buyer) == 0


def test_settle_topup_rejects_other_provider(ledger_db, buyer):
    transaction = start_topup(ledger_db, buyer)

    with pytest.raises(ledger.ProviderMismatch):
        ledger.settle_topup(ledger_db, transaction["_id"], "paypal", 5000)


def test_settle_topup_unknown_transaction(ledger_db):
    with pytest.raises(ledger.TransactionNotFound):
        ledger.settle_topup(ledger_db, "not-an-id", "stripe")
    with pytest.raises(ledger.TransactionNotFound):
        ledger.settle_topup(ledger_db, "65f000000000000000000000", "stripe")


def test_late_success_settles_failed_topup(ledger_db, buyer):
    transaction = start_topup(ledger_db, buyer, provider="vnpay", provider_amount=1250000)

    failed = ledger.fail_topup(ledger_db, transaction["_id"], "vnpay", "Bank timeout")
    assert failed["status"] == "failed"

    result = ledger.settle_topup(ledger_db, transaction["_id"], "vnpay", 1250000)
    assert result.applied is True
    assert balance_of(ledger_db, buyer) == 5000
    stored = ledger_db.transactions.find_one({"_id": transaction["_id"]})
    assert stored["failure_reason"] is None


def test_failure_never_downgrades_completed_topup(ledger_db, buyer):
    transaction = start_topup(ledger_db, buyer)
    ledger.settle_topup(ledger_db, transaction["_id"], "stripe", 5000)

    assert ledger.fail_topup(ledger_db, transaction["_id"], "stripe", "late decline") is None
    assert ledger_db.transactions.find_one({"_id": transaction["_id"]})["status"] == "completed"
    assert balance_of(ledger_db, buyer) == 5000


def test_expire_pending_topups_only_cancels_stale_sessions(ledger_db, buyer):
    stale = start_topup(ledger_db, buyer)
    fresh = start_topup(ledger_db, buyer)
    ledger_db.transactions.update_one(
        {"_id": stale["_id"]},
        {"$set": {"created_at": datetime.utcnow() - timedelta(hours=1)}},
    )

    expired = ledger.expire_pending_topups(
        ledger_db, datetime.utcnow() - timedelta(minutes=15)
    )

    assert expired == 1
    assert ledger_db.transactions.find_one({"_id": stale["_id"]})["status"] == "cancelled"
    assert ledger_db.transactions.find_one({"_id": fresh["_id"]})["status"] == "pending"


def test_purchase_debits_wallet_and_records_ownership(ledger_db, buyer, project):
    fund_wallet(ledger_db, buyer, 5000)

    result = ledger.purchase_project(ledger_db, buyer, project)

    assert result["balance_cents"] == 2500
    assert balance_of(ledger_db, buyer) == 2500
    assert result["transaction"]["amount_cents"] == -2500
    assert result["transaction"]["type"] == "purchase"
    assert result["purchase"]["status"] == "completed"
    assert result["purchase"]["download_token"]
    assert ledger.has_purchased(ledger_db, buyer["_id"], project["_id"])
    assert ledger_db.projects.find_one({"_id": project["_id"]})["purchase_count"] == 1


def test_purchase_with_insufficient_balance_leaves_no_trace(ledger_db, buyer, project):
    fund_wallet(ledger_db, buyer, 1000)

    with pytest.raises(ledger.InsufficientBalance):
        ledger.purchase_project(ledger_db, buyer, project)

    assert balance_of(ledger_db, buyer) == 1000
    assert ledger_db.purchases.count_documents({}) == 0
    assert ledger_db.transactions.count_documents({"type": "purchase"}) == 0


def test_purchase_twice_is_rejected(ledger_db, buyer, project):
    fund_wallet(ledger_db, buyer, 10000)
    ledger.purchase_project(ledger_db, buyer, project)

    with pytest.raises(ledger.AlreadyPurchased):
        ledger.purchase_project(ledger_db, buyer, project)

    assert balance_of(ledger_db, buyer) == 7500


def test_free_project_purchase_keeps_balance(ledger_db, buyer):
    author = make_user(ledger_db, "free-author@example.com", role="author")
    free_project = make_project(ledger_db, author, title="Free Toolkit", price_cents=0)

    result = ledger.purchase_project(ledger_db, buyer, free_project)

    assert result["balance_cents"] == 0
    assert result["transaction"]["amount_cents"] == 0


def test_refund_purchase_returns_funds_once(ledger_db, buyer, project):
    fund_wallet(ledger_db, buyer, 5000)
    purchase = ledger.purchase_project(ledger_db, buyer, project)["purchase"]

    result = ledger.refund_purchase(ledger_db, purchase["_id"], "Broken download")

    assert result["balance_cents"] == 5000
    assert result["transaction"]["type"] == "refund"
    assert result["transaction"]["amount_cents"] == 2500
    assert result["purchase"]["status"] == "refunded"
    assert not ledger.has_purchased(ledger_db, buyer["_id"], project["_id"])
    assert ledger_db.projects.find_one({"_id": project["_id"]})["purchase_count"] == 0

    with pytest.raises(ledger.InvalidTransactionState):
        ledger.refund_purchase(ledger_db, purchase["_id"], "again")
    assert balance_of(ledger_db, buyer) == 5000


def test_refunded_project_can_be_bought_again(ledger_db, buyer, project):
    fund_wallet(ledger_db, buyer, 5000)
    purchase = ledger.purchase_project(ledger_db, buyer, project)["purchase"]
    ledger.refund_purchase(ledger_db, purchase["_id"], "Changed mind")

    again = ledger.purchase_project(ledger_db, buyer, project)

    assert again["purchase"]["_id"] == purchase["_id"]
    assert again["purchase"]["status"] == "completed"
    assert balance_of(ledger_db, buyer) == 2500


def test_refund_unknown_purchase(ledger_db):
    with pytest.raises(ledger.TransactionNotFound):
        ledger.refund_purchase(ledger_db, "65f000000000000000000000", "n/a")


def test_withdraw_topup_refunds_through_provider(ledger_db, buyer):
    topup = fund_wallet(ledger_db, buyer, 5000).transaction
    refunded_with = []

    def refund_with_provider(transaction):
        refunded_with.append(transaction["_id"])
        return "re_123"

    result = ledger.withdraw_topup(ledger_db, topup["_id"], refund_with_provider, "Customer request")

    assert refunded_with == [topup["_id"]]
    assert balance_of(ledger_db, buyer) == 0
    assert result["transaction"]["type"] == "withdrawal"
    assert result["transaction"]["amount_cents"] == -5000
    assert result["transaction"]["provider_reference"] == "re_123"
    assert ledger_db.transactions.find_one({"_id": topup["_id"]})["refunded_at"] is not None

    with pytest.raises(ledger.InvalidTransactionState):
        ledger.withdraw_topup(ledger_db, topup["_id"], refund_with_provider, "again")
    assert len(refunded_with) == 1


def test_withdraw_topup_restores_balance_when_provider_fails(ledger_db, buyer):
    topup = fund_wallet(ledger_db, buyer, 5000).transaction

    def failing_refund(transaction):
        raise RuntimeError("provider down")

    with pytest.raises(RuntimeError):
        ledger.withdraw_topup(ledger_db, topup["_id"], failing_refund, "Customer request")

    assert balance_of(ledger_db, buyer) == 5000
    stored = ledger_db.transactions.find_one({"_id": topup["_id"]})
    assert stored["withdrawal_started_at"] is None
    assert stored["refunded_at"] is None
    assert ledger_db.transactions.count_documents({"type": "withdrawal"}) == 0


def test_withdraw_topup_requires_covering_balance(ledger_db, buyer, project):
    topup = fund_wallet(ledger_db, buyer, 3000).transaction
    ledger.purchase_project(ledger_db, buyer, project)

    with pytest.raises(ledger.InsufficientBalance):
        ledger.withdraw_topup(ledger_db, topup["_id"], lambda transaction: "re_1", "n/a")

    assert balance_of(ledger_db, buyer) == 500


def test_reconcile_reports_and_repairs_drift(ledger_db, buyer, project):
    fund_wallet(ledger_db, buyer, 5000)
    ledger.purchase_project(ledger_db, buyer, project)
    assert ledger.reconcile_balances(ledger_db) == []

    ledger_db.users.update_one({"_id": buyer["_id"]}, {"$inc": {"balance_cents": 700}})

    drifts = ledger.reconcile_balances(ledger_db)
    assert len(drifts) == 1
    assert drifts[0]["difference_cents"] == 700
    assert drifts[0]["ledger_balance_cents"] == 2500
    assert drifts[0]["repaired"] is False
    assert balance_of(ledger_db, buyer) == 3200

    repaired = ledger.reconcile_balances(ledger_db, repair=True, user_id=buyer["_id"])
    assert repaired[0]["repaired"] is True
    assert balance_of(ledger_db, buyer) == 2500
    assert ledger.reconcile_balances(ledger_db) == []


def test_user_summary_groups_completed_transactions(ledger_db, buyer, project):
    fund_wallet(ledger_db, buyer, 5000)
    start_topup(ledger_db, buyer, 9000)
    purchase = ledger.purchase_project(ledger_db, buyer, project)["purchase"]
    ledger.refund_purchase(ledger_db, purchase["_id"], "n/a")

    summary = ledger.get_user_summary(ledger_db, buyer["_id"])

    assert summary["total_topup_cents"] == 5000
    assert summary["total_purchase_cents"] == 2500
    assert summary["total_refund_cents"] == 2500
    assert summary["ledger_balance_cents"] == 5000
    assert ledger.get_pending_amount(ledger_db, buyer["_id"]) == 9000


def test_transaction_stats(ledger_db, buyer):
    fund_wallet(ledger_db, buyer, 5000)
    pending = start_topup(ledger_db, buyer, 2000)
    failed = start_topup(ledger_db, buyer, 1500)
    ledger.fail_topup(ledger_db, failed["_id"], "stripe", "declined")

    stats = ledger.get_transaction_stats(ledger_db)

    assert stats["total_transactions"] == 3
    assert stats["completed_transactions"] == 1
    assert stats["failed_transactions"] == 1
    assert stats["pending_transactions"] == 1
    assert stats["total_volume_cents"] == 5000
    assert pending["status"] == "pending"


def test_payment_events_count_deliveries(ledger_db):
    assert ledger.record_payment_event(ledger_db, "vnpay", "ref:1:00", "applied", "abc") == 1
    assert ledger.record_payment_event(ledger_db, "vnpay", "ref:1:00", "duplicate", "abc") == 2
    assert ledger.record_payment_event(ledger_db, "vnpay", None, "ignored") == 0

    event = ledger_db.payment_events.find_one({"provider": "vnpay", "event_key": "ref:1:00"})
    assert event["deliveries"] == 2
    assert event["outcome"] == "duplicate"
