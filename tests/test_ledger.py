# tests/test_ledger.py

import re
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from wallet_service.core.exceptions import (
    BelowMinimumCartValue, CategoryNotEligible, ExceedsMaxUsage, InsufficientBalance,
    InvalidAmount, NotFound, StorageFailure, WalletDisabled,
)
from wallet_service.crud import wallet as crud_wallet
from wallet_service.models.wallet import CREDIT, DEBIT, EXPIRED, REF_FIRST_PURCHASE, REF_MANUAL, Wallet
from wallet_service.schemas.wallet import WalletSettingsUpdate
from wallet_service.services import ledger
from wallet_service.services import wallet_settings as wallet_settings_service
from wallet_service.utils.dates import utcnow


def set_wallet_settings(db, **values):
    return wallet_settings_service.update_settings(db, WalletSettingsUpdate(**values))


# --- Начисления ---

def test_credit_creates_wallet_and_ledger_entry(db_session, test_user):
    expires_at = utcnow() + timedelta(days=30)

    tx = ledger.credit(db_session, test_user.id, 150, description="Promo", expires_at=expires_at)

    assert tx.id is not None
    assert tx.type == CREDIT
    assert tx.amount == 150
    assert tx.expires_at is not None
    balance = ledger.get_balance(db_session, test_user.id)
    assert balance.balance == 150
    assert balance.redeemed_balance == 0


def test_credit_unknown_user_raises_not_found(db_session):
    with pytest.raises(NotFound):
        ledger.credit(db_session, 999, 10)


@pytest.mark.parametrize("amount", [0, -5, 2.5, True, "10"])
def test_credit_rejects_invalid_amount(db_session, test_user, amount):
    with pytest.raises(InvalidAmount):
        ledger.credit(db_session, test_user.id, amount)
    assert crud_wallet.count_user_transactions(db_session, test_user.id) == 0


def test_get_balance_without_wallet_does_not_create_one(db_session, test_user):
    balance = ledger.get_balance(db_session, test_user.id)

    assert balance.balance == 0
    assert balance.redeemed_balance == 0
    assert db_session.query(Wallet).count() == 0


def test_list_transactions_newest_first(db_session, test_user):
    ledger.credit(db_session, test_user.id, 10)
    ledger.credit(db_session, test_user.id, 20)
    ledger.credit(db_session, test_user.id, 30)

    page = ledger.list_transactions(db_session, test_user.id, page=1, size=2)

    assert page.total_items == 3
    assert page.total_pages == 2
    assert [tx.amount for tx in page.items] == [30, 20]


# --- Списания ---

def test_redeem_returns_discount_and_voucher(db_session, test_user):
    set_wallet_settings(db_session, conversion_rate=Decimal("10"))
    ledger.credit(db_session, test_user.id, 200)

    outcome = ledger.redeem(db_session, test_user.id, 105, reference_type="order", reference_id=77)

    assert outcome.balance == 95
    assert outcome.discount_amount == Decimal("10.50")
    assert re.fullmatch(r"WALLET-[0-9A-F]{12}", outcome.voucher_code)
    assert outcome.transaction.type == DEBIT
    assert outcome.transaction.amount == 105
    assert outcome.transaction.reference_id == 77
    assert ledger.get_balance(db_session, test_user.id).redeemed_balance == 105


def test_discount_is_rounded_down_to_cents():
    assert ledger.coins_to_currency(100, Decimal("3")) == Decimal("33.33")
    assert ledger.coins_to_currency(5, Decimal("1.00")) == Decimal("5.00")


def test_redeem_insufficient_balance_changes_nothing(db_session, test_user):
    ledger.credit(db_session, test_user.id, 50)

    with pytest.raises(InsufficientBalance) as exc_info:
        ledger.redeem(db_session, test_user.id, 80)

    assert "available 50" in exc_info.value.message
    assert ledger.get_balance(db_session, test_user.id).balance == 50
    assert crud_wallet.get_totals_by_type(db_session, test_user.id)[DEBIT] == 0


def test_redeem_without_wallet_is_insufficient(db_session, test_user):
    with pytest.raises(InsufficientBalance):
        ledger.redeem(db_session, test_user.id, 1)


def test_redeem_rejected_when_wallet_disabled(db_session, test_user):
    ledger.credit(db_session, test_user.id, 100)
    set_wallet_settings(db_session, is_active=False)

    with pytest.raises(WalletDisabled):
        ledger.redeem(db_session, test_user.id, 10)


def test_min_cart_value_gates_redemption_regardless_of_balance(db_session, test_user):
    set_wallet_settings(db_session, min_cart_value=Decimal("500"))
    ledger.credit(db_session, test_user.id, 1000)

    with pytest.raises(BelowMinimumCartValue):
        ledger.redeem(db_session, test_user.id, 100, order_value=Decimal("400"))

    assert ledger.get_balance(db_session, test_user.id).balance == 1000
    outcome = ledger.redeem(db_session, test_user.id, 100, order_value=Decimal("500"))
    assert outcome.balance == 900


def test_max_usage_percentage_limits_discount(db_session, test_user):
    set_wallet_settings(db_session, max_usage_percentage=20)
    ledger.credit(db_session, test_user.id, 1000)

    with pytest.raises(ExceedsMaxUsage) as exc_info:
        ledger.redeem(db_session, test_user.id, 250, order_value=Decimal("1000"))

    assert "maximum of 200 coins" in exc_info.value.message
    assert ledger.redeem(db_session, test_user.id, 200, order_value=Decimal("1000")).balance == 800


def test_max_redeemable_coins_per_redemption(db_session, test_user):
    set_wallet_settings(db_session, max_redeemable_coins=100)
    ledger.credit(db_session, test_user.id, 500)

    with pytest.raises(ExceedsMaxUsage):
        ledger.redeem(db_session, test_user.id, 101)


def test_min_cart_value_is_checked_before_per_redemption_cap(db_session, test_user):
    set_wallet_settings(db_session, max_redeemable_coins=100, min_cart_value=Decimal("500"))
    ledger.credit(db_session, test_user.id, 500)

    with pytest.raises(BelowMinimumCartValue):
        ledger.redeem(db_session, test_user.id, 200, order_value=Decimal("400"))

    set_wallet_settings(db_session, min_cart_value=Decimal("0"), applicable_categories=["books"])
    with pytest.raises(CategoryNotEligible):
        ledger.redeem(db_session, test_user.id, 200, order_value=Decimal("1000"), category="toys")
    assert ledger.get_balance(db_session, test_user.id).balance == 500


def test_category_restriction(db_session, test_user):
    set_wallet_settings(db_session, applicable_categories=["Electronics", " Books "])
    ledger.credit(db_session, test_user.id, 100)

    with pytest.raises(CategoryNotEligible):
        ledger.redeem(db_session, test_user.id, 10, category="toys")

    assert ledger.redeem(db_session, test_user.id, 10, category="books").balance == 90
    # Без категории ограничение не применяется
    assert ledger.redeem(db_session, test_user.id, 10).balance == 80


def test_insufficient_balance_checked_before_settings_policy(db_session, test_user):
    set_wallet_settings(db_session, min_cart_value=Decimal("500"))
    ledger.credit(db_session, test_user.id, 10)

    with pytest.raises(InsufficientBalance):
        ledger.redeem(db_session, test_user.id, 100, order_value=Decimal("400"))


def test_storage_failure_rolls_back_redemption(db_session, test_user, mocker):
    ledger.credit(db_session, test_user.id, 100)
    mocker.patch(
        "wallet_service.crud.wallet.create_transaction",
        side_effect=OperationalError("INSERT INTO wallet_transactions", {}, Exception("database is locked")),
    )

    with pytest.raises(StorageFailure):
        ledger.redeem(db_session, test_user.id, 40)

    mocker.stopall()
    assert ledger.get_balance(db_session, test_user.id).balance == 100


# --- Прочие операции ---

def test_manual_adjust_cannot_overdraw(db_session, test_user):
    ledger.credit(db_session, test_user.id, 30)

    with pytest.raises(InsufficientBalance):
        ledger.manual_adjust(db_session, test_user.id, -31, "correction")

    tx = ledger.manual_adjust(db_session, test_user.id, -30, "correction")
    assert tx.type == DEBIT
    assert tx.reference_type == REF_MANUAL
    balance = ledger.get_balance(db_session, test_user.id)
    assert balance.balance == 0
    # Ручные списания не считаются потраченными на заказы
    assert balance.redeemed_balance == 0


def test_manual_adjust_positive_credits_without_expiry(db_session, test_user):
    tx = ledger.manual_adjust(db_session, test_user.id, 25, "goodwill")

    assert tx.type == CREDIT
    assert tx.expires_at is None
    assert tx.description == "Admin adjustment: goodwill"


def test_manual_adjust_zero_is_invalid(db_session, test_user):
    with pytest.raises(InvalidAmount):
        ledger.manual_adjust(db_session, test_user.id, 0, "nothing")


def test_first_purchase_reward_awarded_once(db_session, test_user):
    set_wallet_settings(db_session, first_purchase_coins=300, expiry_days=30)

    first = ledger.award_first_purchase(db_session, test_user.id, order_id=1001)
    second = ledger.award_first_purchase(db_session, test_user.id, order_id=1002)

    assert first is not None
    assert first.amount == 300
    assert first.reference_type == REF_FIRST_PURCHASE
    assert first.expires_at is not None
    assert second is None
    assert ledger.get_balance(db_session, test_user.id).balance == 300


def test_first_purchase_unique_index_blocks_second_award(db_session, test_user, mocker):
    set_wallet_settings(db_session, first_purchase_coins=300, expiry_days=30)
    # Обе попытки проходят проверку "уже выдавали?", как два параллельных вебхука
    mocker.patch.object(crud_wallet, "has_transaction_with_reference", return_value=False)

    first = ledger.award_first_purchase(db_session, test_user.id, order_id=1001)
    second = ledger.award_first_purchase(db_session, test_user.id, order_id=1002)

    assert first is not None
    assert second is None
    assert ledger.get_balance(db_session, test_user.id).balance == 300
    assert ledger.audit_balance(db_session, test_user.id).total_credited == 300


def test_refund_credit_never_expires(db_session, test_user):
    tx = ledger.refund(db_session, test_user.id, 40, reference_id=555)

    assert tx.type == CREDIT
    assert tx.expires_at is None
    assert tx.reference_id == 555


def test_audit_matches_ledger_after_mixed_operations(db_session, test_user):
    ledger.credit(db_session, test_user.id, 100, expires_at=utcnow() - timedelta(days=1))
    ledger.credit(db_session, test_user.id, 60)
    ledger.redeem(db_session, test_user.id, 70)
    ledger.expire_old_credits(db_session)

    audit = ledger.audit_balance(db_session, test_user.id)

    assert audit.consistent is True
    assert audit.stored_balance == audit.derived_balance == 60
    assert audit.total_credited == 160
    assert audit.total_debited == 70
    assert audit.total_expired == 30


# --- FIFO-прогон ---

def test_replay_lots_consumes_oldest_credit_first():
    now = utcnow()
    transactions = [
        SimpleNamespace(id=1, type=CREDIT, amount=100, reference_id=None, created_at=now - timedelta(days=10), expires_at=now - timedelta(days=1)),
        SimpleNamespace(id=2, type=DEBIT, amount=80, reference_id=None, created_at=now - timedelta(days=8), expires_at=None),
        SimpleNamespace(id=3, type=CREDIT, amount=50, reference_id=None, created_at=now - timedelta(days=6), expires_at=now + timedelta(days=5)),
        SimpleNamespace(id=4, type=DEBIT, amount=30, reference_id=None, created_at=now - timedelta(days=4), expires_at=None),
    ]

    lots = ledger.replay_lots(transactions)

    assert [(lot.transaction_id, lot.remaining) for lot in lots] == [(1, 0), (3, 40)]


def test_replay_lots_expired_row_closes_referenced_credit():
    now = utcnow()
    transactions = [
        SimpleNamespace(id=1, type=CREDIT, amount=100, reference_id=None, created_at=now - timedelta(days=10), expires_at=now - timedelta(days=1)),
        SimpleNamespace(id=2, type=CREDIT, amount=50, reference_id=None, created_at=now - timedelta(days=5), expires_at=None),
        SimpleNamespace(id=3, type=EXPIRED, amount=100, reference_id=1, created_at=now, expires_at=None),
        SimpleNamespace(id=4, type=DEBIT, amount=20, reference_id=None, created_at=now, expires_at=None),
    ]

    lots = ledger.replay_lots(transactions)

    assert [(lot.transaction_id, lot.remaining) for lot in lots] == [(1, 0), (2, 30)]
