# wallet_service/services/ledger.py

import logging
import math
import secrets
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Iterable, List

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from wallet_service.core.exceptions import (
    BelowMinimumCartValue, CategoryNotEligible, ExceedsMaxUsage, InsufficientBalance,
    InvalidAmount, NotFound, StorageFailure, WalletDisabled, WalletError,
)
from wallet_service.crud import user as crud_user
from wallet_service.crud import wallet as crud_wallet
from wallet_service.models.wallet import (
    CREDIT, DEBIT, EXPIRED, REF_EXPIRY, REF_FIRST_PURCHASE, REF_MANUAL, REF_REDEMPTION, REF_REFUND,
    WalletSettings, WalletTransaction,
)
from wallet_service.schemas.wallet import (
    BalanceAudit, ExpirySweepResult, PaginatedTransactions, WalletBalance, split_categories,
)
from wallet_service.services import wallet_settings as wallet_settings_service
from wallet_service.utils.dates import ensure_aware, utcnow

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class CreditLot:
    """Остаток одного начисления после FIFO-прогона журнала."""
    transaction_id: int
    amount: int
    remaining: int
    created_at: datetime
    expires_at: datetime | None


@dataclass
class RedemptionOutcome:
    transaction: WalletTransaction
    balance: int
    discount_amount: Decimal
    voucher_code: str


@dataclass
class ExpirySweepOutcome:
    users_processed: int = 0
    coins_expired: int = 0
    transactions_created: int = 0
    failed_users: List[int] = field(default_factory=list)
    # user_id -> сколько монет сгорело за этот прогон, для уведомлений
    expired_by_user: Dict[int, int] = field(default_factory=dict)

    def as_schema(self) -> ExpirySweepResult:
        return ExpirySweepResult(
            users_processed=self.users_processed,
            coins_expired=self.coins_expired,
            transactions_created=self.transactions_created,
            failed_users=self.failed_users,
        )


@contextmanager
def _unit_of_work(db: Session, action: str):
    """
    Любая ошибка откатывает транзакцию. Ошибки базы превращаются в StorageFailure,
    доменные ошибки пробрасываются как есть.
    """
    try:
        yield
    except WalletError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Storage failure during wallet operation '{action}'", exc_info=True)
        raise StorageFailure() from e


def _validate_amount(amount) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount()


# --- FIFO-прогон журнала ---

def _consume(lots: List[CreditLot], amount: int) -> int:
    """Списывает amount с самых старых начислений. Возвращает нераспределенный остаток."""
    left = amount
    for lot in lots:
        if left <= 0:
            break
        if lot.remaining <= 0:
            continue
        taken = min(lot.remaining, left)
        lot.remaining -= taken
        left -= taken
    return left


def replay_lots(transactions: Iterable[WalletTransaction]) -> List[CreditLot]:
    """
    Восстанавливает остатки начислений по журналу (транзакции - от старых к новым).
    Списания гасят начисления строго по FIFO: сначала самое раннее по created_at.
    Запись 'expired' обнуляет то начисление, на которое ссылается.
    """
    lots: List[CreditLot] = []
    by_id: Dict[int, CreditLot] = {}
    for tx in transactions:
        if tx.type == CREDIT:
            lot = CreditLot(
                transaction_id=tx.id,
                amount=tx.amount,
                remaining=tx.amount,
                created_at=ensure_aware(tx.created_at),
                expires_at=ensure_aware(tx.expires_at),
            )
            lots.append(lot)
            by_id[tx.id] = lot
        elif tx.type == DEBIT:
            unallocated = _consume(lots, tx.amount)
            if unallocated:
                logger.warning(f"Debit #{tx.id} exceeds replayed credits by {unallocated} coins.")
        elif tx.type == EXPIRED:
            lot = by_id.get(tx.reference_id)
            if lot is not None:
                lot.remaining = max(0, lot.remaining - tx.amount)
            else:
                _consume(lots, tx.amount)
    return lots


# --- Чтение ---

def get_balance(db: Session, user_id: int) -> WalletBalance:
    """
    Баланс пользователя. Для пользователя без кошелька возвращает нули
    и ничего не создает.
    """
    with _unit_of_work(db, "get_balance"):
        wallet = crud_wallet.get_wallet(db, user_id)
        if wallet is None:
            return WalletBalance(user_id=user_id, balance=0, redeemed_balance=0)
        redeemed = crud_wallet.get_redeemed_total(db, user_id)
        return WalletBalance(user_id=user_id, balance=wallet.balance, redeemed_balance=redeemed)


def list_transactions(db: Session, user_id: int, page: int = 1, size: int = 20) -> PaginatedTransactions:
    """Собирает пагинированный ответ с историей транзакций (от новых к старым)."""
    page = max(page, 1)
    size = max(size, 1)
    skip = (page - 1) * size
    with _unit_of_work(db, "list_transactions"):
        transactions = crud_wallet.get_user_transactions(db, user_id=user_id, skip=skip, limit=size)
        total_items = crud_wallet.count_user_transactions(db, user_id=user_id)
    total_pages = math.ceil(total_items / size) if total_items > 0 else 1

    return PaginatedTransactions(
        total_items=total_items,
        total_pages=total_pages,
        current_page=page,
        size=size,
        items=transactions,
    )


# --- Начисления ---

def credit(
    db: Session,
    user_id: int,
    amount: int,
    description: str | None = None,
    expires_at: datetime | None = None,
    reference_type: str = REF_MANUAL,
    reference_id: int | None = None,
) -> WalletTransaction:
    """
    Начисляет монеты. Запись в журнал и увеличение баланса идут одной транзакцией.
    Кошелек создается при первом начислении.
    """
    _validate_amount(amount)
    with _unit_of_work(db, "credit"):
        if not crud_user.user_exists(db, user_id):
            raise NotFound(f"User {user_id} not found.")
        crud_wallet.get_or_create_wallet(db, user_id)
        transaction = crud_wallet.create_transaction(
            db,
            user_id=user_id,
            amount=amount,
            type=CREDIT,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
            expires_at=expires_at,
        )
        crud_wallet.increment_balance(db, user_id, amount)
        db.commit()
        db.refresh(transaction)

    logger.info(f"Credited {amount} coins to user {user_id} ({reference_type}), expires_at={expires_at}")
    return transaction


def award_first_purchase(db: Session, user_id: int, order_id: int) -> WalletTransaction | None:
    """
    Бонус за первую покупку. Выдается один раз на пользователя.
    Проверка и начисление идут в одной транзакции под блокировкой кошелька,
    а уникальный индекс отсекает вторую запись, если блокировки нет (SQLite).
    """
    with _unit_of_work(db, "award_first_purchase"):
        wallet_settings = wallet_settings_service.get_settings(db)
        if not wallet_settings.is_active or wallet_settings.first_purchase_coins <= 0:
            logger.info(f"First purchase reward skipped for user {user_id}: wallet disabled or reward is zero.")
            return None
        if not crud_user.user_exists(db, user_id):
            raise NotFound(f"User {user_id} not found.")

        crud_wallet.get_or_create_wallet(db, user_id)
        crud_wallet.lock_wallet(db, user_id)
        if crud_wallet.has_transaction_with_reference(db, user_id, REF_FIRST_PURCHASE):
            logger.info(f"User {user_id} already received the first purchase reward.")
            return None

        coins = wallet_settings.first_purchase_coins
        expires_at = utcnow() + timedelta(days=wallet_settings.expiry_days)
        transaction = crud_wallet.create_transaction(
            db,
            user_id=user_id,
            amount=coins,
            type=CREDIT,
            reference_type=REF_FIRST_PURCHASE,
            reference_id=order_id,
            description="First purchase reward",
            expires_at=expires_at,
        )
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            logger.info(f"User {user_id} already received the first purchase reward (concurrent award).")
            return None
        crud_wallet.increment_balance(db, user_id, coins)
        db.commit()
        db.refresh(transaction)

    logger.info(f"Credited {coins} coins to user {user_id} ({REF_FIRST_PURCHASE}), expires_at={expires_at}")
    return transaction


def refund(
    db: Session,
    user_id: int,
    amount: int,
    reference_type: str = REF_REFUND,
    reference_id: int | None = None,
    description: str | None = None,
) -> WalletTransaction:
    """Возврат монет за отмененный или возвращенный заказ. Возвращенные монеты не сгорают."""
    return credit(
        db,
        user_id=user_id,
        amount=amount,
        description=description or "Refund to wallet",
        expires_at=None,
        reference_type=reference_type,
        reference_id=reference_id,
    )


# --- Списания ---

def coins_to_currency(amount: int, conversion_rate: Decimal) -> Decimal:
    """Переводит монеты в деньги по курсу 'монет за единицу валюты', округляя вниз до копеек."""
    return (Decimal(amount) / Decimal(conversion_rate)).quantize(CENT, rounding=ROUND_DOWN)


def check_redemption_policy(
    wallet_settings: WalletSettings,
    amount: int,
    order_value: Decimal | None = None,
    category: str | None = None,
) -> None:
    """Проверки настроек кошелька, кроме баланса. Порядок проверок фиксирован."""
    min_cart_value = Decimal(wallet_settings.min_cart_value or 0)
    if order_value is not None and min_cart_value > 0 and Decimal(order_value) < min_cart_value:
        raise BelowMinimumCartValue(f"Order value must be at least {min_cart_value} to use coins.")

    percentage = wallet_settings.max_usage_percentage or 0
    if order_value is not None and percentage > 0:
        rate = Decimal(wallet_settings.conversion_rate)
        max_discount = Decimal(order_value) * Decimal(percentage) / Decimal(100)
        if Decimal(amount) / rate > max_discount:
            max_coins = int((max_discount * rate).to_integral_value(rounding=ROUND_DOWN))
            raise ExceedsMaxUsage(
                f"You can use a maximum of {max_coins} coins ({percentage}% of order value) for this order."
            )

    allowed = split_categories(wallet_settings.applicable_categories)
    if allowed and category and category.strip().lower() not in allowed:
        raise CategoryNotEligible()

    if wallet_settings.max_redeemable_coins and amount > wallet_settings.max_redeemable_coins:
        raise ExceedsMaxUsage(
            f"Cannot redeem more than {wallet_settings.max_redeemable_coins} coins at once."
        )


def redeem(
    db: Session,
    user_id: int,
    amount: int,
    reference_type: str | None = None,
    reference_id: int | None = None,
    description: str | None = None,
    order_value: Decimal | None = None,
    category: str | None = None,
) -> RedemptionOutcome:
    """
    Списывает монеты в счет заказа.
    Проверка баланса и списание - один условный UPDATE, поэтому два параллельных
    списания не могут вместе уйти в минус.
    """
    _validate_amount(amount)
    with _unit_of_work(db, "redeem"):
        wallet_settings = wallet_settings_service.get_settings(db)
        if not wallet_settings.is_active:
            raise WalletDisabled()

        wallet = crud_wallet.get_wallet(db, user_id)
        current_balance = wallet.balance if wallet else 0
        if amount > current_balance:
            raise InsufficientBalance(
                f"Insufficient balance: requested {amount} coins, available {current_balance}."
            )

        check_redemption_policy(wallet_settings, amount, order_value=order_value, category=category)
        discount_amount = coins_to_currency(amount, wallet_settings.conversion_rate)

        if not crud_wallet.decrement_balance_if_sufficient(db, user_id, amount):
            # Баланс изменился между чтением и списанием
            raise InsufficientBalance("Insufficient balance. Your balance may have changed.")

        transaction = crud_wallet.create_transaction(
            db,
            user_id=user_id,
            amount=amount,
            type=DEBIT,
            reference_type=reference_type or REF_REDEMPTION,
            reference_id=reference_id,
            description=description or f"Redeemed {amount} coins",
        )
        db.commit()
        db.refresh(transaction)
        balance_after = crud_wallet.get_wallet(db, user_id).balance

    voucher_code = "WALLET-" + secrets.token_hex(6).upper()
    logger.info(
        f"User {user_id} redeemed {amount} coins for {discount_amount} discount. "
        f"Balance after: {balance_after}"
    )
    return RedemptionOutcome(
        transaction=transaction,
        balance=balance_after,
        discount_amount=discount_amount,
        voucher_code=voucher_code,
    )


def manual_adjust(db: Session, user_id: int, amount: int, reason: str) -> WalletTransaction:
    """Ручная корректировка админом: плюс - начисление без срока, минус - списание без ухода в минус."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        raise InvalidAmount("Adjustment amount must be a non-zero whole number of coins.")

    description = f"Admin adjustment: {reason}"
    if amount > 0:
        return credit(db, user_id=user_id, amount=amount, description=description, reference_type=REF_MANUAL)

    with _unit_of_work(db, "manual_adjust"):
        if not crud_user.user_exists(db, user_id):
            raise NotFound(f"User {user_id} not found.")
        if not crud_wallet.decrement_balance_if_sufficient(db, user_id, -amount):
            raise InsufficientBalance("Insufficient balance for deduction.")
        transaction = crud_wallet.create_transaction(
            db,
            user_id=user_id,
            amount=-amount,
            type=DEBIT,
            reference_type=REF_MANUAL,
            description=description,
        )
        db.commit()
        db.refresh(transaction)

    logger.info(f"Admin deducted {-amount} coins from user {user_id}: {reason}")
    return transaction


# --- Сгорание ---

def _expire_for_user(db: Session, user_id: int, now: datetime) -> List[WalletTransaction]:
    """Сжигает остатки просроченных начислений одного пользователя. Требует внешнего вызова db.commit()."""
    wallet = crud_wallet.lock_wallet(db, user_id)
    if wallet is None:
        return []

    transactions = crud_wallet.get_all_user_transactions_chronological(db, user_id)
    already_expired = crud_wallet.get_expired_credit_ids(db, user_id)
    available = wallet.balance
    created: List[WalletTransaction] = []

    for lot in replay_lots(transactions):
        if lot.expires_at is None or lot.expires_at > now:
            continue
        if lot.transaction_id in already_expired or lot.remaining <= 0:
            continue

        to_expire = min(lot.remaining, available)
        if to_expire < lot.remaining:
            logger.warning(
                f"User {user_id}: credit #{lot.transaction_id} has {lot.remaining} unspent coins, "
                f"but balance is only {available}. Expiring {to_expire} instead to prevent negative balance."
            )
        if to_expire <= 0:
            continue

        created.append(crud_wallet.create_transaction(
            db,
            user_id=user_id,
            amount=to_expire,
            type=EXPIRED,
            reference_type=REF_EXPIRY,
            reference_id=lot.transaction_id,
            description=f"Expired coins from transaction #{lot.transaction_id}",
        ))
        available -= to_expire

    total = sum(tx.amount for tx in created)
    if total and not crud_wallet.decrement_balance_if_sufficient(db, user_id, total):
        raise InsufficientBalance(f"Balance of user {user_id} changed during expiry sweep.")
    return created


def expire_old_credits(db: Session, now: datetime | None = None) -> ExpirySweepOutcome:
    """
    Сжигает неизрасходованные остатки начислений с истекшим сроком.
    Повторный запуск ничего не меняет: на каждое начисление бывает не больше одной записи 'expired'.
    Каждый пользователь обрабатывается в своей транзакции.
    """
    now = ensure_aware(now) or utcnow()
    outcome = ExpirySweepOutcome()

    with _unit_of_work(db, "expire_old_credits"):
        user_ids = crud_wallet.get_users_with_expiry_candidates(db, now)
        db.commit()

    if not user_ids:
        logger.info("No users with expired coins found to process.")
        return outcome

    logger.info(f"Found {len(user_ids)} users with potentially expired coins to process.")

    for user_id in user_ids:
        try:
            with _unit_of_work(db, "expire_old_credits"):
                created = _expire_for_user(db, user_id, now)
                db.commit()
        except (StorageFailure, InsufficientBalance):
            logger.error(f"Failed to process coin expiration for user {user_id}", exc_info=True)
            outcome.failed_users.append(user_id)
            continue

        outcome.users_processed += 1
        if created:
            expired = sum(tx.amount for tx in created)
            outcome.coins_expired += expired
            outcome.transactions_created += len(created)
            outcome.expired_by_user[user_id] = expired
            logger.info(f"User {user_id}: expired {expired} coins in {len(created)} transactions.")
        else:
            logger.info(f"User {user_id}: No unspent coins to expire.")

    return outcome


def expiring_within(db: Session, user_id: int, start: datetime, end: datetime) -> int:
    """Сколько неизрасходованных монет сгорит в интервале (start, end]."""
    start, end = ensure_aware(start), ensure_aware(end)
    with _unit_of_work(db, "expiring_within"):
        transactions = crud_wallet.get_all_user_transactions_chronological(db, user_id)
    return sum(
        lot.remaining
        for lot in replay_lots(transactions)
        if lot.expires_at is not None and start < lot.expires_at <= end and lot.remaining > 0
    )


# --- Сверка ---

def audit_balance(db: Session, user_id: int) -> BalanceAudit:
    """Сверяет хранимый баланс с балансом, выведенным из журнала."""
    with _unit_of_work(db, "audit_balance"):
        wallet = crud_wallet.get_wallet(db, user_id)
        totals = crud_wallet.get_totals_by_type(db, user_id)

    stored = wallet.balance if wallet else 0
    derived = totals[CREDIT] - totals[DEBIT] - totals[EXPIRED]
    if stored != derived:
        logger.error(f"Balance drift for user {user_id}: stored={stored}, derived={derived}")

    return BalanceAudit(
        user_id=user_id,
        stored_balance=stored,
        derived_balance=derived,
        total_credited=totals[CREDIT],
        total_debited=totals[DEBIT],
        total_expired=totals[EXPIRED],
        consistent=stored == derived,
    )
