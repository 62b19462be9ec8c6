# wallet_service/crud/wallet.py

from datetime import datetime
from typing import Dict, List, Set

from sqlalchemy import and_, exists, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from wallet_service.models.wallet import (
    CREDIT, DEBIT, EXPIRED, REF_MANUAL, Wallet, WalletSettings, WalletTransaction,
)
from wallet_service.utils.dates import utcnow

# --- Кошелек ---

def get_wallet(db: Session, user_id: int) -> Wallet | None:
    return db.query(Wallet).filter(Wallet.user_id == user_id).first()

def get_or_create_wallet(db: Session, user_id: int) -> Wallet:
    """
    Лениво создает кошелек. Должен вызываться первым в транзакции:
    проигравший гонку за вставку откатывает её целиком и перечитывает строку.
    Требует внешнего вызова db.commit().
    """
    wallet = get_wallet(db, user_id)
    if wallet:
        return wallet
    try:
        wallet = Wallet(user_id=user_id, balance=0)
        db.add(wallet)
        db.flush()
    except IntegrityError:
        db.rollback()
        wallet = get_wallet(db, user_id)
    return wallet

def lock_wallet(db: Session, user_id: int) -> Wallet | None:
    """Блокирует строку кошелька (SELECT ... FOR UPDATE) до конца транзакции."""
    return db.query(Wallet).filter(Wallet.user_id == user_id).with_for_update().first()

def increment_balance(db: Session, user_id: int, amount: int) -> None:
    """Атомарно увеличивает баланс. Требует внешнего вызова db.commit()."""
    db.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id)
        .values(balance=Wallet.balance + amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )

def decrement_balance_if_sufficient(db: Session, user_id: int, amount: int) -> bool:
    """
    Условное списание одним запросом: UPDATE ... WHERE balance >= amount.
    Возвращает False, если денег не хватило (или кошелька нет).
    Требует внешнего вызова db.commit().
    """
    result = db.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id, Wallet.balance >= amount)
        .values(balance=Wallet.balance - amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1

# --- Журнал транзакций ---

def create_transaction(
    db: Session,
    user_id: int,
    amount: int,
    type: str,
    reference_type: str | None = None,
    reference_id: int | None = None,
    description: str | None = None,
    expires_at: datetime | None = None,
) -> WalletTransaction:
    """
    Создает запись журнала и добавляет её в сессию.
    Требует внешнего вызова db.commit().
    """
    transaction = WalletTransaction(
        user_id=user_id,
        amount=amount,
        type=type,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        expires_at=expires_at,
    )
    db.add(transaction)
    return transaction

def get_user_transactions(db: Session, user_id: int, skip: int = 0, limit: int = 20) -> List[WalletTransaction]:
    """Пагинированный список транзакций пользователя (от новых к старым)."""
    return db.query(WalletTransaction).filter(
        WalletTransaction.user_id == user_id
    ).order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc()).offset(skip).limit(limit).all()

def count_user_transactions(db: Session, user_id: int) -> int:
    return db.query(WalletTransaction).filter(WalletTransaction.user_id == user_id).count()

def get_all_user_transactions_chronological(db: Session, user_id: int) -> List[WalletTransaction]:
    """Все транзакции пользователя в хронологическом порядке (от старых к новым)."""
    return db.query(WalletTransaction).filter(
        WalletTransaction.user_id == user_id
    ).order_by(WalletTransaction.created_at.asc(), WalletTransaction.id.asc()).all()

def get_totals_by_type(db: Session, user_id: int) -> Dict[str, int]:
    rows = db.query(WalletTransaction.type, func.sum(WalletTransaction.amount)).filter(
        WalletTransaction.user_id == user_id
    ).group_by(WalletTransaction.type).all()
    totals = {CREDIT: 0, DEBIT: 0, EXPIRED: 0}
    for tx_type, total in rows:
        totals[tx_type] = int(total or 0)
    return totals

def get_redeemed_total(db: Session, user_id: int) -> int:
    """Сумма списаний на заказы. Ручные списания админом сюда не входят."""
    total = db.query(func.sum(WalletTransaction.amount)).filter(
        WalletTransaction.user_id == user_id,
        WalletTransaction.type == DEBIT,
        WalletTransaction.reference_type != REF_MANUAL,
    ).scalar()
    return int(total or 0)

def has_transaction_with_reference(db: Session, user_id: int, reference_type: str) -> bool:
    return db.query(WalletTransaction.id).filter(
        WalletTransaction.user_id == user_id,
        WalletTransaction.reference_type == reference_type,
    ).first() is not None

# --- Сгорание ---

def get_users_with_expiry_candidates(db: Session, now: datetime) -> List[int]:
    """
    ID пользователей, у которых есть начисления с истекшим сроком
    и без записи 'expired', которая на них ссылается.
    """
    expired_row = aliased(WalletTransaction)
    already_expired = exists().where(and_(
        expired_row.type == EXPIRED,
        expired_row.reference_id == WalletTransaction.id,
    ))
    rows = db.query(WalletTransaction.user_id).filter(
        WalletTransaction.type == CREDIT,
        WalletTransaction.expires_at.isnot(None),
        WalletTransaction.expires_at <= now,
        ~already_expired,
    ).distinct().all()
    return [user_id for user_id, in rows]

def get_users_with_expiring_credits(db: Session, now: datetime) -> List[int]:
    """ID пользователей, у которых в принципе есть еще не сгоревшие начисления со сроком годности."""
    rows = db.query(WalletTransaction.user_id).filter(
        WalletTransaction.type == CREDIT,
        WalletTransaction.expires_at.isnot(None),
        WalletTransaction.expires_at > now,
    ).distinct().all()
    return [user_id for user_id, in rows]

def get_expired_credit_ids(db: Session, user_id: int) -> Set[int]:
    rows = db.query(WalletTransaction.reference_id).filter(
        WalletTransaction.user_id == user_id,
        WalletTransaction.type == EXPIRED,
        WalletTransaction.reference_id.isnot(None),
    ).all()
    return {reference_id for reference_id, in rows}

def list_wallets(db: Session, skip: int = 0, limit: int = 50) -> List[Wallet]:
    return db.query(Wallet).order_by(Wallet.balance.desc(), Wallet.id.asc()).offset(skip).limit(limit).all()

def count_wallets(db: Session) -> int:
    return db.query(Wallet).count()

# --- Настройки ---

def get_settings_row(db: Session) -> WalletSettings | None:
    return db.query(WalletSettings).order_by(WalletSettings.id.asc()).first()

def create_settings_row(db: Session, **values) -> WalletSettings:
    row = WalletSettings(**values)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row

def update_settings_row(db: Session, row: WalletSettings, values: dict) -> WalletSettings:
    for field, value in values.items():
        setattr(row, field, value)
    row.updated_at = utcnow()
    db.add(row)
    db.commit()
    db.refresh(row)
    return row
