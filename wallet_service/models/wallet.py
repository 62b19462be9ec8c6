# wallet_service/models/wallet.py
from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func, text,
)
from sqlalchemy.orm import relationship

from wallet_service.db.session import Base
from .user import User
from wallet_service.utils.dates import utcnow

# Типы записей журнала
CREDIT = "credit"
DEBIT = "debit"
EXPIRED = "expired"

# Источники записей (reference_type)
REF_FIRST_PURCHASE = "first_purchase"
REF_MANUAL = "manual_adjustment"
REF_REFUND = "refund"
REF_REDEMPTION = "redemption"
REF_EXPIRY = "expiry"


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    # Баланс меняется только условным UPDATE вместе со вставкой записи в журнал
    balance = Column(Integer, nullable=False, default=0, server_default='0')

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    user = relationship(User)


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_wallet_transactions_amount_positive"),
        Index("ix_wallet_transactions_user_created", "user_id", "created_at"),
        Index("ix_wallet_transactions_type_reference", "type", "reference_id"),
        # Бонус за первую покупку - не больше одной записи на пользователя
        Index(
            "uq_wallet_transactions_first_purchase", "user_id", unique=True,
            postgresql_where=text("reference_type = 'first_purchase'"),
            sqlite_where=text("reference_type = 'first_purchase'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Всегда положительное число, знак определяется полем type
    amount = Column(Integer, nullable=False)

    # 'credit', 'debit', 'expired'
    type = Column(String(16), nullable=False)

    # 'first_purchase', 'manual_adjustment', 'refund', 'redemption', 'order', 'cart', 'expiry'
    reference_type = Column(String(50), nullable=True)
    # Для 'expired' - ID сгоревшего начисления
    reference_id = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True) # Только для начислений

    user = relationship(User)


class WalletSettings(Base):
    __tablename__ = "wallet_settings"

    id = Column(Integer, primary_key=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default='true')
    first_purchase_coins = Column(Integer, nullable=False, default=500)
    expiry_days = Column(Integer, nullable=False, default=90)
    # Сколько монет стоит одна единица валюты
    conversion_rate = Column(Numeric(10, 2), nullable=False, default=1)
    # 0 - без ограничения
    max_usage_percentage = Column(Integer, nullable=False, default=0)
    min_cart_value = Column(Numeric(10, 2), nullable=False, default=0)
    max_redeemable_coins = Column(Integer, nullable=False, default=0)
    # Список категорий через запятую, пустая строка - все категории
    applicable_categories = Column(Text, nullable=True)

    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)
