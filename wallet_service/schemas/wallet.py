# wallet_service/schemas/wallet.py
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from wallet_service.schemas.common import PaginatedResponse


def split_categories(value: str | None) -> List[str]:
    """'Electronics, books ,' -> ['electronics', 'books']"""
    if not value:
        return []
    return [part.strip().lower() for part in value.split(',') if part.strip()]


class WalletBalance(BaseModel):
    user_id: int
    balance: int
    # Справочное значение: сумма списаний на заказы, а не второй баланс
    redeemed_balance: int


class WalletTransaction(BaseModel):
    id: int
    amount: int
    type: str
    reference_type: str | None = None
    reference_id: int | None = None
    description: str | None = None
    created_at: datetime
    expires_at: datetime | None = None

    class Config:
        from_attributes = True


class PaginatedTransactions(PaginatedResponse[WalletTransaction]):
    pass


class RedeemRequest(BaseModel):
    amount: int = Field(..., description="Сколько монет списать")
    reference_type: Optional[str] = Field(None, max_length=50)
    reference_id: Optional[int] = None
    description: Optional[str] = Field(None, max_length=500)
    order_value: Optional[Decimal] = Field(None, ge=0)
    category: Optional[str] = Field(None, max_length=100)


class RedemptionResult(BaseModel):
    transaction: WalletTransaction
    balance: int
    discount_amount: Decimal
    voucher_code: str


class WalletSettings(BaseModel):
    is_active: bool
    first_purchase_coins: int
    expiry_days: int
    conversion_rate: Decimal
    max_usage_percentage: int
    min_cart_value: Decimal
    max_redeemable_coins: int
    applicable_categories: List[str] = []
    updated_at: datetime | None = None

    @field_validator("applicable_categories", mode="before")
    def parse_categories(cls, v):
        if v is None or isinstance(v, str):
            return split_categories(v)
        return v

    class Config:
        from_attributes = True


class WalletSettingsUpdate(BaseModel):
    """
    Схема для частичного обновления настроек.
    Все поля опциональны.
    """
    is_active: Optional[bool] = None
    first_purchase_coins: Optional[int] = Field(None, ge=0)
    expiry_days: Optional[int] = Field(None, ge=1)
    conversion_rate: Optional[Decimal] = Field(None, gt=0)
    max_usage_percentage: Optional[int] = Field(None, ge=0, le=100)
    min_cart_value: Optional[Decimal] = Field(None, ge=0)
    max_redeemable_coins: Optional[int] = Field(None, ge=0)
    applicable_categories: Optional[List[str]] = None


class ManualAdjustRequest(BaseModel):
    user_id: int
    amount: int = Field(..., description="Положительное - начисление, отрицательное - списание")
    reason: str = Field(..., min_length=1, max_length=500)


class ExpirySweepResult(BaseModel):
    users_processed: int
    coins_expired: int
    transactions_created: int
    failed_users: List[int] = []


class BalanceAudit(BaseModel):
    user_id: int
    stored_balance: int
    derived_balance: int
    total_credited: int
    total_debited: int
    total_expired: int
    consistent: bool


class AdminWalletListItem(BaseModel):
    user_id: int
    balance: int
    updated_at: datetime

    class Config:
        from_attributes = True


class PaginatedAdminWallets(PaginatedResponse[AdminWalletListItem]):
    pass
