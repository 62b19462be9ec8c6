# wallet_service/routers/v1/endpoints/wallet.py

import logging

from fastapi import APIRouter, Depends, Query, Request
from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wallet_service.channel.manager import ConnectionManager
from wallet_service.core.config import settings
from wallet_service.core.limiter import limiter
from wallet_service.core.redis import get_redis_client
from wallet_service.dependencies import get_connection_manager, get_current_user, get_db
from wallet_service.models.user import User
from wallet_service.schemas.wallet import (
    PaginatedTransactions, RedeemRequest, RedemptionResult, WalletBalance, WalletSettings, WalletTransaction,
)
from wallet_service.services import ledger
from wallet_service.services import notification as notification_service
from wallet_service.services import wallet_settings as wallet_settings_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wallet")


@router.get("", response_model=WalletBalance)
def get_my_wallet(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Текущий баланс монет пользователя."""
    return ledger.get_balance(db, current_user.id)


@router.get("/transactions", response_model=PaginatedTransactions)
def get_my_transactions(
    page: int = Query(1, ge=1, description="Номер страницы"),
    size: int = Query(20, ge=1, le=100, description="Количество транзакций на странице"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """История транзакций, от новых к старым."""
    return ledger.list_transactions(db, current_user.id, page=page, size=size)


@router.get("/settings", response_model=WalletSettings)
async def get_public_wallet_settings(
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis_client),
):
    """Публичные настройки кошелька (курс, лимиты). Кешируются в Redis."""
    return await wallet_settings_service.get_cached_settings(db, redis)


@router.post("/redeem", response_model=RedemptionResult)
@limiter.limit(settings.REDEEM_RATE_LIMIT)
async def redeem_coins(
    request: Request,
    redeem_data: RedeemRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """
    Списывает монеты в счет заказа и возвращает размер скидки и код ваучера.
    Ошибки проверки (баланс, минимальная сумма заказа, лимиты) приходят с конкретным кодом.
    """
    outcome = ledger.redeem(
        db,
        user_id=current_user.id,
        amount=redeem_data.amount,
        reference_type=redeem_data.reference_type,
        reference_id=redeem_data.reference_id,
        description=redeem_data.description,
        order_value=redeem_data.order_value,
        category=redeem_data.category,
    )
    try:
        await notification_service.send_coins_redeemed(
            db, manager, current_user.id, amount=redeem_data.amount, balance=outcome.balance
        )
    except SQLAlchemyError:
        # Монеты уже списаны, поэтому ошибка уведомления не должна превращать ответ в ошибку
        db.rollback()
        logger.error(f"Failed to notify user {current_user.id} about redeemed coins", exc_info=True)
    return RedemptionResult(
        transaction=WalletTransaction.model_validate(outcome.transaction),
        balance=outcome.balance,
        discount_amount=outcome.discount_amount,
        voucher_code=outcome.voucher_code,
    )
