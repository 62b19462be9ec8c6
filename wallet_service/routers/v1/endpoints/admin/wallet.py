# wallet_service/routers/v1/endpoints/admin/wallet.py

import logging
import math

from fastapi import APIRouter, Depends, Query
from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wallet_service.channel.manager import ConnectionManager
from wallet_service.core.redis import get_redis_client
from wallet_service.crud import wallet as crud_wallet
from wallet_service.dependencies import get_admin_user, get_connection_manager, get_db
from wallet_service.models.user import User
from wallet_service.schemas.wallet import (
    BalanceAudit, ExpirySweepResult, ManualAdjustRequest, PaginatedAdminWallets, PaginatedTransactions,
    WalletBalance, WalletSettings, WalletSettingsUpdate, WalletTransaction,
)
from wallet_service.services import coin_expiration, ledger
from wallet_service.services import notification as notification_service
from wallet_service.services import wallet_settings as wallet_settings_service

logger = logging.getLogger(__name__)

# Префикс /wallet добавляется в admin/__init__.py
router = APIRouter()


@router.get("/settings", response_model=WalletSettings)
def get_wallet_settings_endpoint(db: Session = Depends(get_db)):
    """
    [АДМИН] Текущие настройки кошелька, всегда из базы (без кеша).
    """
    return wallet_settings_service.get_settings(db)


@router.put("/settings", response_model=WalletSettings)
async def update_wallet_settings_endpoint(
    settings_data: WalletSettingsUpdate,
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis_client),
    admin_user: User = Depends(get_admin_user),
):
    """
    [АДМИН] Обновляет настройки кошелька. Можно передавать только те поля, которые нужно изменить.
    После обновления публичный кеш настроек сбрасывается.
    """
    row = wallet_settings_service.update_settings(db, settings_data)
    await wallet_settings_service.invalidate_cache(redis)
    logger.info(f"Wallet settings updated by admin {admin_user.id}")
    return row


@router.get("", response_model=PaginatedAdminWallets)
def list_wallets_endpoint(
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    """[АДМИН] Кошельки пользователей, от самых больших балансов к меньшим."""
    skip = (page - 1) * size
    wallets = crud_wallet.list_wallets(db, skip=skip, limit=size)
    total_items = crud_wallet.count_wallets(db)
    return PaginatedAdminWallets(
        total_items=total_items,
        total_pages=math.ceil(total_items / size) if total_items > 0 else 1,
        current_page=page,
        size=size,
        items=wallets,
    )


@router.post("/adjust", response_model=WalletTransaction)
async def adjust_balance_endpoint(
    adjust_data: ManualAdjustRequest,
    db: Session = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager),
    admin_user: User = Depends(get_admin_user),
):
    """
    [АДМИН] Ручная корректировка баланса: положительная сумма начисляет, отрицательная списывает.
    """
    transaction = ledger.manual_adjust(db, adjust_data.user_id, adjust_data.amount, adjust_data.reason)
    logger.info(f"Admin {admin_user.id} adjusted balance of user {adjust_data.user_id} by {adjust_data.amount}")
    if adjust_data.amount > 0:
        try:
            await notification_service.send_coins_credited(
                db, manager, adjust_data.user_id, amount=adjust_data.amount, reason=adjust_data.reason
            )
        except SQLAlchemyError:
            db.rollback()
            logger.error(f"Failed to notify user {adjust_data.user_id} about manual adjustment", exc_info=True)
    return transaction


@router.post("/expire", response_model=ExpirySweepResult)
async def run_expiry_sweep_endpoint(manager: ConnectionManager = Depends(get_connection_manager)):
    """[АДМИН] Немедленно запускает сгорание просроченных монет и возвращает итог."""
    return await coin_expiration.expire_coins_task(manager)


@router.get("/{user_id}", response_model=WalletBalance)
def get_user_wallet_endpoint(user_id: int, db: Session = Depends(get_db)):
    return ledger.get_balance(db, user_id)


@router.get("/{user_id}/transactions", response_model=PaginatedTransactions)
def get_user_transactions_endpoint(
    user_id: int,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return ledger.list_transactions(db, user_id, page=page, size=size)


@router.get("/{user_id}/audit", response_model=BalanceAudit)
def audit_user_wallet_endpoint(user_id: int, db: Session = Depends(get_db)):
    """[АДМИН] Сверка хранимого баланса с журналом транзакций."""
    return ledger.audit_balance(db, user_id)
