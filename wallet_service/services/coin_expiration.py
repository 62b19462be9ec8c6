# wallet_service/services/coin_expiration.py

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from wallet_service.channel.manager import ConnectionManager
from wallet_service.core.config import settings
from wallet_service.core.exceptions import StorageFailure
from wallet_service.crud import wallet as crud_wallet
from wallet_service.db.session import SessionLocal
from wallet_service.schemas.wallet import ExpirySweepResult
from wallet_service.services import ledger
from wallet_service.services import notification as notification_service
from wallet_service.utils.dates import ensure_aware, utcnow

logger = logging.getLogger(__name__)


async def expire_coins_task(manager: ConnectionManager, now: datetime | None = None) -> ExpirySweepResult:
    """
    Основная задача: сжигает просроченные монеты (строгий FIFO) и уведомляет владельцев.
    """
    logger.info("--- Starting scheduled job: Expire Wallet Coins ---")
    now = ensure_aware(now) or utcnow()

    with SessionLocal() as db:
        outcome = ledger.expire_old_credits(db, now=now)

        for user_id, amount in outcome.expired_by_user.items():
            try:
                await notification_service.send_coins_expired(db, manager, user_id, amount)
            except (StorageFailure, SQLAlchemyError):
                db.rollback()
                logger.error(f"Failed to notify user {user_id} about expired coins", exc_info=True)

    logger.info(
        f"Expiry sweep finished: users={outcome.users_processed}, coins={outcome.coins_expired}, "
        f"transactions={outcome.transactions_created}, failed={len(outcome.failed_users)}"
    )
    logger.info("--- Finished scheduled job: Expire Wallet Coins ---")
    return outcome.as_schema()


async def notify_about_expiring_coins_task(manager: ConnectionManager, now: datetime | None = None) -> int:
    """
    Упреждающие напоминания о сгорании. Для каждого порога N из NOTIFY_DAYS_BEFORE_EXPIRATION
    считаем (по FIFO) монеты, которые сгорят ровно через N дней, и шлем одно напоминание на порог и дату.
    Возвращает число отправленных напоминаний.
    """
    logger.info("--- Starting scheduled job: Notify About Expiring Coins ---")
    now = ensure_aware(now) or utcnow()
    sent = 0

    with SessionLocal() as db:
        user_ids = crud_wallet.get_users_with_expiring_credits(db, now)
        if not user_ids:
            logger.info("No users with expiring coins found to check.")
            return 0

        logger.info(f"Found {len(user_ids)} users with potentially expiring coins to check.")

        for user_id in user_ids:
            for days in settings.NOTIFY_DAYS_BEFORE_EXPIRATION:
                window_end = now + timedelta(days=days)
                window_start = window_end - timedelta(days=1)
                try:
                    amount = ledger.expiring_within(db, user_id, window_start, window_end)
                    if amount <= 0:
                        continue
                    related_entity_id = f"coins_expiring:{days}:{window_end.date().isoformat()}"
                    logger.info(f"Notifying user {user_id} about {amount} coins expiring in {days} days.")
                    notification = await notification_service.send_coins_expiring_soon(
                        db, manager, user_id, amount=amount, days_left=days, related_entity_id=related_entity_id
                    )
                    if notification is not None:
                        sent += 1
                except (StorageFailure, SQLAlchemyError):
                    db.rollback()
                    logger.error(f"Failed to send expiring coins notification to user {user_id}", exc_info=True)

    logger.info("--- Finished scheduled job: Notify About Expiring Coins ---")
    return sent
