# wallet_service/routers/webhooks.py

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wallet_service.channel.manager import ConnectionManager
from wallet_service.crud import user as crud_user
from wallet_service.dependencies import get_connection_manager, get_db, verify_webhook_secret
from wallet_service.schemas.admin import OrderCompletedPayload
from wallet_service.services import ledger
from wallet_service.services import notification as notification_service

logger = logging.getLogger(__name__)

# Подключается в main.py с префиксом /internal/webhooks
router = APIRouter(dependencies=[Depends(verify_webhook_secret)])


@router.post("/order-completed")
async def order_completed_webhook(
    payload: OrderCompletedPayload,
    db: Session = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """
    Сервис заказов сообщает о завершенном заказе. Первый завершенный заказ
    пользователя приносит бонус за первую покупку, повторные вызовы ничего не начисляют.
    """
    logger.info(f"Order-completed webhook received: user={payload.user_id}, order={payload.order_id}")

    if not crud_user.user_exists(db, payload.user_id):
        # Пользователь еще не синхронизирован из основного сервиса
        crud_user.create_user(db, user_id=payload.user_id)

    transaction = ledger.award_first_purchase(db, payload.user_id, payload.order_id)
    if transaction is None:
        return {"status": "ok", "awarded": 0}

    try:
        await notification_service.send_coins_credited(
            db, manager, payload.user_id, amount=transaction.amount, reason="first purchase reward"
        )
    except SQLAlchemyError:
        db.rollback()
        logger.error(f"Failed to notify user {payload.user_id} about first purchase reward", exc_info=True)
    return {"status": "ok", "awarded": transaction.amount}
