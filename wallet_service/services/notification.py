# wallet_service/services/notification.py

import logging
import math

from sqlalchemy.orm import Session

from wallet_service.channel.manager import ConnectionManager
from wallet_service.core.exceptions import NotFound
from wallet_service.crud import notification as crud_notification
from wallet_service.models.notification import NotificationType
from wallet_service.models.user import User
from wallet_service.schemas.notification import Notification, PaginatedNotifications

logger = logging.getLogger(__name__)


def get_paginated(db: Session, user: User, page: int, size: int, unread_only: bool) -> PaginatedNotifications:
    """Собирает пагинированный ответ для уведомлений."""
    skip = (page - 1) * size

    notifications = crud_notification.get_notifications(
        db, user_id=user.id, skip=skip, limit=size, unread_only=unread_only
    )
    total_items = crud_notification.count_notifications(db, user_id=user.id, unread_only=unread_only)
    total_pages = math.ceil(total_items / size) if total_items > 0 else 1

    return PaginatedNotifications(
        total_items=total_items,
        total_pages=total_pages,
        current_page=page,
        size=size,
        items=notifications
    )


def unread_count(db: Session, user: User) -> int:
    return crud_notification.count_notifications(db, user_id=user.id, unread_only=True)


def mark_as_read(db: Session, user: User, notification_id: int) -> None:
    if not crud_notification.mark_notification_as_read(db, user_id=user.id, notification_id=notification_id):
        raise NotFound("Notification not found.")


def mark_all_as_read(db: Session, user: User) -> int:
    return crud_notification.mark_all_notifications_as_read(db, user_id=user.id)


def delete(db: Session, user: User, notification_id: int) -> None:
    if not crud_notification.delete_notification(db, user_id=user.id, notification_id=notification_id):
        raise NotFound("Notification not found.")


def delete_all(db: Session, user: User) -> int:
    return crud_notification.delete_all_notifications(db, user_id=user.id)


async def notify_user(
    db: Session,
    manager: ConnectionManager,
    user_id: int,
    type: NotificationType,
    title: str,
    message: str,
    link: str | None = None,
    related_entity_id: str | None = None,
) -> Notification:
    """
    Сохраняет уведомление и сразу пушит его во все живые соединения пользователя.
    Запись в базе первична: если пользователь офлайн, он увидит уведомление через REST.
    """
    db_notification = crud_notification.create_notification(
        db=db,
        user_id=user_id,
        type=type.value,
        title=title,
        message=message,
        link=link,
        related_entity_id=related_entity_id,
    )
    notification = Notification.model_validate(db_notification)
    await manager.push_notification(user_id, notification.model_dump(mode="json"))
    return notification


# --- Уведомления кошелька ---

async def send_coins_credited(db: Session, manager: ConnectionManager, user_id: int, amount: int, reason: str) -> Notification:
    return await notify_user(
        db, manager, user_id,
        type=NotificationType.WALLET,
        title="Coins added to your wallet",
        message=f"{amount} coins were added to your wallet: {reason}.",
        link="/wallet",
    )


async def send_coins_redeemed(db: Session, manager: ConnectionManager, user_id: int, amount: int, balance: int) -> Notification:
    return await notify_user(
        db, manager, user_id,
        type=NotificationType.WALLET,
        title="Coins redeemed",
        message=f"You redeemed {amount} coins. Remaining balance: {balance} coins.",
        link="/wallet",
    )


async def send_coins_expired(db: Session, manager: ConnectionManager, user_id: int, amount: int) -> Notification:
    return await notify_user(
        db, manager, user_id,
        type=NotificationType.WALLET,
        title="Coins expired",
        message=f"{amount} coins have expired and were removed from your wallet.",
        link="/wallet",
    )


async def send_coins_expiring_soon(
    db: Session,
    manager: ConnectionManager,
    user_id: int,
    amount: int,
    days_left: int,
    related_entity_id: str,
) -> Notification | None:
    """Напоминание о скором сгорании. Одно и то же напоминание повторно не отправляется."""
    type = NotificationType.WALLET
    if crud_notification.get_notification_by_type_and_entity(db, user_id, type.value, related_entity_id):
        logger.info(f"Expiring coins reminder {related_entity_id} already sent to user {user_id}. Skipping.")
        return None
    day_word = "day" if days_left == 1 else "days"
    return await notify_user(
        db, manager, user_id,
        type=type,
        title="Coins expiring soon",
        message=f"{amount} coins in your wallet will expire in {days_left} {day_word}. Use them before they are gone!",
        link="/wallet",
        related_entity_id=related_entity_id,
    )
