# wallet_service/crud/notification.py
from sqlalchemy.orm import Session
from sqlalchemy import update, or_
from wallet_service.models.notification import Notification
from typing import List
from datetime import timedelta

from wallet_service.utils.dates import utcnow

def create_notification(
    db: Session,
    user_id: int,
    type: str,
    title: str,
    message: str,
    link: str | None = None,
    related_entity_id: str | None = None,
) -> Notification:
    """Создает новое уведомление для пользователя."""
    db_notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        link=link,
        related_entity_id=related_entity_id,
    )
    db.add(db_notification)
    db.commit()
    db.refresh(db_notification)
    return db_notification

def get_notifications(
    db: Session,
    user_id: int,
    skip: int = 0,
    limit: int = 20,
    unread_only: bool = False
) -> List[Notification]:
    """Получает пагинированный список уведомлений."""
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.read == False)
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(skip).limit(limit).all()

def count_notifications(db: Session, user_id: int, unread_only: bool = False) -> int:
    """Считает уведомления с фильтром."""
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.read == False)
    return query.count()

def mark_notification_as_read(db: Session, user_id: int, notification_id: int) -> bool:
    """Помечает конкретное уведомление как прочитанное. False - если такого уведомления у пользователя нет."""
    result = db.execute(
        update(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id
        ).values(read=True).execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount > 0

def mark_all_notifications_as_read(db: Session, user_id: int) -> int:
    """Помечает все уведомления пользователя как прочитанные."""
    result = db.execute(
        update(Notification).where(
            Notification.user_id == user_id,
            Notification.read == False
        ).values(read=True).execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount

def delete_notification(db: Session, user_id: int, notification_id: int) -> bool:
    deleted = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.user_id == user_id,
    ).delete(synchronize_session=False)
    db.commit()
    return deleted > 0

def delete_all_notifications(db: Session, user_id: int) -> int:
    deleted = db.query(Notification).filter(
        Notification.user_id == user_id
    ).delete(synchronize_session=False)
    db.commit()
    return deleted

def smart_delete_old_notifications(
    db: Session,
    read_older_than_days: int,
    any_older_than_days: int
) -> int:
    """Удаляет уведомления по "умным" правилам: прочитанные и старые, либо очень старые."""
    read_threshold = utcnow() - timedelta(days=read_older_than_days)
    any_threshold = utcnow() - timedelta(days=any_older_than_days)

    condition_read_and_old = (Notification.read == True) & (Notification.created_at < read_threshold)
    condition_any_very_old = Notification.created_at < any_threshold

    result = db.query(Notification).filter(
        or_(condition_read_and_old, condition_any_very_old)
    ).delete(synchronize_session=False)

    db.commit()
    return result

def get_notification_by_type_and_entity(
    db: Session,
    user_id: int,
    type: str,
    related_entity_id: str
) -> Notification | None:
    """
    Ищет конкретное уведомление для пользователя, чтобы избежать дубликатов.
    """
    return db.query(Notification).filter_by(
        user_id=user_id,
        type=type,
        related_entity_id=related_entity_id
    ).first()
