# wallet_service/routers/v1/endpoints/notification.py

from fastapi import APIRouter, Depends, Response, Query
from sqlalchemy.orm import Session

from wallet_service.dependencies import get_current_user, get_db
from wallet_service.models.user import User
from wallet_service.schemas.notification import PaginatedNotifications, UnreadCount
from wallet_service.services import notification as notification_service

router = APIRouter()

@router.get("/notifications", response_model=PaginatedNotifications)
def get_user_notifications(
    unread_only: bool = Query(False, description="Вернуть только непрочитанные уведомления"),
    page: int = Query(1, ge=1, description="Номер страницы"),
    size: int = Query(20, ge=1, le=100, description="Количество уведомлений на странице"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Получает пагинированный список уведомлений, от новых к старым.
    По умолчанию возвращает все. Используйте ?unread_only=true для получения только новых.
    """
    return notification_service.get_paginated(db, current_user, page, size, unread_only)

@router.get("/notifications/unread/count", response_model=UnreadCount)
def get_unread_count(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return UnreadCount(count=notification_service.unread_count(db, current_user))

@router.post("/notifications/{notification_id}/read", status_code=204)
def read_notification(
    notification_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Помечает одно уведомление как прочитанное."""
    notification_service.mark_as_read(db, current_user, notification_id)
    return Response(status_code=204)

@router.post("/notifications/read-all", status_code=204)
def read_all_notifications(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Помечает ВСЕ уведомления пользователя как прочитанные."""
    notification_service.mark_all_as_read(db, current_user)
    return Response(status_code=204)

@router.delete("/notifications/{notification_id}", status_code=204)
def delete_notification(
    notification_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    notification_service.delete(db, current_user, notification_id)
    return Response(status_code=204)

@router.delete("/notifications", status_code=204)
def delete_all_notifications(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Удаляет все уведомления пользователя."""
    notification_service.delete_all(db, current_user)
    return Response(status_code=204)
