# wallet_service/schemas/notification.py
from pydantic import BaseModel
from datetime import datetime

from wallet_service.models.notification import NotificationType
from wallet_service.schemas.common import PaginatedResponse

class Notification(BaseModel):
    id: int
    user_id: int
    type: NotificationType
    title: str
    message: str
    link: str | None = None # Относительный URL для перехода внутри клиента
    read: bool
    created_at: datetime

    class Config:
        from_attributes = True

class PaginatedNotifications(PaginatedResponse[Notification]):
    pass

class UnreadCount(BaseModel):
    count: int
