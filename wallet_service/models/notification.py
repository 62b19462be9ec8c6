# wallet_service/models/notification.py
import enum

from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, func, Boolean
from sqlalchemy.orm import relationship

from wallet_service.db.session import Base
from .user import User
from wallet_service.utils.dates import utcnow


class NotificationType(str, enum.Enum):
    ORDER_STATUS = "ORDER_STATUS"
    WALLET = "WALLET"
    PRODUCT_APPROVAL = "PRODUCT_APPROVAL"
    PRICE_DROP = "PRICE_DROP"
    NEW_MESSAGE = "NEW_MESSAGE"
    SYSTEM = "SYSTEM"


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Значение из NotificationType
    type = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    link = Column(String, nullable=True)

    # ID связанной сущности (например, ID начисления), чтобы не слать дубликаты
    related_entity_id = Column(String, nullable=True)

    read = Column(Boolean, default=False, nullable=False, server_default='false')
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    user = relationship(User)
