# wallet_service/models/user.py

from sqlalchemy import Column, Integer, String, Boolean, DateTime, func
from wallet_service.db.session import Base

class User(Base):
    __tablename__ = "users"

    # Пользователей заводит основной сервис маркетплейса, здесь храним только необходимый минимум
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False, server_default='false')

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
