# wallet_service/dependencies.py

import logging
from typing import Iterator
from contextlib import contextmanager

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from wallet_service.channel.manager import ConnectionManager
from wallet_service.core.config import settings
from wallet_service.core.security import decode_user_id
from wallet_service.crud import user as crud_user
from wallet_service.db.session import SessionLocal
from wallet_service.models.user import User

# --- Инициализация логгера ---
logger = logging.getLogger(__name__)

# --- Схемы аутентификации ---
strict_bearer_scheme = HTTPBearer(auto_error=True)

# --- Управление сессией БД ---
def get_db_session_instance() -> Session:
    """Создает и возвращает экземпляр сессии БД."""
    return SessionLocal()

def get_db() -> Iterator[Session]:
    """
    Основная зависимость FastAPI для получения сессии БД.
    Это генератор, который корректно работает с `Depends`.
    """
    db = get_db_session_instance()
    try:
        yield db
    finally:
        db.close()

@contextmanager
def get_db_context() -> Iterator[Session]:
    """
    Контекстный менеджер для получения сессии БД вне FastAPI (WebSocket-обработчики, фоновые задачи).
    """
    db = get_db_session_instance()
    try:
        yield db
    finally:
        db.close()

def get_connection_manager(request: Request) -> ConnectionManager:
    """Менеджер WebSocket-соединений, созданный при старте приложения."""
    return request.app.state.connection_manager

# --- Зависимости аутентификации и авторизации ---

def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(strict_bearer_scheme),
    db: Session = Depends(get_db)
) -> User:
    """
    ОБЯЗАТЕЛЬНАЯ зависимость.
    Требует валидный токен. Если его нет или он невалиден - вызывает ошибку 401.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    user_id = decode_user_id(credentials.credentials)
    if user_id is None:
        logger.warning("Invalid token or token payload is missing 'sub'.")
        raise credentials_exception

    user = crud_user.get_user_by_id(db, user_id)
    if user is None:
        logger.warning(f"User with ID {user_id} from token not found in DB.")
        raise credentials_exception
    # Лимитер берет ключ отсюда
    request.state.user = user
    logger.debug(f"Successfully authenticated user ID: {user.id}")
    return user


def get_admin_user(current_user: User = Depends(get_current_user)) -> User:
    """
    Зависимость для защиты админских эндпоинтов.
    Админ - это пользователь с флагом is_admin или из списка ADMIN_USER_IDS.
    """
    if not current_user.is_admin and current_user.id not in settings.ADMIN_USER_IDS:
        logger.warning(f"Permission denied for user {current_user.id}: not an admin.")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to access this resource."
        )
    return current_user


def verify_webhook_secret(x_webhook_secret: str | None = Header(default=None)) -> None:
    """Внутренние вебхуки принимаются только с общим секретом в заголовке X-Webhook-Secret."""
    if x_webhook_secret != settings.INTERNAL_WEBHOOK_SECRET:
        logger.warning("Internal webhook rejected: invalid secret.")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook secret.")
