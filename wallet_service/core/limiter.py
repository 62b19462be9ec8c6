# wallet_service/core/limiter.py

import logging
from typing import Optional

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from wallet_service.core.config import settings
from wallet_service.models.user import User

logger = logging.getLogger(__name__)

# --- Функция-ключ для идентификации запросов ---

def key_func(request: Request) -> str:
    """
    Определяет, как идентифицировать запрос для применения лимита.
    Приоритет: ID пользователя (если авторизован) -> IP-адрес.
    """
    # Пользователь уже мог быть извлечен в зависимостях
    user: Optional[User] = getattr(request.state, "user", None)

    if user and user.id:
        return str(user.id)

    return get_remote_address(request)

# --- Создание и конфигурация лимитера ---

# Счетчики живут в том же Redis, что и кеш настроек.
# 'moving-window' сглаживает всплески попыток списания на границе минуты.
limiter = Limiter(
    key_func=key_func,
    storage_uri=settings.REDIS_URL,
    strategy="moving-window",
    enabled=settings.RATE_LIMIT_ENABLED,
)
