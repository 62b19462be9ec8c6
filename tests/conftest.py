# tests/conftest.py
import os

# Settings читаются при импорте wallet_service, поэтому окружение задаем до импортов
os.environ.update({
    "DATABASE_USER": "test",
    "DATABASE_PASSWORD": "test",
    "DATABASE_HOST": "localhost",
    "DATABASE_PORT": "5432",
    "DATABASE_NAME": "test",
    "DATABASE_URL_OVERRIDE": "sqlite://",
    "REDIS_HOST": "localhost",
    "REDIS_PORT": "6379",
    "SECRET_KEY": "test-secret-key",
    "INTERNAL_WEBHOOK_SECRET": "test-webhook-secret",
    "ADMIN_USER_IDS": "",
    "RATE_LIMIT_ENABLED": "false",
})

from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from wallet_service.channel.manager import ConnectionManager
from wallet_service.core.redis import get_redis_client
from wallet_service.core.security import create_access_token
from wallet_service.db.session import Base, SessionLocal
from wallet_service.main import app
from wallet_service.models import notification, user, wallet # Импортируем все модели для создания таблиц
from wallet_service.models.user import User

# In-memory SQLite с одним общим соединением: его видят и тесты, и приложение (в том числе из других потоков)
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
# Перенастраиваем общую фабрику сессий: ее используют get_db, WebSocket-обработчик и фоновые задачи
SessionLocal.configure(bind=engine)


@pytest.fixture(scope="function")
def db_session() -> Session:
    """
    Фикстура для создания чистой базы данных для каждого теста.
    """
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_user(db_session) -> User:
    user = User(id=1, username="alice")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def other_user(db_session) -> User:
    user = User(id=3, username="bob")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def admin_user(db_session) -> User:
    user = User(id=2, username="admin", is_admin=True)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


def make_auth_headers(user_id: int) -> dict:
    token = create_access_token({"sub": str(user_id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers_for():
    return make_auth_headers


@pytest.fixture
def auth_headers(test_user) -> dict:
    return make_auth_headers(test_user.id)


@pytest.fixture
def admin_auth_headers(admin_user) -> dict:
    return make_auth_headers(admin_user.id)


@pytest.fixture
def mock_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.get.return_value = None
    return redis


@pytest.fixture
def connection_manager() -> ConnectionManager:
    """Свежий менеджер соединений на каждый тест."""
    manager = ConnectionManager()
    app.state.connection_manager = manager
    return manager


@pytest.fixture
async def client(db_session, mock_redis, connection_manager):
    """HTTP-клиент к приложению без lifespan: без Redis-блокировки и планировщика."""
    app.dependency_overrides[get_redis_client] = lambda: mock_redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
