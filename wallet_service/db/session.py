# wallet_service/db/session.py

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from wallet_service.core.config import settings


def _connect_args(url: str) -> dict:
    # SQLite ждет снятия блокировки записи, PostgreSQL обрывает долгие запросы.
    # В обоих случаях драйвер выбрасывает OperationalError -> StorageFailure.
    timeout_ms = settings.DATABASE_STATEMENT_TIMEOUT_MS
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout_ms / 1000}
    if url.startswith("postgresql"):
        return {"options": f"-c statement_timeout={timeout_ms}"}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.DATABASE_URL),
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()
