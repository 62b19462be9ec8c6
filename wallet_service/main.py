# wallet_service/main.py

import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

# Конфигурация и ядро
from wallet_service.core.config import settings as config
from wallet_service.core.exceptions import USER_CORRECTABLE_ERRORS, WalletError
from wallet_service.core.limiter import limiter
from wallet_service.core.logging_config import setup_logging
from wallet_service.core.redis import redis_client
from wallet_service.channel.manager import ConnectionManager
from wallet_service.schemas.common import ErrorResponse

# Роутеры FastAPI
from wallet_service.routers.v1.api import api_router as api_v1_router
from wallet_service.routers.realtime import router as realtime_router
from wallet_service.routers.webhooks import router as webhooks_router

# Фоновые задачи
from wallet_service.services.coin_expiration import expire_coins_task, notify_about_expiring_coins_task
from wallet_service.services.notification_cleanup import cleanup_old_notifications_task

# --- Инициализация ---
logger = logging.getLogger(__name__)
# Задачи по базе: только на главном воркере
scheduler = AsyncIOScheduler()
# Очистка зависших соединений: на каждом воркере, у каждого свои соединения
channel_scheduler = AsyncIOScheduler()

STARTUP_LOCK_KEY = "wallet_service_startup_lock"

# --- Обработчики ошибок ---
async def wallet_error_handler(request: Request, exc: WalletError):
    """Доменные ошибки кошелька: конкретное сообщение и стабильный код для фронтенда."""
    if isinstance(exc, USER_CORRECTABLE_ERRORS):
        logger.info(f"Wallet request rejected ({exc.code}): {exc.message}")
    elif exc.status_code >= 500:
        logger.error(f"Wallet storage failure for request: {request.method} {request.url}")
    else:
        logger.warning(f"Wallet request failed ({exc.code}): {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=exc.message, code=exc.code).model_dump(),
    )

async def unhandled_exception_handler(request: Request, exc: Exception):
    """
    Глобальный обработчик для всех необработанных исключений.
    """
    logger.critical(f"Unhandled exception for request: {request.method} {request.url}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error."},
    )

# --- Lifespan Manager (запуск и остановка приложения) ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Application lifespan startup...")
    manager: ConnectionManager = app.state.connection_manager

    if not channel_scheduler.running:
        channel_scheduler.add_job(
            manager.sweep_stale, 'interval',
            seconds=config.CHANNEL_STALE_SWEEP_INTERVAL_SECONDS,
            kwargs={"timeout_seconds": config.CHANNEL_HEARTBEAT_TIMEOUT_SECONDS},
        )
        channel_scheduler.start()

    # Надежная блокировка через Redis для однократной инициализации
    is_main_worker = await redis_client.set(STARTUP_LOCK_KEY, "1", ex=60, nx=True)

    if is_main_worker:
        logger.info("This is the main worker. Starting scheduled jobs...")
        if not scheduler.running:
            jobs_kwargs = {"manager": manager}
            scheduler.add_job(expire_coins_task, 'cron', hour=4, minute=0, timezone=config.SCHEDULER_TIMEZONE, kwargs=jobs_kwargs)
            scheduler.add_job(notify_about_expiring_coins_task, 'cron', hour=10, minute=0, timezone=config.SCHEDULER_TIMEZONE, kwargs=jobs_kwargs)
            scheduler.add_job(cleanup_old_notifications_task, 'cron', hour=5, minute=30, timezone=config.SCHEDULER_TIMEZONE)
            scheduler.start()
            logger.info("Scheduler started with background jobs.")
    else:
        logger.info("This is a secondary worker. Skipping scheduled jobs.")

    yield

    # Код при остановке
    if channel_scheduler.running:
        channel_scheduler.shutdown()
    if is_main_worker:
        logger.info("Main worker shutting down...")
        if scheduler.running:
            scheduler.shutdown()
            logger.info("Scheduler shut down.")
        await redis_client.delete(STARTUP_LOCK_KEY)
    else:
        logger.info("Secondary worker shutting down.")

# --- Создание FastAPI приложения ---
app = FastAPI(
    title="Coin Wallet Service",
    description="Wallet ledger with expiring coins and realtime notifications",
    version="0.1.0",
    lifespan=lifespan
)

# Один менеджер соединений на процесс, доступен через app.state
app.state.connection_manager = ConnectionManager()
app.state.limiter = limiter

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Регистрация обработчиков исключений ---
app.add_exception_handler(WalletError, wallet_error_handler)
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# --- Подключение роутеров FastAPI ---
api_router = APIRouter(prefix="/api")
api_router.include_router(api_v1_router)
app.include_router(api_router)

# Realtime-канал и веб-хуки (остаются в корне)
app.include_router(realtime_router, tags=["Realtime"])
app.include_router(webhooks_router, prefix="/internal/webhooks", tags=["Internal Webhooks"])
