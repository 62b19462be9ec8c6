# wallet_service/routers/v1/api.py

from fastapi import APIRouter

from wallet_service.routers.v1.endpoints import notification, wallet
from wallet_service.routers.v1.endpoints import admin as admin_v1_router

# Все пути, подключенные к нему, будут иметь префикс /api/v1
api_router = APIRouter(prefix="/v1")

api_router.include_router(wallet.router, tags=["Wallet"])
api_router.include_router(notification.router, tags=["Notifications"])

# Админские эндпоинты
api_router.include_router(admin_v1_router.router, prefix="/admin", tags=["Admin"])
