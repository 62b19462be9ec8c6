# wallet_service/routers/v1/endpoints/admin/__init__.py

from fastapi import APIRouter, Depends

from wallet_service.dependencies import get_admin_user

from . import tasks, wallet

# Зависимость get_admin_user применяется ко ВСЕМ эндпоинтам, подключенным к этому роутеру.
router = APIRouter(
    dependencies=[Depends(get_admin_user)]
)

# /admin/wallet, /admin/wallet/settings, /admin/wallet/{user_id}, ...
router.include_router(wallet.router, prefix="/wallet")

# /admin/tasks, /admin/tasks/run
router.include_router(tasks.router, prefix="/tasks")
