# wallet_service/tasks_registry.py

from wallet_service.channel.manager import ConnectionManager
from wallet_service.services import coin_expiration, notification_cleanup

# --- Обертки над задачами ---
# Каждая задача сама открывает сессию БД. Менеджер соединений нужен, чтобы пушить уведомления.

async def run_expire_coins(manager: ConnectionManager):
    await coin_expiration.expire_coins_task(manager)

async def run_notify_expiring_coins(manager: ConnectionManager):
    await coin_expiration.notify_about_expiring_coins_task(manager)

def run_cleanup_old_notifications(manager: ConnectionManager):
    # Синхронная задача, менеджер ей не нужен
    notification_cleanup.cleanup_old_notifications_task()


# --- Словарь-реестр всех задач, доступных для ручного запуска ---
# Ключ - имя задачи для API, 'function' - обертка, 'is_async' - как её запускать.

TASKS = {
    "expire_coins": {
        "function": run_expire_coins,
        "description": "Сжигает монеты кошелька, у которых истек срок действия (FIFO).",
        "is_async": True,
    },
    "notify_expiring_coins": {
        "function": run_notify_expiring_coins,
        "description": "Напоминает пользователям о монетах, которые скоро сгорят.",
        "is_async": True,
    },
    "cleanup_old_notifications": {
        "function": run_cleanup_old_notifications,
        "description": "Удаляет старые прочитанные уведомления из базы данных.",
        "is_async": False,
    },
}

def get_tasks_list():
    return [
        {"task_name": name, "description": data["description"]}
        for name, data in TASKS.items()
    ]
