# run_tasks_manually.py
import asyncio
import logging
import sys
import os

# Запуск из корня репозитория: python scripts/run_tasks_manually.py
sys.path.append(os.getcwd())

from wallet_service.channel.manager import ConnectionManager
from wallet_service.core.logging_config import setup_logging
from wallet_service.services.coin_expiration import expire_coins_task, notify_about_expiring_coins_task
from wallet_service.services.notification_cleanup import cleanup_old_notifications_task

logger = logging.getLogger("wallet_service.scripts.run_tasks_manually")


async def main():
    """
    Поочередно запускает все фоновые задачи.
    Живых WebSocket-соединений у скрипта нет, поэтому уведомления только сохраняются в базе.
    """
    manager = ConnectionManager()
    logger.info("--- Manual Task Runner ---")

    logger.info("[1/3] Running: notify_about_expiring_coins_task...")
    sent = await notify_about_expiring_coins_task(manager)
    logger.info(f"Done. Reminders sent: {sent}")

    logger.info("[2/3] Running: expire_coins_task...")
    result = await expire_coins_task(manager)
    logger.info(f"Done. {result.model_dump()}")

    # Синхронную задачу запускаем в потоке, чтобы не блокировать event loop
    logger.info("[3/3] Running: cleanup_old_notifications_task...")
    deleted = await asyncio.to_thread(cleanup_old_notifications_task)
    logger.info(f"Done. Notifications deleted: {deleted}")

    logger.info("--- All tasks completed! ---")


if __name__ == "__main__":
    setup_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Script interrupted by user.")
