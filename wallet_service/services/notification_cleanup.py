# wallet_service/services/notification_cleanup.py
import logging

from sqlalchemy.exc import SQLAlchemyError

from wallet_service.core.config import settings
from wallet_service.crud import notification as crud_notification
from wallet_service.db.session import SessionLocal

logger = logging.getLogger(__name__)


def cleanup_old_notifications_task() -> int:
    """Фоновая задача для "умного" удаления старых уведомлений."""
    logger.info("--- Starting scheduled job: Smart Cleanup of Old Notifications ---")
    deleted_count = 0
    with SessionLocal() as db:
        try:
            deleted_count = crud_notification.smart_delete_old_notifications(
                db,
                read_older_than_days=settings.DELETE_READ_NOTIFICATIONS_AFTER_DAYS,
                any_older_than_days=settings.DELETE_ANY_NOTIFICATION_AFTER_DAYS
            )
            if deleted_count > 0:
                logger.info(f"Successfully deleted {deleted_count} old notifications.")
            else:
                logger.info("No old notifications to delete.")
        except SQLAlchemyError:
            logger.error("An error occurred during notification cleanup task", exc_info=True)
            db.rollback()
    logger.info("--- Finished scheduled job: Smart Cleanup of Old Notifications ---")
    return deleted_count
