# wallet_service/channel/store.py

import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Listener = Callable[["NotificationStore"], None]


class NotificationStore:
    """
    Клиентский кеш уведомлений. Это единственный источник правды для UI:
    и push-сообщения, и ответы REST попадают сюда, а слушатели получают сигнал об изменении.
    """

    def __init__(self):
        self._items: List[Dict[str, Any]] = []
        self.unread_count: int = 0
        self._listeners: List[Listener] = []

    @property
    def items(self) -> List[Dict[str, Any]]:
        return list(self._items)

    def ids(self) -> List[int]:
        return [item.get("id") for item in self._items]

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.error("Notification store listener failed", exc_info=True)

    def add_pushed(self, notification: Dict[str, Any]) -> bool:
        """
        Добавляет уведомление из push-сообщения в начало списка.
        Повторная доставка того же id ничего не меняет, уведомление без id отбрасывается.
        Возвращает True, если уведомление новое.
        """
        notification_id = notification.get("id")
        if notification_id is None:
            logger.warning("Pushed notification without id ignored")
            return False
        if notification_id in self.ids():
            logger.debug(f"Duplicate push for notification {notification_id} ignored")
            return False
        self._items.insert(0, notification)
        if not notification.get("read", False):
            self.unread_count += 1
        self._emit()
        return True

    def replace_all(self, notifications: List[Dict[str, Any]], unread_count: int | None = None) -> None:
        """Сверка с сервером: REST-ответ заменяет кеш целиком."""
        seen = set()
        items = []
        for notification in notifications:
            notification_id = notification.get("id")
            if notification_id in seen:
                continue
            seen.add(notification_id)
            items.append(notification)
        self._items = items
        if unread_count is None:
            unread_count = sum(1 for item in items if not item.get("read", False))
        self.unread_count = unread_count
        self._emit()

    def set_unread_count(self, count: int) -> None:
        self.unread_count = count
        self._emit()

    def mark_read(self, notification_id: int) -> None:
        for item in self._items:
            if item.get("id") == notification_id and not item.get("read", False):
                item["read"] = True
                self.unread_count = max(0, self.unread_count - 1)
                break
        self._emit()

    def mark_all_read(self) -> None:
        for item in self._items:
            item["read"] = True
        self.unread_count = 0
        self._emit()

    def remove(self, notification_id: int) -> None:
        for item in list(self._items):
            if item.get("id") == notification_id:
                self._items.remove(item)
                if not item.get("read", False):
                    self.unread_count = max(0, self.unread_count - 1)
        self._emit()

    def clear(self) -> None:
        self._items = []
        self.unread_count = 0
        self._emit()
