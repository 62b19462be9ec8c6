# wallet_service/channel/manager.py

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from wallet_service.utils.dates import utcnow

logger = logging.getLogger(__name__)

AckHandler = Callable[[int, int], Awaitable[None]]


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


@dataclass(eq=False)
class ChannelConnection:
    """Одно живое соединение пользователя. У пользователя их может быть несколько (вкладки, устройства)."""
    user_id: int
    websocket: WebSocket
    connected_at: datetime
    last_seen: datetime


class ConnectionManager:
    """
    Реестр WebSocket-соединений по пользователям.
    Один экземпляр на приложение, живет в app.state.
    """

    def __init__(self):
        self._connections: Dict[int, List[ChannelConnection]] = {}

    async def connect(self, user_id: int, websocket: WebSocket) -> ChannelConnection:
        """Регистрирует уже принятое соединение и отправляет приветствие."""
        now = utcnow()
        connection = ChannelConnection(user_id=user_id, websocket=websocket, connected_at=now, last_seen=now)
        self._connections.setdefault(user_id, []).append(connection)
        logger.info(f"WebSocket connection associated with user {user_id}")
        await websocket.send_json({
            "type": "connection",
            "message": "Successfully connected to notification service",
            "timestamp": now.isoformat(),
        })
        return connection

    def disconnect(self, connection: ChannelConnection) -> None:
        connections = self._connections.get(connection.user_id)
        if not connections:
            return
        if connection in connections:
            connections.remove(connection)
        if not connections:
            del self._connections[connection.user_id]
        logger.info(f"WebSocket connection for user {connection.user_id} closed")

    def connection_count(self, user_id: int | None = None) -> int:
        if user_id is not None:
            return len(self._connections.get(user_id, []))
        return sum(len(connections) for connections in self._connections.values())

    def active_user_ids(self) -> List[int]:
        return list(self._connections.keys())

    async def send_to_user(self, user_id: int, payload: Dict[str, Any]) -> int:
        """
        Отправляет сообщение во все соединения пользователя.
        Соединения, в которые не удалось записать, выбрасываются из реестра.
        Возвращает число успешных отправок.
        """
        delivered = 0
        for connection in list(self._connections.get(user_id, [])):
            if connection.websocket.application_state != WebSocketState.CONNECTED:
                self.disconnect(connection)
                continue
            try:
                await connection.websocket.send_json(payload)
                delivered += 1
            except (RuntimeError, OSError) as e:
                logger.warning(f"Failed to push message to user {user_id}: {e}. Dropping connection.")
                self.disconnect(connection)
        return delivered

    async def broadcast(self, payload: Dict[str, Any]) -> int:
        delivered = 0
        for user_id in self.active_user_ids():
            delivered += await self.send_to_user(user_id, payload)
        logger.info(f"Broadcast delivered to {delivered} connections")
        return delivered

    async def push_notification(self, user_id: int, notification: Dict[str, Any]) -> int:
        delivered = await self.send_to_user(user_id, {
            "type": "notification",
            "notification": notification,
            "timestamp": utcnow().isoformat(),
        })
        if delivered:
            logger.info(f"Real-time notification sent to user {user_id}")
        else:
            logger.info(f"No active WebSocket connections for user {user_id}, notification persisted only")
        return delivered

    async def handle_message(
        self,
        connection: ChannelConnection,
        raw: str,
        on_ack: AckHandler | None = None,
    ) -> Dict[str, Any] | None:
        """
        Обрабатывает входящее сообщение клиента. Возвращает ответ, который надо отправить, или None.
        Любое сообщение, даже битое, продлевает жизнь соединения.
        """
        connection.last_seen = utcnow()
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning(f"Malformed message from user {connection.user_id} ignored")
            return None
        if not isinstance(data, dict):
            return None

        message_type = data.get("type")
        if message_type == "ping":
            return {"type": "pong", "timestamp": _epoch_ms(connection.last_seen)}

        logger.info(f"Received message from user {connection.user_id}: {data}")
        if message_type == "ack":
            notification_id = data.get("notificationId")
            if isinstance(notification_id, int) and on_ack is not None:
                await on_ack(connection.user_id, notification_id)
        return None

    async def sweep_stale(self, now: datetime | None = None, timeout_seconds: float = 50) -> int:
        """Закрывает соединения, от которых давно ничего не приходило."""
        now = now or utcnow()
        threshold = now - timedelta(seconds=timeout_seconds)
        closed = 0
        for user_id in self.active_user_ids():
            for connection in list(self._connections.get(user_id, [])):
                if connection.last_seen >= threshold:
                    continue
                logger.info(f"Terminating inactive WebSocket connection of user {user_id}")
                self.disconnect(connection)
                closed += 1
                try:
                    await connection.websocket.close(code=1001, reason="heartbeat timeout")
                except (RuntimeError, OSError) as e:
                    logger.debug(f"Stale connection of user {user_id} was already closed: {e}")
        return closed
