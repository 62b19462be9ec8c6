# wallet_service/routers/realtime.py

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from wallet_service.channel.manager import ConnectionManager
from wallet_service.core.security import decode_user_id
from wallet_service.crud import notification as crud_notification
from wallet_service.dependencies import get_db_context

logger = logging.getLogger(__name__)

# Подключается в main.py без префикса: ws://host/ws?userId=..&token=..
router = APIRouter()

CLOSE_USER_ID_REQUIRED = 4000
CLOSE_UNAUTHORIZED = 4401


def _mark_read_sync(user_id: int, notification_id: int) -> None:
    with get_db_context() as db:
        if crud_notification.mark_notification_as_read(db, user_id=user_id, notification_id=notification_id):
            logger.info(f"Notification {notification_id} marked as read via channel ack")
        else:
            logger.warning(f"Ack for unknown notification {notification_id} from user {user_id}")


async def _mark_read(user_id: int, notification_id: int) -> None:
    # Работа с базой синхронная, поэтому в отдельном потоке
    await asyncio.to_thread(_mark_read_sync, user_id, notification_id)


def _parse_user_id(raw: str | None) -> int:
    try:
        return int(raw) if raw else 0
    except ValueError:
        return 0


@router.websocket("/ws")
async def notifications_channel(websocket: WebSocket):
    """
    Realtime-канал уведомлений. Сервер отвечает pong на ping и принимает ack
    для пометки уведомлений прочитанными. Сами уведомления пушит ConnectionManager.
    """
    manager: ConnectionManager = websocket.app.state.connection_manager
    user_id = _parse_user_id(websocket.query_params.get("userId"))
    token = websocket.query_params.get("token")

    # Принимаем до проверки, иначе клиент не увидит код закрытия
    await websocket.accept()

    if not user_id:
        logger.info("WebSocket connection rejected - userId not provided")
        await websocket.close(code=CLOSE_USER_ID_REQUIRED, reason="UserId is required")
        return

    if not token or decode_user_id(token) != user_id:
        logger.warning(f"WebSocket connection rejected - invalid token for user {user_id}")
        await websocket.close(code=CLOSE_UNAUTHORIZED, reason="Unauthorized")
        return

    connection = await manager.connect(user_id, websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            reply = await manager.handle_message(connection, raw, on_ack=_mark_read)
            if reply is not None:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(connection)
