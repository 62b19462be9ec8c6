# wallet_service/channel/client.py

import asyncio
import enum
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict
from urllib.parse import urlencode, urlsplit

import httpx

from wallet_service.channel.api_client import NotificationApiClient
from wallet_service.channel.backoff import ReconnectPolicy
from wallet_service.channel.store import NotificationStore
from wallet_service.channel.transport import AiohttpTransport, ChannelSocket, ChannelTransport

logger = logging.getLogger(__name__)

LOGOUT_CLOSE_CODE = 1000
LOGOUT_CLOSE_REASON = "user logout"

DEFAULT_HEARTBEAT_INTERVAL = 20.0
DEFAULT_HEARTBEAT_TIMEOUT = 50.0
DEFAULT_RECONNECT_BASE_DELAY = 1.0
DEFAULT_RECONNECT_MAX_DELAY = 30.0
DEFAULT_CONSTRUCTION_RETRY_DELAY = 5.0


class ChannelState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class NotificationChannel:
    """
    Клиент realtime-канала уведомлений.

    Один фоновый таск крутит цикл DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED.
    Неудачные подключения повторяются с экспоненциальной задержкой, ошибки в самом
    адресе (нет userId, кривой endpoint) - с фиксированной. После каждого подключения
    кеш сверяется с REST, поэтому пропущенные за время обрыва уведомления не теряются.
    """

    def __init__(
        self,
        endpoint: str,
        user_id: int | None,
        token: str,
        store: NotificationStore | None = None,
        api: NotificationApiClient | None = None,
        transport: ChannelTransport | None = None,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT,
        reconnect_base_delay: float = DEFAULT_RECONNECT_BASE_DELAY,
        reconnect_max_delay: float = DEFAULT_RECONNECT_MAX_DELAY,
        construction_retry_delay: float = DEFAULT_CONSTRUCTION_RETRY_DELAY,
        reconcile_page_size: int = 20,
        on_alert: Callable[[Dict[str, Any]], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.endpoint = endpoint
        self.user_id = user_id
        self.token = token
        self.store = store or NotificationStore()
        self.api = api
        self.transport = transport or AiohttpTransport()
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.construction_retry_delay = construction_retry_delay
        self.reconcile_page_size = reconcile_page_size
        self.on_alert = on_alert
        self.policy = ReconnectPolicy(base=reconnect_base_delay, cap=reconnect_max_delay)

        self._sleep = sleep
        self._state = ChannelState.DISCONNECTED
        self._state_listeners: list[Callable[[ChannelState], None]] = []
        self._runner: asyncio.Task | None = None
        self._socket: ChannelSocket | None = None
        self._stopping = False
        self._heartbeat_failed = False
        self._last_pong = 0.0

    # --- Состояние ---

    @property
    def state(self) -> ChannelState:
        return self._state

    def on_state_change(self, listener: Callable[[ChannelState], None]) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, state: ChannelState) -> None:
        if state == self._state:
            return
        logger.debug(f"Channel state {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._state_listeners):
            listener(state)

    # --- Жизненный цикл ---

    def build_url(self) -> str:
        """Собирает адрес ws://host/ws?userId=..&token=... ValueError - ошибка конфигурации, а не сети."""
        if not self.user_id:
            raise ValueError("User ID is missing")
        parts = urlsplit(self.endpoint)
        if parts.scheme not in ("ws", "wss") or not parts.netloc:
            raise ValueError(f"Invalid channel endpoint: {self.endpoint!r}")
        separator = "&" if parts.query else "?"
        return f"{self.endpoint}{separator}{urlencode({'userId': self.user_id, 'token': self.token})}"

    async def start(self) -> None:
        if self._runner is not None and not self._runner.done():
            return
        self._stopping = False
        self._runner = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Выход пользователя: закрываем канал кодом 1000 и гасим все отложенные переподключения."""
        self._stopping = True
        socket = self._socket
        if socket is not None:
            try:
                await socket.close(code=LOGOUT_CLOSE_CODE, reason=LOGOUT_CLOSE_REASON)
            except (OSError, RuntimeError) as e:
                logger.debug(f"Error while closing channel on logout: {e}")
        if self._runner is not None:
            self._runner.cancel()
            await asyncio.gather(self._runner, return_exceptions=True)
            self._runner = None
        self._socket = None
        self._set_state(ChannelState.DISCONNECTED)

    async def _run(self) -> None:
        while not self._stopping:
            try:
                url = self.build_url()
            except ValueError as e:
                logger.warning(f"Cannot connect channel: {e}. Retrying in {self.construction_retry_delay}s")
                await self._sleep(self.construction_retry_delay)
                continue

            self._set_state(ChannelState.CONNECTING)
            try:
                socket = await self.transport.connect(url)
            except ValueError as e:
                self._set_state(ChannelState.DISCONNECTED)
                logger.warning(f"Channel endpoint rejected: {e}. Retrying in {self.construction_retry_delay}s")
                await self._sleep(self.construction_retry_delay)
                continue
            except (OSError, asyncio.TimeoutError) as e:
                self._set_state(ChannelState.DISCONNECTED)
                delay = self.policy.next_delay()
                logger.info(f"Channel connection failed ({e}). Reconnect attempt {self.policy.attempt} in {delay}s")
                await self._sleep(delay)
                continue

            self._socket = socket
            self._heartbeat_failed = False
            self.policy.reset()
            self._set_state(ChannelState.CONNECTED)
            logger.info(f"Channel connected for user {self.user_id}")

            await self.reconcile()
            await self._serve(socket)

            self._socket = None
            self._set_state(ChannelState.DISCONNECTED)
            close_code, close_reason = socket.close_code, socket.close_reason
            logger.info(f"Channel closed. Code: {close_code}, Reason: {close_reason or 'No reason provided'}")

            if self._stopping or (close_code == LOGOUT_CLOSE_CODE and close_reason == LOGOUT_CLOSE_REASON):
                break
            if self._heartbeat_failed:
                # Мертвое соединение обнаружено heartbeat'ом: переподключаемся сразу
                continue
            delay = self.policy.next_delay()
            logger.info(f"Reconnect attempt {self.policy.attempt} in {delay}s")
            await self._sleep(delay)

    async def _serve(self, socket: ChannelSocket) -> None:
        self._last_pong = time.monotonic()
        heartbeat = asyncio.create_task(self._heartbeat(socket))
        try:
            while True:
                raw = await socket.receive()
                if raw is None:
                    break
                try:
                    await self._handle(raw)
                except (ValueError, KeyError, TypeError, AttributeError):
                    # Одно кривое сообщение не должно останавливать канал
                    logger.error("Failed to handle channel message", exc_info=True)
        except OSError as e:
            logger.warning(f"Channel receive failed: {e}")
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _heartbeat(self, socket: ChannelSocket) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if time.monotonic() - self._last_pong > self.heartbeat_timeout:
                logger.warning("No pong received within heartbeat timeout. Closing channel.")
                await self._abort(socket, "heartbeat timeout")
                return
            try:
                await socket.send_json({"type": "ping", "timestamp": int(time.time() * 1000)})
            except (OSError, RuntimeError) as e:
                logger.warning(f"Failed to send channel heartbeat: {e}")
                await self._abort(socket, "heartbeat failed")
                return

    async def _abort(self, socket: ChannelSocket, reason: str) -> None:
        self._heartbeat_failed = True
        try:
            await socket.close(code=4001, reason=reason)
        except (OSError, RuntimeError) as e:
            logger.debug(f"Error while closing broken channel: {e}")

    # --- Сообщения ---

    async def _handle(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Error parsing channel message")
            return
        if not isinstance(data, dict):
            return

        message_type = data.get("type")
        if message_type == "pong":
            self._last_pong = time.monotonic()
        elif message_type == "notification":
            notification = data.get("notification")
            if not isinstance(notification, dict):
                return
            if self.store.add_pushed(notification) and self.on_alert is not None:
                self.on_alert(notification)
            await self.reconcile()
        elif message_type == "connection":
            logger.debug(data.get("message"))

    async def reconcile(self) -> None:
        """Перечитывает список и счетчик непрочитанных из REST. Ошибки сети не роняют канал."""
        if self.api is None:
            return
        try:
            page = await self.api.list_notifications(page=1, size=self.reconcile_page_size)
            unread = await self.api.unread_count()
        except httpx.HTTPError as e:
            logger.warning(f"Notification reconciliation failed: {e}")
            return
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Notification reconciliation got a malformed response: {e}")
            return

        items = page.get("items") if isinstance(page, dict) else None
        if not isinstance(items, list) or not isinstance(unread, int):
            logger.warning("Notification reconciliation got a malformed response, cache left as is.")
            return
        self.store.replace_all([item for item in items if isinstance(item, dict) and "id" in item], unread)
