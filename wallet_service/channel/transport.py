# wallet_service/channel/transport.py

import asyncio
import logging
from typing import Any, Dict, Protocol

import aiohttp

logger = logging.getLogger(__name__)


class ChannelConnectError(ConnectionError):
    """Сервер недоступен или отказал в рукопожатии. Лечится переподключением с backoff."""


class ChannelSocket(Protocol):
    close_code: int | None
    close_reason: str | None

    async def send_json(self, payload: Dict[str, Any]) -> None: ...

    async def receive(self) -> str | None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class ChannelTransport(Protocol):
    async def connect(self, url: str) -> ChannelSocket: ...


class AiohttpSocket:
    def __init__(self, ws: aiohttp.ClientWebSocketResponse):
        self._ws = ws
        self.close_reason: str | None = None

    @property
    def close_code(self) -> int | None:
        return self._ws.close_code

    async def send_json(self, payload: Dict[str, Any]) -> None:
        if self._ws.closed:
            raise ConnectionResetError("WebSocket is closed")
        await self._ws.send_json(payload)

    async def receive(self) -> str | None:
        """Следующее текстовое сообщение или None, если соединение закрыто."""
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data
            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data.decode("utf-8", errors="replace")
            if msg.type == aiohttp.WSMsgType.CLOSE:
                self.close_reason = msg.extra
                return None
            if msg.type in (aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                return None
            if msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"WebSocket error: {self._ws.exception()}")
                return None

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_reason = reason
        await self._ws.close(code=code, message=reason.encode("utf-8"))


class AiohttpTransport:
    """
    WebSocket-транспорт на aiohttp. Сессия создается лениво и переиспользуется
    между переподключениями.
    """
    def __init__(self, session: aiohttp.ClientSession | None = None, connect_timeout: float = 10.0):
        self._session = session
        self._connect_timeout = connect_timeout

    async def connect(self, url: str) -> AiohttpSocket:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(
                self._session.ws_connect(url, autoping=True),
                timeout=self._connect_timeout,
            )
        except aiohttp.InvalidURL:
            # InvalidURL - это ValueError: канал повторит попытку через фиксированную паузу
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChannelConnectError(f"Failed to connect to {url}: {e}") from e
        return AiohttpSocket(ws)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
