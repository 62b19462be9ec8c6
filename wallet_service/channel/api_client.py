# wallet_service/channel/api_client.py

import logging
from typing import Any, Dict

import httpx

logger = logging.getLogger(__name__)


class NotificationApiClient:
    """
    Асинхронный клиент REST API уведомлений.
    Авторизация через Bearer-токен того же пользователя, что и у WebSocket-канала.
    """
    def __init__(self, base_url: str, token: str, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"}
        if client is None:
            client = httpx.AsyncClient(base_url=self.base_url, timeout=httpx.Timeout(10.0))
        client.headers.update(headers)
        self.async_client = client

    async def _request(self, method: str, endpoint: str, params: dict = None) -> httpx.Response:
        try:
            response = await self.async_client.request(method, f"{self.base_url}{endpoint}", params=params)
            response.raise_for_status()
            return response
        except httpx.RequestError as e:
            logger.error(f"Network error during {method} request to {e.request.url!r}.", exc_info=True)
            raise
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error during {method} request to {e.request.url!r}: {e.response.text}", exc_info=True)
            raise

    async def list_notifications(self, page: int = 1, size: int = 20, unread_only: bool = False) -> Dict[str, Any]:
        response = await self._request(
            "GET", "/notifications", params={"page": page, "size": size, "unread_only": unread_only}
        )
        return response.json()

    async def unread_count(self) -> int:
        response = await self._request("GET", "/notifications/unread/count")
        return response.json()["count"]

    async def mark_read(self, notification_id: int) -> None:
        await self._request("POST", f"/notifications/{notification_id}/read")

    async def mark_all_read(self) -> None:
        await self._request("POST", "/notifications/read-all")

    async def delete(self, notification_id: int) -> None:
        await self._request("DELETE", f"/notifications/{notification_id}")

    async def delete_all(self) -> None:
        await self._request("DELETE", "/notifications")

    async def close(self) -> None:
        await self.async_client.aclose()
