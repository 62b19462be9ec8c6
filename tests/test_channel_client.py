# tests/test_channel_client.py

import asyncio
import json

import httpx
import pytest

from wallet_service.channel.api_client import NotificationApiClient
from wallet_service.channel.backoff import ReconnectPolicy, reconnect_delay
from wallet_service.channel.client import ChannelState, NotificationChannel
from wallet_service.channel.store import NotificationStore


# --- Тестовые двойники ---

class FakeSocket:
    def __init__(self, messages=(), fail_send: bool = False):
        self._queue: asyncio.Queue = asyncio.Queue()
        for message in messages:
            self._queue.put_nowait(message)
        self.fail_send = fail_send
        self.sent = []
        self.closed_with = None
        self.close_code = None
        self.close_reason = None

    def server_close(self, code: int = 1006, reason: str = ""):
        self.close_code = code
        self.close_reason = reason
        self._queue.put_nowait(None)

    async def send_json(self, payload):
        if self.fail_send:
            raise ConnectionResetError("broken pipe")
        self.sent.append(payload)

    async def receive(self):
        return await self._queue.get()

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed_with = (code, reason)
        self.server_close(code, reason)


class FakeTransport:
    """Выдает заранее заданные исходы подключения. Когда они кончаются - ждет бесконечно."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls = []

    async def connect(self, url):
        self.urls.append(url)
        if not self.outcomes:
            await asyncio.Event().wait()
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    """Запоминает задержки. После limit вызовов зависает, чтобы цикл переподключения остановился."""

    def __init__(self, limit: int):
        self.limit = limit
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        if len(self.delays) >= self.limit:
            await asyncio.Event().wait()
        await asyncio.sleep(0)


class FakeApi:
    def __init__(self, *pages):
        self.pages = list(pages)
        self.list_calls = 0

    async def list_notifications(self, page=1, size=20, unread_only=False):
        self.list_calls += 1
        return self.pages[min(self.list_calls - 1, len(self.pages) - 1)]

    async def unread_count(self):
        return self.pages[min(self.list_calls - 1, len(self.pages) - 1)]["unread"]


async def wait_until(predicate, timeout: float = 2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(poll(), timeout)


def make_channel(transport, sleep, **kwargs) -> NotificationChannel:
    kwargs.setdefault("heartbeat_interval", 3600)
    return NotificationChannel(
        "ws://wallet.test/ws", user_id=1, token="token", transport=transport, sleep=sleep, **kwargs
    )


def push(notification) -> str:
    return json.dumps({"type": "notification", "notification": notification})


# --- Backoff ---

@pytest.mark.parametrize("attempt, expected", [(0, 1.0), (1, 2.0), (2, 4.0), (4, 16.0), (5, 30.0), (1000, 30.0)])
def test_reconnect_delay_is_exponential_and_capped(attempt, expected):
    assert reconnect_delay(attempt, base=1.0, cap=30.0) == expected


def test_reconnect_policy_resets():
    policy = ReconnectPolicy(base=1.0, cap=30.0)
    delays = [policy.next_delay() for _ in range(3)]
    policy.reset()

    assert delays == [1.0, 2.0, 4.0]
    assert policy.next_delay() == 1.0


async def test_failed_connects_back_off_exponentially():
    sleep = RecordingSleep(limit=3)
    transport = FakeTransport(OSError("refused"), OSError("refused"), OSError("refused"))
    channel = make_channel(transport, sleep)

    await channel.start()
    await wait_until(lambda: len(sleep.delays) == 3)
    await channel.stop()

    assert sleep.delays == [1.0, 2.0, 4.0]
    assert channel.state == ChannelState.DISCONNECTED


async def test_successful_connect_resets_backoff():
    sleep = RecordingSleep(limit=4)
    socket = FakeSocket()
    socket.server_close(1006)
    transport = FakeTransport(OSError("refused"), OSError("refused"), socket, OSError("refused"))
    channel = make_channel(transport, sleep)

    await channel.start()
    await wait_until(lambda: len(sleep.delays) == 4)
    await channel.stop()

    # После обрыва живого соединения отсчет начинается заново
    assert sleep.delays == [1.0, 2.0, 1.0, 2.0]


async def test_construction_error_retries_with_fixed_delay():
    sleep = RecordingSleep(limit=2)
    transport = FakeTransport()
    channel = NotificationChannel(
        "ws://wallet.test/ws", user_id=None, token="token", transport=transport, sleep=sleep,
        construction_retry_delay=5.0,
    )

    await channel.start()
    await wait_until(lambda: len(sleep.delays) == 2)
    await channel.stop()

    assert sleep.delays == [5.0, 5.0]
    assert transport.urls == []
    assert channel.policy.attempt == 0


async def test_rejected_endpoint_does_not_grow_backoff():
    sleep = RecordingSleep(limit=2)
    transport = FakeTransport(ValueError("bad url"), ValueError("bad url"))
    channel = make_channel(transport, sleep, construction_retry_delay=5.0)

    await channel.start()
    await wait_until(lambda: len(sleep.delays) == 2)
    await channel.stop()

    assert sleep.delays == [5.0, 5.0]
    assert channel.policy.attempt == 0


def test_build_url_validation():
    channel = make_channel(FakeTransport(), RecordingSleep(limit=1))
    assert channel.build_url() == "ws://wallet.test/ws?userId=1&token=token"

    with pytest.raises(ValueError):
        NotificationChannel("http://wallet.test/ws", user_id=1, token="t").build_url()
    with pytest.raises(ValueError):
        NotificationChannel("ws://wallet.test/ws", user_id=None, token="t").build_url()


# --- Сообщения и сверка ---

async def test_push_is_shown_immediately_and_reconciled_without_double_count():
    first = {"id": 9, "title": "Old", "read": True}
    pushed = {"id": 10, "title": "Coins expired", "read": False}
    api = FakeApi(
        {"items": [first], "unread": 0},
        {"items": [pushed, first], "unread": 1},
    )
    socket = FakeSocket(messages=[push(pushed), push(pushed)])
    store = NotificationStore()
    unread_history = []
    store.subscribe(lambda s: unread_history.append(s.unread_count))
    alerts = []
    channel = make_channel(FakeTransport(socket), RecordingSleep(limit=1), store=store, api=api, on_alert=alerts.append)

    await channel.start()
    await wait_until(lambda: api.list_calls == 3)
    await channel.stop()

    assert alerts == [pushed]
    assert store.ids() == [10, 9]
    assert store.unread_count == 1
    # Сразу после push счетчик уже увеличен, сверка его не удваивает
    assert unread_history[:3] == [0, 1, 1]
    assert max(unread_history) == 1


async def test_reconcile_survives_api_errors():
    class BrokenApi:
        async def list_notifications(self, page=1, size=20, unread_only=False):
            raise httpx.ConnectError("server down")

        async def unread_count(self):
            return 0

    store = NotificationStore()
    store.add_pushed({"id": 1, "read": False})
    channel = make_channel(FakeTransport(), RecordingSleep(limit=1), store=store, api=BrokenApi())

    await channel.reconcile()

    assert store.ids() == [1]
    assert store.unread_count == 1


async def test_reconcile_ignores_non_json_response():
    def html_page(request):
        return httpx.Response(200, text="<html>maintenance</html>")

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(html_page))
    api = NotificationApiClient("http://wallet.test/api/v1", token="token", client=http_client)
    store = NotificationStore()
    store.add_pushed({"id": 1, "read": False})
    channel = make_channel(FakeTransport(), RecordingSleep(limit=1), store=store, api=api)

    await channel.reconcile()
    await http_client.aclose()

    assert store.ids() == [1]
    assert store.unread_count == 1


async def test_reconcile_ignores_malformed_payload():
    api = FakeApi({"items": "oops", "unread": 3})
    store = NotificationStore()
    store.add_pushed({"id": 1, "read": False})
    channel = make_channel(FakeTransport(), RecordingSleep(limit=1), store=store, api=api)

    await channel.reconcile()

    assert store.ids() == [1]
    assert store.unread_count == 1


async def test_push_without_id_does_not_stop_channel():
    socket = FakeSocket(messages=[push({"title": "no id"}), push({"id": 7, "read": False})])
    channel = make_channel(FakeTransport(socket), RecordingSleep(limit=1))

    await channel.start()
    await wait_until(lambda: socket._queue.empty() and channel.store.ids() == [7])
    await asyncio.sleep(0.01)

    assert channel._runner is not None and not channel._runner.done()
    assert channel.state == ChannelState.CONNECTED
    assert channel.store.unread_count == 1
    await channel.stop()


async def test_failing_message_handler_keeps_channel_running():
    socket = FakeSocket(messages=[push({"id": 1, "read": False}), push({"id": 2, "read": False})])
    calls = []

    def flaky_alert(notification):
        calls.append(notification["id"])
        if notification["id"] == 1:
            raise KeyError("title")

    channel = make_channel(FakeTransport(socket), RecordingSleep(limit=1), on_alert=flaky_alert)

    await channel.start()
    await wait_until(lambda: calls == [1, 2])
    await asyncio.sleep(0.01)

    assert not channel._runner.done()
    assert channel.store.ids() == [2, 1]
    await channel.stop()


async def test_pong_keeps_connection_and_bad_messages_are_ignored():
    socket = FakeSocket(messages=["not json", json.dumps([1, 2]), json.dumps({"type": "pong", "timestamp": 1})])
    channel = make_channel(FakeTransport(socket), RecordingSleep(limit=1))

    await channel.start()
    await wait_until(lambda: socket._queue.empty() and channel.state == ChannelState.CONNECTED)
    await channel.stop()

    assert channel.store.items == []


# --- Heartbeat и выход ---

async def test_failed_heartbeat_reconnects_immediately():
    broken = FakeSocket(fail_send=True)
    healthy = FakeSocket()
    transport = FakeTransport(broken, healthy)
    sleep = RecordingSleep(limit=1)
    channel = make_channel(transport, sleep, heartbeat_interval=0.01)

    await channel.start()
    await wait_until(lambda: len(transport.urls) == 2 and channel.state == ChannelState.CONNECTED)
    await channel.stop()

    assert broken.closed_with == (4001, "heartbeat failed")
    assert sleep.delays == []


async def test_missing_pong_closes_channel():
    silent = FakeSocket()
    transport = FakeTransport(silent)
    channel = make_channel(transport, RecordingSleep(limit=1), heartbeat_interval=0.01, heartbeat_timeout=0.001)

    await channel.start()
    await wait_until(lambda: silent.closed_with is not None)
    await channel.stop()

    assert silent.closed_with == (4001, "heartbeat timeout")


async def test_stop_closes_with_logout_code_and_never_reconnects():
    socket = FakeSocket()
    transport = FakeTransport(socket, FakeSocket())
    states = []
    channel = make_channel(transport, RecordingSleep(limit=1))
    channel.on_state_change(states.append)

    await channel.start()
    await wait_until(lambda: channel.state == ChannelState.CONNECTED)
    await channel.stop()
    await asyncio.sleep(0.01)

    assert socket.closed_with == (1000, "user logout")
    assert len(transport.urls) == 1
    assert states == [ChannelState.CONNECTING, ChannelState.CONNECTED, ChannelState.DISCONNECTED]


async def test_server_logout_close_ends_the_loop():
    socket = FakeSocket()
    socket.server_close(1000, "user logout")
    transport = FakeTransport(socket, FakeSocket())
    sleep = RecordingSleep(limit=1)
    channel = make_channel(transport, sleep)

    await channel.start()
    await wait_until(lambda: channel.state == ChannelState.DISCONNECTED and len(transport.urls) == 1)
    await asyncio.sleep(0.01)

    assert len(transport.urls) == 1
    assert sleep.delays == []
    await channel.stop()


# --- Кеш ---

def test_store_dedupes_pushes_and_tracks_unread():
    store = NotificationStore()

    assert store.add_pushed({"id": 1, "read": False}) is True
    assert store.add_pushed({"id": 1, "read": False}) is False
    store.add_pushed({"id": 2, "read": True})
    store.mark_read(1)
    store.mark_read(1)

    assert store.ids() == [2, 1]
    assert store.unread_count == 0


def test_store_replace_all_drops_duplicates_and_counts_unread():
    store = NotificationStore()
    calls = []
    unsubscribe = store.subscribe(lambda s: calls.append(len(s.items)))

    store.replace_all([{"id": 3, "read": False}, {"id": 3, "read": False}, {"id": 2, "read": True}])
    unsubscribe()
    store.remove(3)

    assert store.ids() == [2]
    assert store.unread_count == 0
    assert calls == [2]


def test_store_mark_all_read_and_clear():
    store = NotificationStore()
    store.replace_all([{"id": 1, "read": False}, {"id": 2, "read": False}])
    store.set_unread_count(5)

    store.mark_all_read()
    assert store.unread_count == 0
    assert all(item["read"] for item in store.items)

    store.clear()
    assert store.items == []


def test_store_drops_push_without_id():
    store = NotificationStore()

    assert store.add_pushed({"title": "no id", "read": False}) is False
    assert store.items == []
    assert store.unread_count == 0
