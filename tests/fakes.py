"""
In-memory stand-ins for the websocket server, the realtime SDK and the backend query service.
"""
from __future__ import annotations

import asyncio
import json

from realtime.types import RealtimeSubscribeStates

from gridsync.errors import FetchFailure
from gridsync.models import BET_TABLE

_CLOSE = object()

T0 = 1_700_000_000  # 2023-11-14 22:13:20 UTC


class FakeSocket:
    """Async-iterable connection; ending the iteration means the peer closed it."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, raw: str) -> None:
        if self.closed:
            raise OSError("socket is closed")
        self.sent.append(json.loads(raw))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLOSE)

    def feed(self, message: dict | str) -> None:
        self._inbox.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def fail(self, exc: BaseException) -> None:
        self._inbox.put_nowait(exc)

    def drop(self) -> None:
        """Server-side close."""
        self.closed = True
        self._inbox.put_nowait(_CLOSE)

    def sent_types(self) -> list[str]:
        return [m.get("type") or m.get("event") for m in self.sent]

    def __aiter__(self) -> FakeSocket:
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeServer:
    """A connect_fn that hands out FakeSockets; handshakes can be made to fail."""

    def __init__(self, fail: bool = False, succeed_times: int | None = None) -> None:
        self.fail = fail
        self.succeed_times = succeed_times
        self.attempts = 0
        self.sockets: list[FakeSocket] = []
        self.kwargs: list[dict] = []

    async def connect(self, url: str, **kwargs) -> FakeSocket:
        self.attempts += 1
        self.kwargs.append(kwargs)
        if self.fail or (self.succeed_times is not None and len(self.sockets) >= self.succeed_times):
            raise OSError(f"connection to {url} refused")
        ws = FakeSocket()
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeSocket:
        return self.sockets[-1]


class FakeRealtimeChannel:
    """Stand-in for the SDK channel: records listeners and replays payloads into them."""

    def __init__(self, topic: str, initial_state: RealtimeSubscribeStates = RealtimeSubscribeStates.SUBSCRIBED) -> None:
        self.topic = topic
        self.initial_state = initial_state
        self.listeners: list[dict] = []
        self.state_callback = None
        self.unsubscribed = False

    def on_postgres_changes(self, event, callback, table="*", schema="public", filter=None):
        self.listeners.append({"event": event, "table": table, "schema": schema, "filter": filter, "callback": callback})
        return self

    async def subscribe(self, callback=None):
        self.state_callback = callback
        if callback is not None:
            callback(self.initial_state, None)
        return self

    async def unsubscribe(self) -> None:
        self.unsubscribed = True
        if self.state_callback is not None:
            self.state_callback(RealtimeSubscribeStates.CLOSED, None)

    def set_state(self, state: RealtimeSubscribeStates, error: Exception | None = None) -> None:
        self.state_callback(state, error)

    def emit(self, table: str, record: dict, change_type: str = "INSERT", old: dict | None = None) -> None:
        payload = {
            "data": {
                "table": table,
                "type": change_type,
                "record": record,
                "old_record": old or {},
                "commit_timestamp": "2023-11-14T22:13:20Z",
            },
            "ids": [1],
        }
        for listener in self.listeners:
            if listener["table"] == table and listener["event"] in ("*", change_type):
                listener["callback"](payload)


class _FakeRealtime:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakeRealtimeClient:
    """Stand-in for the async Supabase client returned by acreate_client."""

    def __init__(self, initial_state: RealtimeSubscribeStates = RealtimeSubscribeStates.SUBSCRIBED) -> None:
        self.initial_state = initial_state
        self.channels: list[FakeRealtimeChannel] = []
        self.realtime = _FakeRealtime()

    def channel(self, topic: str) -> FakeRealtimeChannel:
        channel = FakeRealtimeChannel(topic, self.initial_state)
        self.channels.append(channel)
        return channel

    @property
    def latest(self) -> FakeRealtimeChannel:
        return self.channels[-1]


class FakeQueries:
    """QueryService double serving rows from memory."""

    def __init__(self, bets=(), settlements=(), payouts=()) -> None:
        self.bets: list[dict] = list(bets)
        self.settlements: list[dict] = list(settlements)
        self.payouts: list[dict] = list(payouts)
        self.fail_bets = False
        self.bet_calls: list[tuple] = []
        self.lookup_calls: list[tuple] = []

    async def fetch_bets(self, offset: int, limit: int, user_address: str = "") -> list[dict]:
        self.bet_calls.append((offset, limit, user_address))
        if self.fail_bets:
            raise FetchFailure("backend unavailable")
        rows = [r for r in self.bets if not user_address or r["user_address"].lower() == user_address]
        return rows[offset:offset + limit]

    async def fetch_bet(self, event_id: str) -> dict | None:
        return next((r for r in self.bets if r["event_id"] == event_id), None)

    async def fetch_settlements(self, timeperiod_ids: list[int]) -> list[dict]:
        self.lookup_calls.append(("settlements", list(timeperiod_ids)))
        return [r for r in self.settlements if r["timeperiod_id"] in timeperiod_ids]

    async def fetch_payouts(self, grid_ids: list[str]) -> list[dict]:
        self.lookup_calls.append(("payouts", list(grid_ids)))
        return [r for r in self.payouts if r["grid_id"] in grid_ids]


def make_bet_row(
    event_id: str,
    *,
    timeperiod_id: int = T0,
    price_min: int = 3_900_000_000,
    price_max: int = 3_920_000_000,
    amount: int = 1_000_000,
    user_address: str = "0xabc",
    created_at: float = float(T0),
    **extra,
) -> dict:
    row = {
        "event_id": event_id,
        "user_address": user_address,
        "timeperiod_id": timeperiod_id,
        "price_min": price_min,
        "price_max": price_max,
        "amount": amount,
        "shares_received": amount,
        "created_at": created_at,
    }
    row.update(extra)
    return row


def bet_event(row: dict, event_type: str = "INSERT", table: str = BET_TABLE) -> dict:
    key = "old" if event_type == "DELETE" else "new"
    return {"type": "bet_placed", "eventType": event_type, "table": table, key: row, "timestamp": T0}


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
