"""
Transport Client — the primary push channel for live record changes.

One websocket connection per instance, with:
  - an explicit state machine (idle → connecting → connected, reconnecting on
    unexpected closure, closed once it gives up or is disconnected);
  - exponential reconnect backoff capped at 60 s;
  - a {"type": "ping"} heartbeat and a reply watchdog;
  - the last subscription filter replayed after every reconnect;
  - sends queued while not connected.

Inbound frames are JSON objects with a ``type`` discriminator. ``batch``
frames fan out to batch handlers and then per event; ``bet_placed`` frames go
to event handlers; every other type is only routed to ``on_message`` handlers.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import fields, replace
from enum import Enum
from typing import Any, Callable

import websockets
from websockets.exceptions import ConnectionClosed

from gridsync.errors import ChannelError, ConnectFailure
from gridsync.models import RecordChange, SubscriptionFilter

log = logging.getLogger(__name__)

MAX_RECONNECT_DELAY = 60.0

Handler = Callable[[Any], Any]


class TransportState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class TransportClient:
    def __init__(
        self,
        url: str,
        *,
        reconnect: bool = True,
        reconnect_interval: float = 5.0,
        max_reconnect_attempts: int = 10,
        heartbeat_interval: float = 30.0,
        heartbeat_timeout: float | None = 5.0,
        connect_fn: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.url = url
        self.reconnect = reconnect
        self.reconnect_interval = reconnect_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self._connect_fn = connect_fn

        self._state = TransportState.IDLE
        self._ws: Any = None
        self._task: asyncio.Task | None = None
        self._ready: asyncio.Future | None = None
        self._closing = False
        self._reconnect_attempts = 0
        self._last_inbound = 0.0

        self._filter: SubscriptionFilter | None = None
        self._outbox: list[dict] = []

        self._event_handlers: list[Handler] = []
        self._batch_handlers: list[Handler] = []
        self._error_handlers: list[Handler] = []
        self._message_handlers: dict[str, list[Handler]] = {}
        self._handler_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is TransportState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def subscription(self) -> SubscriptionFilter | None:
        return self._filter

    def _set_state(self, state: TransportState) -> None:
        if state is not self._state:
            log.debug("[%s] %s → %s", self.url, self._state.value, state.value)
            self._state = state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Resolve once connected. Concurrent callers share one attempt.

        Raises ConnectFailure when the handshake fails; faults after that are
        reported through on_error only.
        """
        if self.is_connected:
            return
        if self._closing and self._task is not None and not self._task.done():
            # Let a disconnected run finish before starting a new one
            await asyncio.wait({self._task})
        if self._ready is None or self._ready.done():
            self._ready = asyncio.get_running_loop().create_future()
        if self._task is None or self._task.done():
            self._closing = False
            self._task = asyncio.create_task(self._run(), name=f"transport:{self.url}")
        await asyncio.shield(self._ready)

    def _fail_ready(self, error: ConnectFailure) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)
            # Nobody may be awaiting it; mark the exception as retrieved
            self._ready.exception()

    def disconnect(self) -> None:
        """Close the connection and never reconnect automatically again."""
        self.reconnect = False
        self._closing = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._fail_ready(ConnectFailure(f"Disconnected from {self.url} before connecting"))
        self._drop_outbox("transport disconnected")
        self._set_state(TransportState.CLOSED)

    async def close(self) -> None:
        """disconnect() and wait for the connection task to finish."""
        self.disconnect()
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._handler_tasks:
            await asyncio.gather(*self._handler_tasks, return_exceptions=True)

    def _backoff(self, attempt: int) -> float:
        return min(self.reconnect_interval * 2 ** (attempt - 1), MAX_RECONNECT_DELAY)

    async def _run(self) -> None:
        connected_once = False
        attempt = 0
        try:
            while True:
                if not connected_once:
                    self._set_state(TransportState.CONNECTING)
                try:
                    ws = await self._connect_fn(self.url, ping_interval=None, close_timeout=5)
                except Exception as exc:
                    if not connected_once:
                        log.error("[%s] Handshake failed: %s", self.url, exc)
                        self._fail_ready(ConnectFailure(f"Could not connect to {self.url}: {exc}"))
                        break
                    log.warning("[%s] Reconnect attempt %d failed: %s", self.url, attempt, exc)
                else:
                    connected_once = True
                    attempt = 0
                    self._reconnect_attempts = 0
                    try:
                        await self._session(ws)
                    except Exception as exc:
                        log.error("[%s] Session failed: %s", self.url, exc, exc_info=True)
                        self._emit_error(ChannelError(f"Session on {self.url} failed: {exc}"))

                if self._closing or not self.reconnect:
                    break
                attempt += 1
                if attempt > self.max_reconnect_attempts:
                    log.warning(
                        "[%s] Giving up after %d reconnect attempt(s)", self.url, self.max_reconnect_attempts
                    )
                    break
                self._reconnect_attempts = attempt
                self._set_state(TransportState.RECONNECTING)
                delay = self._backoff(attempt)
                log.info("[%s] Reconnecting in %.1fs (attempt %d/%d)", self.url, delay, attempt, self.max_reconnect_attempts)
                await asyncio.sleep(delay)
        finally:
            self._ws = None
            self._fail_ready(ConnectFailure(f"Gave up connecting to {self.url}"))
            self._drop_outbox("connection closed before opening")
            self._set_state(TransportState.CLOSED)

    async def _session(self, ws: Any) -> None:
        loop = asyncio.get_running_loop()
        self._ws = ws
        self._last_inbound = loop.time()
        self._set_state(TransportState.CONNECTED)
        log.info("[%s] Connected", self.url)

        heartbeat = asyncio.create_task(self._heartbeat_loop(ws), name=f"heartbeat:{self.url}")
        try:
            if self._filter is not None:
                await self._send_now(self._filter.to_message())
            await self._flush_outbox()
            if self._ready is not None and not self._ready.done():
                self._ready.set_result(None)

            async for raw in ws:
                self._last_inbound = loop.time()
                self._dispatch(raw)
            log.info("[%s] Connection closed", self.url)
        except (ConnectionClosed, OSError) as exc:
            if not self._closing:
                log.warning("[%s] Connection lost: %s", self.url, exc)
                self._emit_error(ChannelError(f"Connection to {self.url} lost: {exc}"))
        finally:
            heartbeat.cancel()
            self._ws = None
            await ws.close()

    async def _heartbeat_loop(self, ws: Any) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            sent_at = loop.time()
            try:
                await ws.send(json.dumps({"type": "ping"}))
            except (ConnectionClosed, OSError):
                return
            if self.heartbeat_timeout is None:
                continue
            await asyncio.sleep(self.heartbeat_timeout)
            if self._last_inbound < sent_at:
                log.warning("[%s] No reply within %.1fs of ping; closing", self.url, self.heartbeat_timeout)
                await ws.close()
                return

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send_now(self, message: dict) -> None:
        await self._ws.send(json.dumps(message))

    async def send(self, message: dict) -> None:
        """Send *message*, or queue it until the connection opens."""
        if not self.is_connected or self._ws is None:
            self._outbox.append(message)
            log.debug("[%s] Queued %s while %s", self.url, message.get("type"), self._state.value)
            return
        try:
            await self._send_now(message)
        except (ConnectionClosed, OSError) as exc:
            log.warning("[%s] Send failed, queuing %s: %s", self.url, message.get("type"), exc)
            self._outbox.append(message)

    async def _flush_outbox(self) -> None:
        pending, self._outbox = self._outbox, []
        for message in pending:
            await self._send_now(message)

    def _drop_outbox(self, reason: str) -> None:
        if self._outbox:
            log.error("[%s] Dropping %d queued message(s): %s", self.url, len(self._outbox), reason)
            self._outbox = []

    async def subscribe(self, filter: SubscriptionFilter) -> None:
        """Subscribe with *filter*; it is replayed on every (re)connect."""
        self._filter = filter
        if self.is_connected:
            await self.send(filter.to_message())

    async def unsubscribe(self) -> None:
        self._filter = None
        if self.is_connected:
            await self.send({"type": "unsubscribe"})

    @property
    def queued(self) -> int:
        """Number of messages waiting for the connection to open."""
        return len(self._outbox)

    def update_filters(self, **partial: Any) -> SubscriptionFilter:
        """
        Merge *partial* into the remembered filter without sending anything.

        The new filter takes effect with the next subscribe() or reconnect.
        """
        known = {f.name for f in fields(SubscriptionFilter)}
        unknown = set(partial) - known
        if unknown:
            raise ValueError(f"Unknown filter field(s): {', '.join(sorted(unknown))}")
        self._filter = replace(self._filter or SubscriptionFilter(), **partial)
        return self._filter

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    @staticmethod
    def _attach(handlers: list[Handler], handler: Handler) -> Callable[[], None]:
        handlers.append(handler)

        def detach() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return detach

    def on_event(self, handler: Handler) -> Callable[[], None]:
        return self._attach(self._event_handlers, handler)

    def on_batch(self, handler: Handler) -> Callable[[], None]:
        return self._attach(self._batch_handlers, handler)

    def on_error(self, handler: Handler) -> Callable[[], None]:
        return self._attach(self._error_handlers, handler)

    def on_message(self, message_type: str, handler: Handler) -> Callable[[], None]:
        return self._attach(self._message_handlers.setdefault(message_type, []), handler)

    def _fire(self, handlers: list[Handler], payload: Any) -> None:
        for handler in list(handlers):
            try:
                result = handler(payload)
            except Exception as exc:
                log.error("[%s] Handler %r raised: %s", self.url, handler, exc, exc_info=True)
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("[%s] Async handler raised: %s", self.url, task.exception(), exc_info=task.exception())

    def _emit_error(self, error: ChannelError) -> None:
        self._fire(self._error_handlers, error)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
            if not isinstance(message, dict) or not message.get("type"):
                raise ValueError("frame is not an object with a type")
        except ValueError as exc:
            log.error("[%s] Unparseable frame: %s", self.url, exc)
            self._emit_error(ChannelError(f"Unparseable frame from {self.url}: {exc}"))
            return

        kind = message["type"]
        if kind == "batch":
            changes = [
                RecordChange.from_envelope(e)
                for e in message.get("events") or []
                if isinstance(e, dict) and e.get("type", "bet_placed") == "bet_placed"
            ]
            log.debug("[%s] Batch of %d event(s)", self.url, len(changes))
            self._fire(self._batch_handlers, changes)
            for change in changes:
                self._fire(self._event_handlers, change)
            return

        self._fire(self._message_handlers.get(kind, []), message)
        if kind == "bet_placed":
            self._fire(self._event_handlers, RecordChange.from_envelope(message))
