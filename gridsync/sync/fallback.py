"""
Fallback Channel — a second push subscription over Supabase Realtime.

It stays dormant until the primary transport proves unusable: its connect()
has not resolved within the activation timeout, it failed, or it reported an
error. Once activated the channel stays on for the rest of the session. The
SDK rejoins a timed-out or errored channel by itself; a closed channel or a
failed setup is rebuilt here with a fresh client and capped backoff.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from realtime.types import RealtimeSubscribeStates
from supabase import AsyncClient, acreate_client

from gridsync.errors import ChannelError
from gridsync.models import BET_TABLE, PAYOUT_TABLE, SETTLEMENT_TABLE, RecordChange
from gridsync.sync.transport import MAX_RECONNECT_DELAY, TransportClient

log = logging.getLogger(__name__)

CHANNEL_TOPIC = "gridsync-positions"
UNSUBSCRIBE_TIMEOUT = 5.0

ChangeHandler = Callable[[RecordChange], Any]
ErrorHandler = Callable[[ChannelError], Any]


def parse_change(payload: dict) -> RecordChange | None:
    """Turn a postgres-changes callback payload into a RecordChange; None when it is not one."""
    data = payload.get("data") or {}
    table = data.get("table")
    event_type = str(data.get("type") or data.get("eventType") or "").upper()
    if not table or event_type not in ("INSERT", "UPDATE", "DELETE"):
        return None
    return RecordChange(
        table=table,
        event_type=event_type,
        new=data.get("record") or None,
        old=data.get("old_record") or None,
        timestamp=data.get("commit_timestamp"),
        source="fallback",
    )


class FallbackChannel:
    def __init__(
        self,
        supabase_url: str,
        anon_key: str,
        *,
        user_address: str = "",
        fallback_timeout: float = 5.0,
        reconnect_interval: float = 1.0,
    ) -> None:
        self.supabase_url = supabase_url
        self.anon_key = anon_key
        self.user_address = user_address
        self.fallback_timeout = fallback_timeout
        self.reconnect_interval = reconnect_interval

        self._active = False
        self.reason: str | None = None
        self.connected = False
        self.last_error: str | None = None
        self._client: AsyncClient | None = None
        self._channel: Any = None
        self._closed = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._guard: asyncio.Task | None = None
        self._detach_primary: Callable[[], None] | None = None
        self._handlers: list[ChangeHandler] = []
        self._error_handlers: list[ErrorHandler] = []

    @property
    def active(self) -> bool:
        return self._active

    @staticmethod
    def _attach(handlers: list, handler: Callable) -> Callable[[], None]:
        handlers.append(handler)

        def detach() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return detach

    def on_change(self, handler: ChangeHandler) -> Callable[[], None]:
        return self._attach(self._handlers, handler)

    def on_error(self, handler: ErrorHandler) -> Callable[[], None]:
        return self._attach(self._error_handlers, handler)

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def watch(self, primary: TransportClient, connect_task: asyncio.Future) -> None:
        """Activate if *connect_task* misses the timeout or fails, or the primary reports an error."""
        self._detach_primary = primary.on_error(lambda err: self.activate(f"primary error: {err}"))
        self._guard = asyncio.create_task(self._guard_primary(connect_task), name="fallback-guard")

    async def _guard_primary(self, connect_task: asyncio.Future) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(connect_task), self.fallback_timeout)
        except asyncio.TimeoutError:
            self.activate(f"primary did not connect within {self.fallback_timeout:.1f}s")
        except Exception as exc:
            self.activate(f"primary connect failed: {exc}")

    def activate(self, reason: str) -> bool:
        """Start the channel. Returns False when it was already active."""
        if self._active:
            return False
        self._active = True
        self.reason = reason
        log.warning("[fallback] Activating: %s", reason)
        self._task = asyncio.create_task(self._run(), name="fallback-channel")
        return True

    async def stop(self) -> None:
        if self._detach_primary is not None:
            self._detach_primary()
            self._detach_primary = None
        for task in (self._guard, self._task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        await self._teardown()

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        attempt = 0
        while True:
            self._closed.clear()
            try:
                await self._subscribe()
            except Exception as exc:
                log.warning("[fallback] Subscription setup failed: %s", exc)
                self._fail(f"Fallback subscription setup failed: {exc}")
            else:
                await self._closed.wait()
                attempt = 0
            await self._teardown()
            attempt += 1
            delay = min(self.reconnect_interval * 2 ** (attempt - 1), MAX_RECONNECT_DELAY)
            log.info("[fallback] Resubscribing in %.1fs", delay)
            await asyncio.sleep(delay)

    async def _subscribe(self) -> None:
        self._client = await acreate_client(self.supabase_url, self.anon_key)
        self._channel = self._client.channel(CHANNEL_TOPIC)

        bets_filter = f"user_address=eq.{self.user_address}" if self.user_address else None
        self._channel.on_postgres_changes(
            event="*", schema="public", table=BET_TABLE, filter=bets_filter, callback=self._handle,
        )
        self._channel.on_postgres_changes(
            event="*", schema="public", table=SETTLEMENT_TABLE, callback=self._handle,
        )
        self._channel.on_postgres_changes(
            event="INSERT", schema="public", table=PAYOUT_TABLE, callback=self._handle,
        )
        await self._channel.subscribe(callback=self._on_state)

    def _on_state(self, state: RealtimeSubscribeStates, error: Exception | None = None) -> None:
        if self._channel is None:
            return
        if state == RealtimeSubscribeStates.SUBSCRIBED:
            self.connected = True
            log.info("[fallback] Subscribed to %s", CHANNEL_TOPIC)
        elif state == RealtimeSubscribeStates.TIMED_OUT:
            self._fail(f"Fallback channel {CHANNEL_TOPIC} timed out")
        elif state == RealtimeSubscribeStates.CHANNEL_ERROR:
            self._fail(f"Fallback channel {CHANNEL_TOPIC} error: {error}")
        elif state == RealtimeSubscribeStates.CLOSED:
            self._fail(f"Fallback channel {CHANNEL_TOPIC} closed")
            self._closed.set()

    def _fail(self, message: str) -> None:
        self.connected = False
        self.last_error = message
        log.warning("[fallback] %s", message)
        error = ChannelError(message)
        for handler in list(self._error_handlers):
            try:
                handler(error)
            except Exception as exc:
                log.error("[fallback] Error handler raised: %s", exc, exc_info=True)

    async def _teardown(self) -> None:
        self.connected = False
        channel, client = self._channel, self._client
        self._channel = self._client = None
        if channel is not None:
            try:
                await asyncio.wait_for(channel.unsubscribe(), UNSUBSCRIBE_TIMEOUT)
            except asyncio.TimeoutError:
                log.warning("[fallback] Unsubscribe timed out")
            except Exception as exc:
                log.warning("[fallback] Unsubscribe failed: %s", exc)
        if client is not None:
            try:
                await client.realtime.close()
            except Exception as exc:
                log.warning("[fallback] Closing realtime client failed: %s", exc)

    def _handle(self, payload: dict) -> None:
        change = parse_change(payload)
        if change is None:
            log.debug("[fallback] Ignoring payload without a row change")
            return
        for handler in list(self._handlers):
            try:
                handler(change)
            except Exception as exc:
                log.error("[fallback] Change handler raised: %s", exc, exc_info=True)
