"""
Position Sync Engine — keeps one merged, paginated list of positions current.

Producers:
  - the primary transport and (once activated) the fallback channel deliver
    RecordChanges;
  - the batch loader delivers historical pages;
  - place_intent() delivers optimistic renders of local trades.

All of them submit ops to one MergeQueue; the cache is never written anywhere
else. Formatter lookups run in background tasks and their results are merged
whenever they land, so a late result is harmless.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Coroutine, Iterable

from gridsync.config import AppConfig
from gridsync.errors import ConnectFailure, FetchFailure, FormatFailure, SyncError
from gridsync.models import (
    BET_TABLE,
    PAYOUT_TABLE,
    SETTLEMENT_TABLE,
    BetRecord,
    Position,
    RecordChange,
    SubscriptionFilter,
    TradeIntent,
)
from gridsync.sync.batch_loader import BatchFilter, BatchLoader
from gridsync.sync.cache import InsertOptimistic, LoadPage, MergeQueue, Overlay, ReconciliationCache, Remove, Upsert
from gridsync.sync.fallback import FallbackChannel
from gridsync.sync.formatter import (
    DEFAULT_PLACEHOLDER_MULTIPLIER,
    format_intent,
    format_pending,
    format_records,
    is_incomplete,
    parse_bet_row,
    parse_settlement_row,
)
from gridsync.sync.query_service import QueryService
from gridsync.sync.registry import TransportRegistry
from gridsync.sync.snapshot_store import SnapshotStore
from gridsync.sync.transport import TransportClient
from gridsync.utils.format import format_raw_price
from gridsync.utils.storage import JsonFileStorage

log = logging.getLogger(__name__)


class PositionSyncEngine:
    def __init__(
        self,
        transport: TransportClient,
        queries: QueryService,
        *,
        fallback: FallbackChannel | None = None,
        snapshots: SnapshotStore | None = None,
        subscription: SubscriptionFilter | None = None,
        user_address: str = "",
        batch_size: int = 50,
        proximity_window: float = 1.0,
        placeholder_multiplier: float = DEFAULT_PLACEHOLDER_MULTIPLIER,
        settlement_grace_seconds: float = 10.0,
    ) -> None:
        self.transport = transport
        self.queries = queries
        self.fallback = fallback
        self.snapshots = snapshots
        self.subscription = subscription or SubscriptionFilter()
        self.user_address = user_address.lower()
        self.placeholder_multiplier = placeholder_multiplier
        self.settlement_grace_seconds = settlement_grace_seconds

        self.cache = ReconciliationCache(
            batch_size,
            proximity_window=proximity_window,
            user_address=self.user_address,
            placeholder_multiplier=placeholder_multiplier,
        )
        self.queue = MergeQueue(self.cache)
        self.loader = BatchLoader(queries, batch_size, placeholder_multiplier)

        self.last_error: str | None = None
        self._records: dict[str, BetRecord] = {}
        self._page_errors: dict[int, str] = {}
        self._loading = False
        self._fetch_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._detach: list = []
        self._connect_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def positions(self) -> list[Position]:
        return self.cache.positions

    @property
    def pages(self) -> tuple[tuple[Position, ...], ...]:
        return self.cache.pages

    @property
    def is_live(self) -> bool:
        if self.transport.is_connected:
            return True
        return self.fallback is not None and self.fallback.connected

    @property
    def fallback_active(self) -> bool:
        return self.fallback is not None and self.fallback.active

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def page_errors(self) -> dict[int, str]:
        return dict(self._page_errors)

    @property
    def has_more(self) -> bool:
        return self.cache.has_more

    def summary(self) -> dict[str, Any]:
        positions = self.positions
        return {
            "positions": len(positions),
            "pages": len(self.cache.pages),
            "waiting": sum(1 for p in positions if not p.is_resolved),
            "won": sum(1 for p in positions if p.settlement.status == "win"),
            "lost": sum(1 for p in positions if p.settlement.status == "loss"),
            "optimistic": sum(1 for p in positions if p.is_optimistic),
            "live": self.is_live,
            "fallback": self.fallback_active,
            "has_more": self.has_more,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Paint any snapshot, go live, and load page 0."""
        self.queue.start()

        if self.snapshots is not None:
            snapshot = self.snapshots.load()
            if snapshot is not None and snapshot.data:
                self.cache.paint_snapshot(snapshot.data)
                log.info(
                    "Painted %d position(s) from a %s snapshot (%.1fs old)",
                    len(snapshot.data), "fresh" if snapshot.is_fresh else "stale", snapshot.age_ms / 1000,
                )

        self._detach.append(self.transport.on_event(self._on_change))
        self._detach.append(self.transport.on_error(self._on_channel_error))
        if self.fallback is not None:
            self._detach.append(self.fallback.on_change(self._on_change))
            self._detach.append(self.fallback.on_error(self._on_channel_error))

        self._connect_task = asyncio.create_task(self._connect_primary(), name="primary-connect")
        self._connect_task.add_done_callback(self._connect_done)
        if self.fallback is not None:
            self.fallback.watch(self.transport, self._connect_task)

        await self.fetch_next_page()

    async def stop(self) -> None:
        for detach in self._detach:
            detach()
        self._detach.clear()

        for task in list(self._tasks) + [self._connect_task]:
            if task is not None and not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self.fallback is not None:
            await self.fallback.stop()
        self.transport.disconnect()

        if self.queue.running:
            await self.queue.drain()
        await self.queue.stop()
        self._save_snapshot()
        log.info("Sync engine stopped with %d position(s)", len(self.cache))

    async def wait_idle(self) -> None:
        """Wait for every background render task and queued op to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.queue.drain()

    async def _connect_primary(self) -> None:
        await self.transport.connect()
        await self.transport.subscribe(self.subscription)
        log.info("Primary transport live at %s", self.transport.url)

    def _connect_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.last_error = str(exc)
            if isinstance(exc, ConnectFailure):
                log.error("Primary transport unavailable: %s", exc)
            else:
                log.error("Primary transport setup failed: %s", exc, exc_info=exc)

    def _on_channel_error(self, error: SyncError) -> None:
        self.last_error = str(error)
        log.warning("Channel error: %s", error)

    # ------------------------------------------------------------------
    # Paging
    # ------------------------------------------------------------------

    async def fetch_next_page(self) -> bool:
        """Load the next page. Returns False when there is nothing more to load or the fetch failed."""
        async with self._fetch_lock:
            cursor = self.cache.next_cursor
            if cursor is None:
                log.debug("All pages loaded; not fetching.")
                return False
            return await self._load_page(cursor)

    async def refresh(self) -> bool:
        """Re-fetch page 0 and merge it into the current view."""
        async with self._fetch_lock:
            return await self._load_page(0)

    async def _load_page(self, cursor: int) -> bool:
        self._loading = True
        try:
            result = await self.loader.fetch_batch(cursor, BatchFilter(self.user_address))
        except FetchFailure as exc:
            self._page_errors[cursor] = str(exc)
            self.last_error = str(exc)
            log.error("Failed to load page %d: %s", cursor, exc)
            return False
        finally:
            self._loading = False

        self._page_errors.pop(cursor, None)
        self._remember(result.records)
        self.queue.submit(LoadPage(cursor, result.positions, result.next_cursor))
        await self.queue.drain()
        if cursor == 0:
            self._save_snapshot()
        return True

    def _save_snapshot(self) -> None:
        if self.snapshots is None or not self.cache.pages or self.cache.is_scaffold:
            return
        self.snapshots.save([p for p in self.cache.pages[0] if not p.is_optimistic])

    # ------------------------------------------------------------------
    # Local trades
    # ------------------------------------------------------------------

    def place_intent(self, intent: TradeIntent) -> Position:
        """
        Record a successfully placed local trade; its optimistic render is returned.

        On the global feed the intent must carry the placing address, otherwise
        ValueError is raised.
        """
        position = format_intent(intent, self.user_address, self.placeholder_multiplier)
        self.queue.submit(InsertOptimistic(position))
        log.info("Optimistic position %s for %s", position.id, position.price_range)
        return position

    # ------------------------------------------------------------------
    # Live changes
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Background task %s failed: %s", task.get_name(), task.exception(), exc_info=task.exception())

    def _on_change(self, change: RecordChange) -> None:
        self._spawn(self._handle_change(change), name=f"change:{change.table}:{change.event_type}")

    async def _handle_change(self, change: RecordChange) -> None:
        if change.table == BET_TABLE:
            await self._handle_bet(change)
        elif change.table == SETTLEMENT_TABLE:
            self._handle_settlement(change)
        elif change.table == PAYOUT_TABLE:
            await self._handle_payout(change)
        else:
            log.debug("Ignoring change on table %s", change.table)

    def _owns(self, row: dict) -> bool:
        if not self.user_address:
            return True
        return str(row.get("user_address") or "").lower() == self.user_address

    def _remember(self, records: Iterable[BetRecord]) -> None:
        for record in records:
            if not self.user_address or record.user_address.lower() == self.user_address:
                self._records[record.event_id] = record

    async def _handle_bet(self, change: RecordChange) -> None:
        if change.event_type == "DELETE":
            event_id = (change.old or {}).get("event_id")
            if event_id is not None:
                self._records.pop(str(event_id), None)
                self.queue.submit(Remove(str(event_id)))
            return

        row = change.new or {}
        event_id = row.get("event_id")
        if event_id is None:
            log.warning("[%s] %s without event_id; skipping", change.source, change.event_type)
            return
        if row.get("user_address") and not self._owns(row):
            return

        if is_incomplete(row):
            try:
                full = await self.queries.fetch_bet(str(event_id))
            except FetchFailure as exc:
                self.last_error = str(exc)
                log.warning("[%s] Could not hydrate %s: %s", change.source, event_id, exc)
                return
            if full is None:
                log.warning("[%s] No stored row for %s yet; skipping", change.source, event_id)
                return
            row = {**full, **{k: v for k, v in row.items() if v is not None}}
            if not self._owns(row):
                return

        try:
            record = parse_bet_row(row)
        except FormatFailure as exc:
            log.warning("[%s] %s", change.source, exc)
            return

        self._records[record.event_id] = record
        self.queue.submit(Upsert(format_pending(record, self.placeholder_multiplier)))
        await self._rederive([record])

    def _handle_settlement(self, change: RecordChange) -> None:
        if change.event_type == "DELETE":
            return
        try:
            settlement = parse_settlement_row(change.new or {})
        except FormatFailure as exc:
            log.warning("[%s] %s", change.source, exc)
            return
        price = format_raw_price(settlement.twap_price)
        log.info("[%s] Timeperiod %d settled at %s", change.source, settlement.timeperiod_id, price)
        self.queue.submit(Overlay({"settlement_price": price}, timeperiod_id=settlement.timeperiod_id))
        self._spawn(
            self._rederive_timeperiod_later(settlement.timeperiod_id),
            name=f"settle:{settlement.timeperiod_id}",
        )

    async def _rederive_timeperiod_later(self, timeperiod_id: int) -> None:
        # Payout rows land some time after the settlement row
        await asyncio.sleep(self.settlement_grace_seconds)
        await self._rederive(r for r in self._records.values() if r.grid_key.timeperiod_id == timeperiod_id)

    async def _handle_payout(self, change: RecordChange) -> None:
        grid_id = (change.new or {}).get("grid_id")
        if not grid_id:
            return
        log.info("[%s] Payout recorded for grid %s", change.source, grid_id)
        await self._rederive(r for r in self._records.values() if r.grid_id == str(grid_id))

    async def _rederive(self, records: Iterable[BetRecord]) -> None:
        records = list(records)
        if not records:
            return
        positions = await format_records(records, self.queries, placeholder_multiplier=self.placeholder_multiplier)
        for position in positions:
            self.queue.submit(Upsert(position))


def build_engine(
    config: AppConfig,
    registry: TransportRegistry,
    *,
    storage: Any = None,
) -> PositionSyncEngine:
    """Wire an engine from loaded configuration."""
    sync = config.sync
    transport = registry.get(
        config.ws_url,
        reconnect_interval=sync.reconnect_interval_seconds,
        max_reconnect_attempts=sync.max_reconnect_attempts,
        heartbeat_interval=sync.heartbeat_interval_seconds,
        heartbeat_timeout=sync.heartbeat_timeout_seconds,
    )
    fallback = FallbackChannel(
        config.supabase_url,
        config.supabase_anon_key,
        user_address=config.user_address,
        fallback_timeout=sync.fallback_timeout_seconds,
        reconnect_interval=sync.reconnect_interval_seconds,
    )
    snapshots = SnapshotStore(
        storage if storage is not None else JsonFileStorage(config.snapshot_path),
        config.user_address,
        expiry_seconds=sync.snapshot_expiry_seconds,
    )
    return PositionSyncEngine(
        transport,
        QueryService(config.supabase_url, config.supabase_anon_key),
        fallback=fallback,
        snapshots=snapshots,
        subscription=subscription_from_config(config),
        user_address=config.user_address,
        batch_size=sync.batch_size,
        proximity_window=sync.proximity_window_seconds,
        placeholder_multiplier=sync.placeholder_multiplier,
        settlement_grace_seconds=sync.settlement_grace_seconds,
    )


def subscription_from_config(config: AppConfig, now: float | None = None) -> SubscriptionFilter:
    """Subscription filter around the current time, per the configured window."""
    sub = config.subscription
    now = int(now if now is not None else time.time())
    return SubscriptionFilter(
        tables=list(sub.tables),
        events=list(sub.events),
        timeperiod_start=now - sub.time_window_seconds if sub.time_window_seconds else None,
        timeperiod_end=now + sub.time_window_seconds if sub.time_window_seconds else None,
        price_min=sub.price_min,
        price_max=sub.price_max,
    )
