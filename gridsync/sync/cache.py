"""
Reconciliation Cache — the single merged, paginated view of positions.

The cache owns the pages and the pending overlays; every write goes through a
pure function in gridsync.sync.merge. Producers never touch the cache
directly: they submit ops to a MergeQueue, whose one consumer applies them in
arrival order.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Union

from gridsync.models import GridKey, Position, TradeIntent
from gridsync.sync import merge
from gridsync.sync.formatter import DEFAULT_PLACEHOLDER_MULTIPLIER, format_intent

log = logging.getLogger(__name__)


class ReconciliationCache:
    def __init__(
        self,
        batch_size: int = 50,
        *,
        proximity_window: float = 1.0,
        user_address: str = "",
        placeholder_multiplier: float = DEFAULT_PLACEHOLDER_MULTIPLIER,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.batch_size = batch_size
        self.proximity_window = proximity_window
        self.user_address = user_address
        self.placeholder_multiplier = placeholder_multiplier

        self._pages: merge.Pages = ()
        self._next_cursor: int | None = 0
        self._pending_by_grid: dict[GridKey, dict] = {}
        self._pending_by_timeperiod: dict[int, dict] = {}
        self._scaffold_ids: set[str] = set()
        self.version = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def pages(self) -> merge.Pages:
        return self._pages

    @property
    def positions(self) -> list[Position]:
        return merge.flatten(self._pages)

    @property
    def next_cursor(self) -> int | None:
        """Cursor of the next page to fetch, or None once the end was reached."""
        return self._next_cursor

    @property
    def has_more(self) -> bool:
        return self._next_cursor is not None

    @property
    def is_scaffold(self) -> bool:
        return bool(self._scaffold_ids)

    def get(self, position_id: str) -> Position | None:
        for position in merge.flatten(self._pages):
            if position.id == position_id:
                return position
        return None

    def __len__(self) -> int:
        return sum(len(page) for page in self._pages)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _commit(self, pages: merge.Pages) -> None:
        if pages != self._pages:
            self._pages = pages
            self.version += 1

    def _with_pending(self, position: Position) -> Position:
        fields = self._pending_by_timeperiod.get(position.timeperiod_id)
        if fields:
            position = merge.apply_overlay(position, fields)
        fields = self._pending_by_grid.get(position.grid_key)
        if fields:
            position = merge.apply_overlay(position, fields)
        return position

    def _merged(self, incoming: Position) -> Position:
        self._commit(
            merge.upsert(
                self._pages,
                self._with_pending(incoming),
                batch_size=self.batch_size,
                window=self.proximity_window,
            )
        )
        self._scaffold_ids.discard(incoming.id)
        where = merge.find_match(self._pages, incoming, self.proximity_window)
        if where is None:
            return incoming
        return self._pages[where[0]][where[1]]

    def upsert(self, position: Position) -> Position:
        """Merge an authoritative (or re-rendered) position. Returns the stored result."""
        return self._merged(position)

    def insert_optimistic(self, intent: TradeIntent | Position) -> Position:
        """Render a locally placed trade instantly. Absorbed if already confirmed."""
        if isinstance(intent, TradeIntent):
            position = format_intent(intent, self.user_address, self.placeholder_multiplier)
        else:
            position = intent
        if not position.is_optimistic:
            raise ValueError(f"{position.id!r} is not an optimistic position id")
        return self._merged(position)

    def remove(self, position_id: str) -> bool:
        before = self._pages
        self._commit(merge.remove(self._pages, position_id))
        self._scaffold_ids.discard(position_id)
        return self._pages != before

    def overlay_field(self, grid_key: GridKey, **fields) -> int:
        """Overlay *fields* on every position of *grid_key*; remembered for later arrivals."""
        self._pending_by_grid[grid_key] = {**self._pending_by_grid.get(grid_key, {}), **fields}
        return self._overlay(lambda p: p.grid_key == grid_key, fields)

    def overlay_timeperiod(self, timeperiod_id: int, **fields) -> int:
        """Overlay *fields* on every position in *timeperiod_id*; remembered for later arrivals."""
        timeperiod_id = int(timeperiod_id)
        self._pending_by_timeperiod[timeperiod_id] = {
            **self._pending_by_timeperiod.get(timeperiod_id, {}),
            **fields,
        }
        return self._overlay(lambda p: p.timeperiod_id == timeperiod_id, fields)

    def _overlay(self, predicate, fields: dict) -> int:
        before = self.positions
        self._commit(merge.overlay(self._pages, predicate, fields))
        return sum(1 for old, new in zip(before, self.positions) if old is not new)

    def apply_page(self, index: int, positions: list[Position], next_cursor: int | None) -> None:
        """
        Merge a fetched page at *index* and record where paging continues.

        The first load of page 0 after a snapshot paint replaces the scaffold
        entries, keeping anything a live event has touched since.
        """
        if index == 0 and self._scaffold_ids:
            scaffold = self._scaffold_ids
            self._pages = tuple(tuple(p for p in page if p.id not in scaffold) for page in self._pages)
            self._scaffold_ids = set()
        if index > len(self._pages):
            log.warning("Page %d arrived before page %d; appending it as the next page.", index, len(self._pages))

        incoming = [self._with_pending(p) for p in positions]
        self._commit(
            merge.load_page(
                self._pages,
                index,
                incoming,
                batch_size=self.batch_size,
                window=self.proximity_window,
            )
        )
        if index + 1 >= len(self._pages) or next_cursor is None:
            self._next_cursor = next_cursor
        self.version += 1

    def paint_snapshot(self, positions: list[Position]) -> None:
        """Show persisted positions as placeholder content until page 0 loads."""
        page = tuple(positions[: self.batch_size])
        if not page:
            return
        self._pages = (page,) + self._pages[1:]
        self._scaffold_ids = {p.id for p in page}
        self.version += 1

    def reset(self) -> None:
        """Forget every page and pending overlay; paging restarts at cursor 0."""
        self._pages = ()
        self._next_cursor = 0
        self._pending_by_grid.clear()
        self._pending_by_timeperiod.clear()
        self._scaffold_ids = set()
        self.version += 1

    def apply(self, op: CacheOp) -> None:
        if isinstance(op, Upsert):
            self.upsert(op.position)
        elif isinstance(op, InsertOptimistic):
            self.insert_optimistic(op.position)
        elif isinstance(op, Remove):
            self.remove(op.position_id)
        elif isinstance(op, Overlay):
            if op.grid_key is not None:
                self.overlay_field(op.grid_key, **op.fields)
            elif op.timeperiod_id is not None:
                self.overlay_timeperiod(op.timeperiod_id, **op.fields)
            else:
                raise ValueError("Overlay needs a grid_key or a timeperiod_id")
        elif isinstance(op, LoadPage):
            self.apply_page(op.index, op.positions, op.next_cursor)
        else:
            raise TypeError(f"Unknown cache op {type(op).__name__}")


# ---------------------------------------------------------------------------
# Ops
# ---------------------------------------------------------------------------

@dataclass
class Upsert:
    position: Position


@dataclass
class InsertOptimistic:
    position: Position


@dataclass
class Remove:
    position_id: str


@dataclass
class Overlay:
    fields: dict
    grid_key: GridKey | None = None
    timeperiod_id: int | None = None


@dataclass
class LoadPage:
    index: int
    positions: list[Position] = field(default_factory=list)
    next_cursor: int | None = None


CacheOp = Union[Upsert, InsertOptimistic, Remove, Overlay, LoadPage]


class MergeQueue:
    """
    Serialises every cache write behind one consumer task.

    Both channels and the batch loader are producers; a failing op is logged
    and skipped, leaving the cache as it was.
    """

    def __init__(self, cache: ReconciliationCache) -> None:
        self.cache = cache
        self._queue: asyncio.Queue[CacheOp] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._consume(), name="gridsync-merge")

    def submit(self, op: CacheOp) -> None:
        self._queue.put_nowait(op)

    async def drain(self) -> None:
        """Wait until every op submitted so far has been applied."""
        await self._queue.join()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _consume(self) -> None:
        while True:
            op = await self._queue.get()
            try:
                self.cache.apply(op)
            except Exception as exc:
                log.error("Failed to apply %s: %s", type(op).__name__, exc, exc_info=True)
            finally:
                self._queue.task_done()
