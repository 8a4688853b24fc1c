"""
Batch Loader — fetches fixed-size pages of historical records, newest first.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from gridsync.models import BetRecord, Position
from gridsync.sync.formatter import DEFAULT_PLACEHOLDER_MULTIPLIER, format_records, parse_rows
from gridsync.sync.query_service import QueryService

log = logging.getLogger(__name__)


@dataclass
class BatchFilter:
    user_address: str = ""      # empty means every address


@dataclass
class BatchResult:
    positions: list[Position]
    next_cursor: int | None     # None once the end of the data set was reached
    records: list[BetRecord] = field(default_factory=list)


class BatchLoader:
    def __init__(
        self,
        queries: QueryService,
        batch_size: int = 50,
        placeholder_multiplier: float = DEFAULT_PLACEHOLDER_MULTIPLIER,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.queries = queries
        self.batch_size = batch_size
        self.placeholder_multiplier = placeholder_multiplier

    async def fetch_batch(self, cursor: int, filter: BatchFilter | None = None) -> BatchResult:
        """
        Fetch page *cursor* (offset ``cursor * batch_size``).

        The end is detected from the raw row count, so records dropped while
        formatting never cut pagination short. Raises FetchFailure on any
        backend fault; there is no retry here.
        """
        filter = filter or BatchFilter()
        rows = await self.queries.fetch_bets(cursor * self.batch_size, self.batch_size, filter.user_address)
        records = parse_rows(rows)
        positions = await format_records(
            records, self.queries, placeholder_multiplier=self.placeholder_multiplier
        )
        next_cursor = cursor + 1 if len(rows) >= self.batch_size else None
        log.info(
            "Loaded page %d: %d row(s), %d position(s)%s",
            cursor, len(rows), len(positions), "" if next_cursor is not None else " (end)",
        )
        return BatchResult(positions=positions, next_cursor=next_cursor, records=records)
