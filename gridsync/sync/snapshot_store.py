"""
Local Snapshot Store — persists page 0 so a restart can paint something at once.

Snapshots are scoped per owning address and are best-effort: a failed or
corrupt read means no snapshot, a failed write is logged and ignored.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from gridsync.models import GridKey, Position, SettlementView

log = logging.getLogger(__name__)

DEFAULT_EXPIRY_SECONDS = 60.0

_DATA_KEY = "positions_cache_{}"
_TIME_KEY = "positions_cache_time_{}"


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> bool: ...

    def remove(self, key: str) -> bool: ...


@dataclass
class Snapshot:
    data: list[Position]
    age_ms: int
    expiry_ms: int = int(DEFAULT_EXPIRY_SECONDS * 1000)

    @property
    def is_fresh(self) -> bool:
        return self.age_ms < self.expiry_ms


def _position_to_dict(p: Position) -> dict:
    return {
        "id": p.id,
        "user_address": p.user_address,
        "date": p.date,
        "price_range": p.price_range,
        "expiry_time": p.expiry_time,
        "amount": p.amount,
        "payout": p.payout,
        "settlement": {"status": p.settlement.status, "price": p.settlement.price},
        "status": p.status,
        "grid_key": {
            "timeperiod_id": p.grid_key.timeperiod_id,
            "price_min": str(p.grid_key.price_min),
            "price_max": str(p.grid_key.price_max),
        },
        "created_at": p.created_at,
        "block_number": p.block_number,
    }


def _dict_to_position(d: dict) -> Position:
    settlement = d.get("settlement") or {}
    key = d["grid_key"]
    return Position(
        id=str(d["id"]),
        user_address=d.get("user_address", ""),
        date=d.get("date", ""),
        price_range=d.get("price_range", ""),
        expiry_time=d.get("expiry_time", "N/A"),
        amount=d.get("amount", ""),
        payout=d.get("payout", ""),
        settlement=SettlementView(settlement.get("status", "waiting"), settlement.get("price")),
        status=d.get("status", ""),
        grid_key=GridKey(key["timeperiod_id"], key["price_min"], key["price_max"]),
        created_at=float(d.get("created_at", 0)),
        block_number=d.get("block_number"),
    )


class SnapshotStore:
    def __init__(
        self,
        storage: KeyValueStore,
        user_address: str = "",
        expiry_seconds: float = DEFAULT_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        scope = user_address.lower() or "all"
        self.storage = storage
        self.expiry_ms = int(expiry_seconds * 1000)
        self._clock = clock
        self._data_key = _DATA_KEY.format(scope)
        self._time_key = _TIME_KEY.format(scope)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def save(self, page_zero: list[Position]) -> bool:
        """Persist *page_zero* with the current time."""
        payload = json.dumps([_position_to_dict(p) for p in page_zero])
        ok = self.storage.set(self._data_key, payload) and self.storage.set(self._time_key, str(self._now_ms()))
        if ok:
            log.debug("Saved snapshot of %d position(s) under %s", len(page_zero), self._data_key)
        else:
            log.warning("Could not save snapshot under %s", self._data_key)
        return bool(ok)

    def load(self) -> Snapshot | None:
        """
        Return the persisted snapshot, stale or not, or None when absent or unreadable.

        Staleness is reported through Snapshot.is_fresh; deciding what to do
        with a stale one is up to the caller.
        """
        raw_data = self.storage.get(self._data_key)
        raw_time = self.storage.get(self._time_key)
        if raw_data is None or raw_time is None:
            return None
        try:
            saved_at = int(raw_time)
            data = [_dict_to_position(d) for d in json.loads(raw_data)]
        except (ValueError, TypeError, KeyError, ArithmeticError) as exc:
            log.warning("Discarding unreadable snapshot %s: %s", self._data_key, exc)
            return None
        return Snapshot(data=data, age_ms=max(0, self._now_ms() - saved_at), expiry_ms=self.expiry_ms)

    def clear(self) -> None:
        self.storage.remove(self._data_key)
        self.storage.remove(self._time_key)
