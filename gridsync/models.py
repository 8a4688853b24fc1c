"""
Data models shared across the sync engine.

Raw records keep the backend's integer units (amounts with 6 decimals,
prices with 8 decimals); Positions carry display-ready strings.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal

CENT = Decimal("0.01")
PRICE_SCALE = Decimal(10) ** 8   # prices and TWAPs
AMOUNT_SCALE = Decimal(10) ** 6  # stakes, shares and payouts

STATUS_IN_PROGRESS = "in progress"
STATUS_RESOLVED = "resolved"

OPTIMISTIC_PREFIX = "opt_"

BET_TABLE = "bet_placed_with_session"
SETTLEMENT_TABLE = "timeperiod_settled"
PAYOUT_TABLE = "winnings_claimed_equal"

BetStatus = Literal["pending", "confirmed", "won", "lost"]
SettlementStatus = Literal["waiting", "win", "loss"]
ChangeType = Literal["INSERT", "UPDATE", "DELETE"]


def to_cents(value: Any) -> Decimal:
    """Normalise a USD value of any numeric representation to whole cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class GridKey:
    """One tradable cell: a timeperiod plus a USD price band."""

    timeperiod_id: int
    price_min: Decimal
    price_max: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "timeperiod_id", int(self.timeperiod_id))
        object.__setattr__(self, "price_min", to_cents(self.price_min))
        object.__setattr__(self, "price_max", to_cents(self.price_max))

    @classmethod
    def from_raw(cls, timeperiod_id: Any, raw_min: Any, raw_max: Any) -> GridKey:
        """Build a key from 8-decimal integer prices as stored by the backend."""
        return cls(
            int(timeperiod_id),
            Decimal(str(raw_min)) / PRICE_SCALE,
            Decimal(str(raw_max)) / PRICE_SCALE,
        )

    @property
    def legacy_id(self) -> str:
        """The string form used by the backend when it has no grid_id of its own."""
        return f"{self.timeperiod_id}_{self.price_min}_{self.price_max}"


@dataclass
class BetRecord:
    event_id: str
    user_address: str
    grid_key: GridKey
    grid_id: str
    amount: int                         # raw, 6 decimals
    shares_received: int                # raw, 6 decimals
    created_at: float                   # epoch seconds
    status: BetStatus = "pending"
    timestamp: float | None = None      # on-chain event time, epoch seconds
    end_time: int | None = None         # epoch seconds
    settlement_price: int | None = None # raw, 8 decimals
    multiplier: float | None = None
    block_number: int | None = None


@dataclass
class SettlementRecord:
    timeperiod_id: int
    twap_price: int                     # raw, 8 decimals
    winning_grid_id: str = ""


@dataclass
class PayoutRecord:
    grid_id: str
    redemption_value: int               # raw, 6 decimals
    total_payout: int = 0


@dataclass
class TradeIntent:
    """
    A locally placed trade, reported by the order-placement collaborator on success.

    ``user_address`` is the placing wallet; it may be left empty when the engine
    is scoped to that same address.
    """

    timeperiod_id: int
    price_min_usd: Decimal
    price_max_usd: Decimal
    amount_usd: Decimal
    multiplier: float | None = None
    timestamp: float = field(default_factory=time.time)
    user_address: str = ""

    @property
    def grid_key(self) -> GridKey:
        return GridKey(self.timeperiod_id, self.price_min_usd, self.price_max_usd)


@dataclass(frozen=True)
class SettlementView:
    status: SettlementStatus = "waiting"
    price: str | None = None


@dataclass(frozen=True)
class Position:
    id: str
    user_address: str
    date: str                 # e.g. "2023-11-14 22:13:20"
    price_range: str          # e.g. "$39.00 - $39.20"
    expiry_time: str          # e.g. "22:13:25" or "N/A"
    amount: str               # e.g. "$1.00"
    payout: str               # e.g. "$3.00 3.0X"
    settlement: SettlementView
    status: str               # STATUS_IN_PROGRESS | STATUS_RESOLVED
    grid_key: GridKey
    created_at: float
    block_number: int | None = None

    @property
    def is_optimistic(self) -> bool:
        return self.id.startswith(OPTIMISTIC_PREFIX)

    @property
    def is_resolved(self) -> bool:
        return self.settlement.status != "waiting"

    @property
    def timeperiod_id(self) -> int:
        return self.grid_key.timeperiod_id


@dataclass
class SubscriptionFilter:
    tables: list[str] = field(default_factory=lambda: [BET_TABLE])
    events: list[str] = field(default_factory=lambda: ["INSERT"])
    timeperiod_start: int | None = None
    timeperiod_end: int | None = None
    price_min: float | None = None
    price_max: float | None = None

    def to_message(self) -> dict:
        msg: dict[str, Any] = {"type": "subscribe", "tables": list(self.tables), "events": list(self.events)}
        if self.timeperiod_start is not None and self.timeperiod_end is not None:
            msg["timeperiodRange"] = {"start": self.timeperiod_start, "end": self.timeperiod_end}
        if self.price_min is not None and self.price_max is not None:
            msg["priceRange"] = {"min": self.price_min, "max": self.price_max}
        return msg


@dataclass
class RecordChange:
    """One row change delivered by either live channel."""

    table: str
    event_type: ChangeType
    new: dict | None = None
    old: dict | None = None
    timestamp: float | None = None
    source: str = "primary"

    @property
    def row(self) -> dict | None:
        return self.new if self.event_type != "DELETE" else self.old

    @classmethod
    def from_envelope(cls, message: dict, source: str = "primary") -> RecordChange:
        """Build from a primary-transport event envelope (``type: bet_placed``)."""
        return cls(
            table=message.get("table") or BET_TABLE,
            event_type=str(message.get("eventType") or "INSERT").upper(),
            new=message.get("new"),
            old=message.get("old"),
            timestamp=message.get("timestamp"),
            source=source,
        )
