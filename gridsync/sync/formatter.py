"""
View Formatter — derives display-ready Positions from raw backend rows.

Settlement and payout data are fetched with at most two grouped lookups per
batch (one per distinct timeperiod set, one per distinct grid set), issued
concurrently.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Protocol

from gridsync.errors import FormatFailure
from gridsync.models import (
    OPTIMISTIC_PREFIX,
    STATUS_IN_PROGRESS,
    STATUS_RESOLVED,
    BetRecord,
    GridKey,
    PayoutRecord,
    Position,
    SettlementRecord,
    SettlementView,
    TradeIntent,
    to_cents,
)
from gridsync.utils.format import (
    format_date,
    format_expiry,
    format_money,
    format_payout,
    format_price_range,
    format_raw_price,
    raw_amount_to_usd,
)

log = logging.getLogger(__name__)

DEFAULT_PLACEHOLDER_MULTIPLIER = 3.0

# Columns a live row must carry before it can be formatted without a refetch
REQUIRED_BET_FIELDS = ("timeperiod_id", "price_min", "price_max", "amount", "user_address")


class RecordLookups(Protocol):
    async def fetch_settlements(self, timeperiod_ids: list[int]) -> list[dict]: ...

    async def fetch_payouts(self, grid_ids: list[str]) -> list[dict]: ...


# ---------------------------------------------------------------------------
# Row parsing
# ---------------------------------------------------------------------------

def _to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(Decimal(str(value)))


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def parse_timestamp(value: Any) -> float | None:
    """Accept epoch seconds, epoch milliseconds or ISO-8601 strings."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        try:
            number = float(text)
        except ValueError:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.timestamp()
    return number / 1000 if number > 1e12 else number


def is_incomplete(row: dict) -> bool:
    return any(row.get(name) is None for name in REQUIRED_BET_FIELDS)


def parse_bet_row(row: dict) -> BetRecord:
    """Convert a raw bet_placed_with_session row into a BetRecord."""
    try:
        event_id = str(row["event_id"])
        key = GridKey.from_raw(row["timeperiod_id"], row["price_min"], row["price_max"])
        created_at = parse_timestamp(row.get("created_at")) or parse_timestamp(row.get("timestamp"))
        if created_at is None:
            raise ValueError("row has neither created_at nor timestamp")
        status = str(row.get("status") or "pending").lower()
        if status not in ("pending", "confirmed", "won", "lost"):
            raise ValueError(f"unknown status {status!r}")
        return BetRecord(
            event_id=event_id,
            user_address=str(row["user_address"]),
            grid_key=key,
            grid_id=str(row.get("grid_id") or key.legacy_id),
            amount=_to_int(row["amount"]) or 0,
            shares_received=_to_int(row.get("shares_received")) or 0,
            created_at=created_at,
            status=status,
            timestamp=parse_timestamp(row.get("timestamp")),
            end_time=_to_int(row.get("end_time")),
            settlement_price=_to_int(row.get("settlement_price")),
            multiplier=_to_float(row.get("multiplier")),
            block_number=_to_int(row.get("block_number")),
        )
    except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
        raise FormatFailure(f"Malformed bet row {row.get('event_id')!r}: {exc}") from exc


def parse_settlement_row(row: dict) -> SettlementRecord:
    try:
        return SettlementRecord(
            timeperiod_id=int(Decimal(str(row["timeperiod_id"]))),
            twap_price=_to_int(row["twap_price"]) or 0,
            winning_grid_id=str(row.get("winning_grid_id") or ""),
        )
    except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
        raise FormatFailure(f"Malformed settlement row: {exc}") from exc


def parse_payout_row(row: dict) -> PayoutRecord:
    try:
        return PayoutRecord(
            grid_id=str(row["grid_id"]),
            redemption_value=_to_int(row["redemption_value"]) or 0,
            total_payout=_to_int(row.get("total_payout")) or 0,
        )
    except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
        raise FormatFailure(f"Malformed payout row: {exc}") from exc


# ---------------------------------------------------------------------------
# Derivation
# ---------------------------------------------------------------------------

def _provisional_multiplier(record_multiplier: float | None, placeholder: float) -> float:
    if record_multiplier and record_multiplier > 0:
        return record_multiplier
    return placeholder


def _build_position(
    record: BetRecord,
    *,
    payout: str,
    settlement: SettlementView,
) -> Position:
    key = record.grid_key
    return Position(
        id=record.event_id,
        user_address=record.user_address,
        date=format_date(record.timestamp or record.created_at),
        price_range=format_price_range(key.price_min, key.price_max),
        expiry_time=format_expiry(record.end_time),
        amount=format_money(raw_amount_to_usd(record.amount)),
        payout=payout,
        settlement=settlement,
        status=STATUS_IN_PROGRESS if settlement.status == "waiting" else STATUS_RESOLVED,
        grid_key=key,
        created_at=record.created_at,
        block_number=record.block_number,
    )


def derive_position(
    record: BetRecord,
    settlement: SettlementRecord | None,
    payout: PayoutRecord | None,
    *,
    payouts_known: bool = True,
    placeholder_multiplier: float = DEFAULT_PLACEHOLDER_MULTIPLIER,
) -> Position:
    """
    Classify one record, evaluated top-down:

    1. the record already says won/lost → trust it, payout from its multiplier;
    2. no settlement for its timeperiod → waiting with a provisional multiplier;
    3. settlement but no payout for its grid → loss, payout 0;
    4. otherwise → win, payout from the payout record.

    With ``payouts_known=False`` (the payout lookup failed) step 3 is skipped and
    the record stays waiting with the settlement price attached.
    """
    stake = raw_amount_to_usd(record.amount)
    stored_price = format_raw_price(record.settlement_price)

    if record.status == "won":
        multiplier = record.multiplier or 0.0
        return _build_position(
            record,
            payout=format_payout(stake * Decimal(str(multiplier)), multiplier),
            settlement=SettlementView("win", stored_price),
        )
    if record.status == "lost":
        return _build_position(
            record,
            payout=format_payout(Decimal(0)),
            settlement=SettlementView("loss", stored_price),
        )

    if settlement is None:
        multiplier = _provisional_multiplier(record.multiplier, placeholder_multiplier)
        return _build_position(
            record,
            payout=format_payout(stake * Decimal(str(multiplier)), multiplier),
            settlement=SettlementView("waiting", None),
        )

    twap = format_raw_price(settlement.twap_price)
    if payout is None:
        if not payouts_known:
            multiplier = _provisional_multiplier(record.multiplier, placeholder_multiplier)
            return _build_position(
                record,
                payout=format_payout(stake * Decimal(str(multiplier)), multiplier),
                settlement=SettlementView("waiting", twap),
            )
        return _build_position(
            record,
            payout=format_payout(Decimal(0)),
            settlement=SettlementView("loss", twap),
        )

    payout_usd = to_cents(raw_amount_to_usd(payout.redemption_value))
    multiplier = float(payout_usd / to_cents(stake)) if to_cents(stake) > 0 else 0.0
    return _build_position(
        record,
        payout=format_payout(payout_usd, multiplier),
        settlement=SettlementView("win", twap),
    )


def format_pending(
    record: BetRecord,
    placeholder_multiplier: float = DEFAULT_PLACEHOLDER_MULTIPLIER,
) -> Position:
    """Lookup-free render of an authoritative record, used before lookups resolve."""
    return derive_position(record, None, None, placeholder_multiplier=placeholder_multiplier)


def new_optimistic_id(timestamp: float | None = None) -> str:
    millis = int((timestamp if timestamp is not None else time.time()) * 1000)
    return f"{OPTIMISTIC_PREFIX}{millis}_{secrets.token_hex(4)}"


def format_intent(
    intent: TradeIntent,
    user_address: str = "",
    placeholder_multiplier: float = DEFAULT_PLACEHOLDER_MULTIPLIER,
) -> Position:
    """
    Instant pre-confirmation render of a locally placed trade. Always waiting.

    The owner is the intent's own address, else *user_address*. Without one the
    confirmed record could never be paired with this render, so ValueError is
    raised.
    """
    owner = (intent.user_address or user_address).lower()
    if not owner:
        raise ValueError("A trade intent needs the placing address to be rendered optimistically")
    key = intent.grid_key
    stake = to_cents(intent.amount_usd)
    multiplier = _provisional_multiplier(intent.multiplier, placeholder_multiplier)
    return Position(
        id=new_optimistic_id(intent.timestamp),
        user_address=owner,
        date=format_date(intent.timestamp),
        price_range=format_price_range(key.price_min, key.price_max),
        expiry_time=format_expiry(key.timeperiod_id),
        amount=format_money(stake),
        payout=format_payout(stake * Decimal(str(multiplier)), multiplier),
        settlement=SettlementView("waiting", None),
        status=STATUS_IN_PROGRESS,
        grid_key=key,
        created_at=intent.timestamp,
    )


def _index_settlements(rows: Iterable[dict]) -> dict[int, SettlementRecord]:
    settlements: dict[int, SettlementRecord] = {}
    for row in rows:
        try:
            record = parse_settlement_row(row)
        except FormatFailure as exc:
            log.warning("Skipping settlement row: %s", exc)
            continue
        settlements[record.timeperiod_id] = record
    return settlements


def _index_payouts(rows: Iterable[dict]) -> dict[str, PayoutRecord]:
    payouts: dict[str, PayoutRecord] = {}
    for row in rows:
        try:
            record = parse_payout_row(row)
        except FormatFailure as exc:
            log.warning("Skipping payout row: %s", exc)
            continue
        payouts[record.grid_id] = record
    return payouts


async def format_records(
    records: list[BetRecord],
    lookups: RecordLookups,
    *,
    placeholder_multiplier: float = DEFAULT_PLACEHOLDER_MULTIPLIER,
) -> list[Position]:
    """
    Format *records* into Positions, preserving order.

    Parameters
    ----------
    records : list[BetRecord]
        Parsed bet records.
    lookups : RecordLookups
        Backend access for grouped settlement and payout queries.

    Returns
    -------
    list[Position]
        One Position per record that could be derived. Records that fail
        derivation are logged and dropped.
    """
    if not records:
        return []

    timeperiod_ids = sorted({r.grid_key.timeperiod_id for r in records if r.status not in ("won", "lost")})
    grid_ids = sorted({r.grid_id for r in records if r.status not in ("won", "lost")})

    settlements: dict[int, SettlementRecord] = {}
    payouts: dict[str, PayoutRecord] = {}
    payouts_known = True

    if timeperiod_ids:
        settlement_rows, payout_rows = await asyncio.gather(
            lookups.fetch_settlements(timeperiod_ids),
            lookups.fetch_payouts(grid_ids),
            return_exceptions=True,
        )
        if isinstance(settlement_rows, BaseException):
            log.warning("Settlement lookup failed for %d timeperiod(s): %s", len(timeperiod_ids), settlement_rows)
        else:
            settlements = _index_settlements(settlement_rows)
        if isinstance(payout_rows, BaseException):
            log.warning("Payout lookup failed for %d grid(s): %s", len(grid_ids), payout_rows)
            payouts_known = False
        else:
            payouts = _index_payouts(payout_rows)

    positions: list[Position] = []
    for record in records:
        try:
            positions.append(
                derive_position(
                    record,
                    settlements.get(record.grid_key.timeperiod_id),
                    payouts.get(record.grid_id),
                    payouts_known=payouts_known,
                    placeholder_multiplier=placeholder_multiplier,
                )
            )
        except (ArithmeticError, ValueError) as exc:
            log.warning("Dropping record %s that failed derivation: %s", record.event_id, exc)
    return positions


def parse_rows(rows: Iterable[dict]) -> list[BetRecord]:
    """Parse raw rows, dropping (and logging) the malformed ones."""
    records: list[BetRecord] = []
    for row in rows:
        try:
            records.append(parse_bet_row(row))
        except FormatFailure as exc:
            log.warning("Failed to parse bet row: %s", exc)
    return records
