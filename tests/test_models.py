"""
Tests for the shared data models.

Run with:  pytest tests/test_models.py
"""
from __future__ import annotations

from decimal import Decimal

from gridsync.models import (
    BET_TABLE,
    GridKey,
    Position,
    RecordChange,
    SettlementView,
    SubscriptionFilter,
    TradeIntent,
)


def _make_position(position_id: str) -> Position:
    return Position(
        id=position_id,
        user_address="0xabc",
        date="2023-11-14 22:13:20",
        price_range="$39.00 - $39.20",
        expiry_time="N/A",
        amount="$1.00",
        payout="$3.00 3.0X",
        settlement=SettlementView(),
        status="in progress",
        grid_key=GridKey(1_700_000_000, "39.00", "39.20"),
        created_at=1_700_000_000.0,
    )


class TestGridKey:
    def test_normalises_to_cents(self):
        assert GridKey(1, "39", Decimal("39.2")) == GridKey(1, 39.0, "39.20")
        assert hash(GridKey(1, "39", "39.2")) == hash(GridKey(1, Decimal("39.00"), Decimal("39.20")))

    def test_from_raw_prices(self):
        key = GridKey.from_raw("1700000000", 3_900_000_000, 3_920_000_000)
        assert key == GridKey(1_700_000_000, "39.00", "39.20")
        assert key.legacy_id == "1700000000_39.00_39.20"

    def test_float_noise_does_not_split_keys(self):
        assert GridKey(1, 0.1 + 0.2, 1) == GridKey(1, "0.30", "1.00")


class TestTradeIntent:
    def test_grid_key(self):
        intent = TradeIntent(1_700_000_000, Decimal("39"), Decimal("39.2"), Decimal("1"))
        assert intent.grid_key == GridKey(1_700_000_000, "39.00", "39.20")


class TestPosition:
    def test_optimistic_flag(self):
        assert _make_position("opt_1700000000000_ab12").is_optimistic
        assert not _make_position("evt_1").is_optimistic

    def test_unresolved_by_default(self):
        position = _make_position("evt_1")
        assert not position.is_resolved
        assert position.timeperiod_id == 1_700_000_000


class TestSubscriptionFilter:
    def test_minimal_message(self):
        assert SubscriptionFilter().to_message() == {
            "type": "subscribe",
            "tables": [BET_TABLE],
            "events": ["INSERT"],
        }

    def test_ranges_included_when_complete(self):
        msg = SubscriptionFilter(timeperiod_start=10, timeperiod_end=20, price_min=1.5, price_max=2.5).to_message()
        assert msg["timeperiodRange"] == {"start": 10, "end": 20}
        assert msg["priceRange"] == {"min": 1.5, "max": 2.5}

    def test_half_range_omitted(self):
        msg = SubscriptionFilter(timeperiod_start=10).to_message()
        assert "timeperiodRange" not in msg


class TestRecordChange:
    def test_from_envelope(self):
        change = RecordChange.from_envelope(
            {"type": "bet_placed", "eventType": "update", "table": BET_TABLE, "new": {"event_id": "evt_1"}}
        )
        assert change.event_type == "UPDATE"
        assert change.row == {"event_id": "evt_1"}
        assert change.source == "primary"

    def test_delete_row_is_old(self):
        change = RecordChange(BET_TABLE, "DELETE", new=None, old={"event_id": "evt_1"})
        assert change.row == {"event_id": "evt_1"}
