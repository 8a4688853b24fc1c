"""
Tests for the Position Sync Engine, wired to in-memory transports and backend.

Run with:  pytest tests/test_engine.py
"""
from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from realtime.types import RealtimeSubscribeStates

from fakes import T0, FakeQueries, FakeRealtimeClient, FakeServer, bet_event, make_bet_row, wait_until
from gridsync.config import AppConfig, SubscriptionSettings, SyncSettings
from gridsync.models import BET_TABLE, PAYOUT_TABLE, SETTLEMENT_TABLE, TradeIntent
from gridsync.sync.engine import PositionSyncEngine, build_engine, subscription_from_config
from gridsync.sync.fallback import FallbackChannel
from gridsync.sync.registry import TransportRegistry
from gridsync.sync.snapshot_store import SnapshotStore
from gridsync.sync.transport import TransportClient
from gridsync.utils.storage import MemoryStorage

GRID_ID = f"{T0}_39.00_39.20"


class _SlowFirstPayouts(FakeQueries):
    """The first payout lookup reads the table, then answers late."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.slow_started = False

    async def fetch_payouts(self, grid_ids: list[str]) -> list[dict]:
        if self.slow_started:
            return await super().fetch_payouts(grid_ids)
        self.slow_started = True
        rows = await super().fetch_payouts(grid_ids)
        await asyncio.sleep(0.1)
        return rows


def _make_rows(count: int, start: int = 0) -> list[dict]:
    return [make_bet_row(f"evt_{i}", price_min=4_000_000_000 + i * 20_000_000) for i in range(start, start + count)]


def _make_engine(
    queries: FakeQueries,
    server: FakeServer | None = None,
    *,
    fallback: FallbackChannel | None = None,
    snapshots: SnapshotStore | None = None,
    **kwargs,
) -> PositionSyncEngine:
    server = server or FakeServer()
    transport = TransportClient("ws://primary", connect_fn=server.connect, heartbeat_interval=60, reconnect_interval=0.01)
    options = {"user_address": "0xabc", "settlement_grace_seconds": 60.0}
    options.update(kwargs)
    return PositionSyncEngine(transport, queries, fallback=fallback, snapshots=snapshots, **options)


def _make_config(**sync) -> AppConfig:
    return AppConfig(
        supabase_url="https://demo.supabase.co",
        supabase_anon_key="anon-key",
        ws_url="ws://primary",
        user_address="0xabc",
        log_level="INFO",
        snapshot_path=None,
        report_interval_seconds=30,
        sync=SyncSettings(**sync),
        subscription=SubscriptionSettings(time_window_seconds=300, price_min=39.0, price_max=40.0),
    )


class TestStartAndPaging:
    @pytest.mark.asyncio
    async def test_start_loads_page_zero_and_subscribes(self):
        server = FakeServer()
        engine = _make_engine(FakeQueries(bets=_make_rows(3)), server)
        await engine.start()
        await wait_until(lambda: engine.is_live and server.latest.sent)

        assert [p.id for p in engine.positions] == ["evt_0", "evt_1", "evt_2"]
        assert server.latest.sent_types() == ["subscribe"]
        assert not engine.loading
        await engine.stop()

    @pytest.mark.asyncio
    async def test_fifty_plus_twelve(self):
        queries = FakeQueries(bets=_make_rows(62))
        engine = _make_engine(queries)
        await engine.start()
        assert len(engine.positions) == 50
        assert engine.has_more

        assert await engine.fetch_next_page() is True
        assert len(engine.positions) == 62
        assert not engine.has_more

        assert await engine.fetch_next_page() is False
        assert len(queries.bet_calls) == 2
        await engine.stop()

    @pytest.mark.asyncio
    async def test_fetch_failure_recorded_per_page(self):
        queries = FakeQueries(bets=_make_rows(3))
        queries.fail_bets = True
        engine = _make_engine(queries)
        await engine.start()

        assert engine.positions == []
        assert 0 in engine.page_errors
        assert engine.last_error

        queries.fail_bets = False
        assert await engine.fetch_next_page() is True
        assert len(engine.positions) == 3
        assert engine.page_errors == {}
        await engine.stop()

    @pytest.mark.asyncio
    async def test_refresh_merges_page_zero(self):
        queries = FakeQueries(bets=_make_rows(2))
        engine = _make_engine(queries)
        await engine.start()

        queries.bets.insert(0, make_bet_row("evt_new", price_min=4_500_000_000))
        assert await engine.refresh() is True
        assert sorted(p.id for p in engine.positions) == ["evt_0", "evt_1", "evt_new"]
        await engine.stop()


class TestLiveChanges:
    @pytest.mark.asyncio
    async def test_optimistic_then_confirmed(self):
        server = FakeServer()
        engine = _make_engine(FakeQueries(), server)
        await engine.start()
        await wait_until(lambda: engine.is_live)

        intent = TradeIntent(T0, Decimal("39.00"), Decimal("39.20"), Decimal("1.00"), timestamp=float(T0))
        optimistic = engine.place_intent(intent)
        await engine.wait_idle()
        assert [p.id for p in engine.positions] == [optimistic.id]

        server.latest.feed(bet_event(make_bet_row("evt_1", created_at=T0 + 0.4)))
        await wait_until(lambda: any(p.id == "evt_1" for p in engine.positions))
        await engine.wait_idle()

        assert len(engine.positions) == 1
        position = engine.positions[0]
        assert position.id == "evt_1"
        assert position.settlement.status == "waiting"
        assert position.status == "in progress"
        await engine.stop()

    @pytest.mark.asyncio
    async def test_global_feed_promotes_intent_by_its_address(self):
        server = FakeServer()
        engine = _make_engine(FakeQueries(), server, user_address="")
        await engine.start()
        await wait_until(lambda: engine.is_live)

        anonymous = TradeIntent(T0, Decimal("39.00"), Decimal("39.20"), Decimal("1.00"), timestamp=float(T0))
        with pytest.raises(ValueError):
            engine.place_intent(anonymous)
        engine.place_intent(
            TradeIntent(T0, Decimal("39.00"), Decimal("39.20"), Decimal("1.00"), timestamp=float(T0), user_address="0xABC")
        )

        server.latest.feed(bet_event(make_bet_row("evt_1", created_at=T0 + 0.4)))
        await wait_until(lambda: any(p.id == "evt_1" for p in engine.positions))
        await engine.wait_idle()

        assert [p.id for p in engine.positions] == ["evt_1"]
        await engine.stop()

    @pytest.mark.asyncio
    async def test_stale_lookup_cannot_undo_a_win(self):
        server = FakeServer()
        settlement = {"timeperiod_id": T0, "twap_price": 3_912_345_678, "winning_grid_id": GRID_ID}
        queries = _SlowFirstPayouts(settlements=[settlement])
        engine = _make_engine(queries, server)
        await engine.start()
        await wait_until(lambda: engine.is_live)

        server.latest.feed(bet_event(make_bet_row("evt_1")))
        await wait_until(lambda: queries.slow_started)

        payout = {"grid_id": GRID_ID, "redemption_value": 2_500_000, "total_payout": 2_500_000}
        queries.payouts.append(payout)
        server.latest.feed({"type": "bet_placed", "eventType": "INSERT", "table": PAYOUT_TABLE, "new": payout})
        await wait_until(lambda: engine.positions and engine.positions[0].settlement.status == "win")
        await engine.wait_idle()

        position = engine.positions[0]
        assert position.settlement.status == "win"
        assert position.payout == "$2.50 2.5X"
        await engine.stop()

    @pytest.mark.asyncio
    async def test_settlement_overlays_price_without_resolving(self):
        server = FakeServer()
        engine = _make_engine(FakeQueries(bets=[make_bet_row("evt_1")]), server)
        await engine.start()
        await wait_until(lambda: engine.is_live)

        server.latest.feed({
            "type": "bet_placed",
            "eventType": "INSERT",
            "table": SETTLEMENT_TABLE,
            "new": {"timeperiod_id": T0, "twap_price": 3_912_345_678, "winning_grid_id": "other"},
        })
        await wait_until(lambda: engine.positions[0].settlement.price is not None)

        position = engine.positions[0]
        assert position.settlement.price == "$39.12"
        assert position.status == "in progress"
        await engine.stop()

    @pytest.mark.asyncio
    async def test_settlement_rederives_after_grace(self):
        server = FakeServer()
        settlement = {"timeperiod_id": T0, "twap_price": 3_912_345_678, "winning_grid_id": "other"}
        queries = FakeQueries(bets=[make_bet_row("evt_1")])
        engine = _make_engine(queries, server, settlement_grace_seconds=0.01)
        await engine.start()
        await wait_until(lambda: engine.is_live)

        queries.settlements.append(settlement)
        server.latest.feed({"type": "bet_placed", "eventType": "INSERT", "table": SETTLEMENT_TABLE, "new": settlement})
        await wait_until(lambda: engine.positions[0].is_resolved)

        assert engine.positions[0].settlement.status == "loss"
        await engine.stop()

    @pytest.mark.asyncio
    async def test_payout_event_rederives_grid(self):
        server = FakeServer()
        queries = FakeQueries(bets=[make_bet_row("evt_1")])
        engine = _make_engine(queries, server)
        await engine.start()
        await wait_until(lambda: engine.is_live)

        queries.settlements.append({"timeperiod_id": T0, "twap_price": 3_912_345_678, "winning_grid_id": GRID_ID})
        payout = {"grid_id": GRID_ID, "redemption_value": 2_500_000, "total_payout": 2_500_000}
        queries.payouts.append(payout)
        server.latest.feed({"type": "bet_placed", "eventType": "INSERT", "table": PAYOUT_TABLE, "new": payout})
        await wait_until(lambda: engine.positions[0].is_resolved)

        position = engine.positions[0]
        assert position.settlement.status == "win"
        assert position.payout == "$2.50 2.5X"
        await engine.stop()

    @pytest.mark.asyncio
    async def test_delete_removes_position(self):
        server = FakeServer()
        engine = _make_engine(FakeQueries(bets=[make_bet_row("evt_1")]), server)
        await engine.start()
        await wait_until(lambda: engine.is_live)

        server.latest.feed(bet_event({"event_id": "evt_1"}, event_type="DELETE"))
        await wait_until(lambda: engine.positions == [])
        await engine.stop()

    @pytest.mark.asyncio
    async def test_incomplete_row_is_hydrated(self):
        server = FakeServer()
        queries = FakeQueries()
        engine = _make_engine(queries, server)
        await engine.start()
        await wait_until(lambda: engine.is_live)

        queries.bets.append(make_bet_row("evt_7", amount=2_000_000))
        server.latest.feed(bet_event({"event_id": "evt_7", "status": "confirmed"}))
        await wait_until(lambda: engine.positions)
        await engine.wait_idle()

        assert engine.positions[0].id == "evt_7"
        assert engine.positions[0].amount == "$2.00"
        await engine.stop()

    @pytest.mark.asyncio
    async def test_other_addresses_ignored(self):
        server = FakeServer()
        engine = _make_engine(FakeQueries(), server)
        await engine.start()
        await wait_until(lambda: engine.is_live)

        server.latest.feed(bet_event(make_bet_row("evt_9", user_address="0xdef")))
        server.latest.feed(bet_event(make_bet_row("evt_1", user_address="0xABC")))
        await wait_until(lambda: engine.positions)
        await engine.wait_idle()

        assert [p.id for p in engine.positions] == ["evt_1"]
        await engine.stop()


class TestFallback:
    @pytest.mark.asyncio
    async def test_fallback_takes_over_when_primary_refused(self):
        client = FakeRealtimeClient()
        fallback = FallbackChannel(
            "https://demo.supabase.co", "anon-key",
            user_address="0xabc", fallback_timeout=1.0, reconnect_interval=0.01,
        )
        engine = _make_engine(FakeQueries(), FakeServer(fail=True), fallback=fallback)
        with patch("gridsync.sync.fallback.acreate_client", AsyncMock(return_value=client)):
            await engine.start()
            await wait_until(lambda: engine.fallback_active and fallback.connected)

        assert engine.is_live
        assert engine.last_error

        client.latest.emit(BET_TABLE, make_bet_row("evt_1"))
        await wait_until(lambda: engine.positions)
        assert engine.positions[0].id == "evt_1"
        await engine.stop()

    @pytest.mark.asyncio
    async def test_fallback_not_live_until_subscribed(self):
        client = FakeRealtimeClient(initial_state=RealtimeSubscribeStates.CHANNEL_ERROR)
        fallback = FallbackChannel(
            "https://demo.supabase.co", "anon-key",
            user_address="0xabc", fallback_timeout=1.0, reconnect_interval=0.01,
        )
        engine = _make_engine(FakeQueries(), FakeServer(fail=True), fallback=fallback)
        with patch("gridsync.sync.fallback.acreate_client", AsyncMock(return_value=client)):
            await engine.start()
            await wait_until(lambda: client.channels and engine.last_error and "Fallback channel" in engine.last_error)

        assert engine.fallback_active
        assert not engine.is_live

        client.latest.set_state(RealtimeSubscribeStates.SUBSCRIBED)
        assert engine.is_live

        client.latest.set_state(RealtimeSubscribeStates.TIMED_OUT)
        assert not engine.is_live
        assert "timed out" in engine.last_error
        await engine.stop()


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_snapshot_painted_then_replaced(self):
        storage = MemoryStorage()
        seeded = _make_engine(FakeQueries(bets=[make_bet_row("evt_old")]), snapshots=SnapshotStore(storage, "0xabc"))
        await seeded.start()
        await seeded.stop()
        assert SnapshotStore(storage, "0xabc").load().data[0].id == "evt_old"

        queries = FakeQueries(bets=[make_bet_row("evt_new", price_min=4_100_000_000)])
        queries.fail_bets = True
        engine = _make_engine(queries, snapshots=SnapshotStore(storage, "0xabc"))
        await engine.start()
        assert [p.id for p in engine.positions] == ["evt_old"]

        queries.fail_bets = False
        await engine.fetch_next_page()
        assert [p.id for p in engine.positions] == ["evt_new"]
        assert SnapshotStore(storage, "0xabc").load().data[0].id == "evt_new"
        await engine.stop()


class TestWiring:
    def test_subscription_window_from_config(self):
        subscription = subscription_from_config(_make_config(), now=T0)
        assert subscription.timeperiod_start == T0 - 300
        assert subscription.timeperiod_end == T0 + 300
        assert subscription.to_message()["priceRange"] == {"min": 39.0, "max": 40.0}

    @pytest.mark.asyncio
    async def test_build_engine_shares_transport_per_url(self):
        registry = TransportRegistry()
        config = _make_config(batch_size=25)
        first = build_engine(config, registry, storage=MemoryStorage())
        second = build_engine(config, registry, storage=MemoryStorage())

        assert first.transport is second.transport
        assert first.loader.batch_size == 25
        assert len(registry) == 1
        await registry.teardown()
        assert len(registry) == 0
