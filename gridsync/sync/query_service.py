"""
Backend query service — PostgREST reads against the Supabase tables.

Every method makes a single attempt (retry policy belongs to the caller) and
wraps any transport or HTTP fault in FetchFailure.
"""
from __future__ import annotations

import logging

import httpx

from gridsync.errors import FetchFailure
from gridsync.models import BET_TABLE, PAYOUT_TABLE, SETTLEMENT_TABLE
from gridsync.utils.http_client import get_json

log = logging.getLogger(__name__)


class QueryService:
    def __init__(self, supabase_url: str, anon_key: str) -> None:
        self.base_url = f"{supabase_url.rstrip('/')}/rest/v1"
        self._headers = {
            "apikey": anon_key,
            "Authorization": f"Bearer {anon_key}",
            "Accept": "application/json",
        }

    async def _select(self, table: str, params: dict) -> list[dict]:
        url = f"{self.base_url}/{table}"
        try:
            data = await get_json(url, params=params, headers=self._headers, max_retries=1)
        except (httpx.HTTPError, RuntimeError) as exc:
            raise FetchFailure(f"Query on {table} failed: {exc}") from exc
        if not isinstance(data, list):
            raise FetchFailure(f"Query on {table} returned {type(data).__name__}, expected a list")
        return data

    async def fetch_bets(self, offset: int, limit: int, user_address: str = "") -> list[dict]:
        """One page of bet rows, newest first."""
        params = {
            "select": "*",
            "order": "created_at.desc",
            "offset": str(offset),
            "limit": str(limit),
        }
        if user_address:
            params["user_address"] = f"ilike.{user_address}"
        rows = await self._select(BET_TABLE, params)
        log.debug("Fetched %d bet row(s) at offset %d", len(rows), offset)
        return rows

    async def fetch_bet(self, event_id: str) -> dict | None:
        """The full row for *event_id*, or None when the backend has no such row."""
        rows = await self._select(BET_TABLE, {"select": "*", "event_id": f"eq.{event_id}", "limit": "1"})
        return rows[0] if rows else None

    async def fetch_settlements(self, timeperiod_ids: list[int]) -> list[dict]:
        if not timeperiod_ids:
            return []
        ids = ",".join(str(int(t)) for t in timeperiod_ids)
        return await self._select(
            SETTLEMENT_TABLE,
            {"select": "timeperiod_id,twap_price,winning_grid_id", "timeperiod_id": f"in.({ids})"},
        )

    async def fetch_payouts(self, grid_ids: list[str]) -> list[dict]:
        if not grid_ids:
            return []
        ids = ",".join(f'"{g}"' for g in grid_ids)
        return await self._select(
            PAYOUT_TABLE,
            {"select": "grid_id,total_payout,redemption_value", "grid_id": f"in.({ids})"},
        )
