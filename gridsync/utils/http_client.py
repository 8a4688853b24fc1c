"""
Shared async HTTP client with retry and timeout logic.
"""
from __future__ import annotations

import asyncio
import logging

import httpx

log = logging.getLogger(__name__)

_CONNECT_TIMEOUT = 10.0
_READ_TIMEOUT = 15.0

_MAX_RETRIES = 3
_BACKOFF_DELAYS = [1, 3, 9]  # seconds between attempts


def _build_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(connect=_CONNECT_TIMEOUT, read=_READ_TIMEOUT, write=10.0, pool=5.0),
        follow_redirects=True,
        headers={"User-Agent": "gridsync/0.1"},
    )


# Module-level shared client (initialised lazily per event loop)
_client: httpx.AsyncClient | None = None


async def get_client() -> httpx.AsyncClient:
    global _client
    if _client is None or _client.is_closed:
        _client = _build_client()
    return _client


async def close_client() -> None:
    global _client
    if _client and not _client.is_closed:
        await _client.aclose()
    _client = None


async def get_json(
    url: str,
    params: dict | None = None,
    headers: dict | None = None,
    *,
    max_retries: int = _MAX_RETRIES,
) -> dict | list:
    """
    Perform a GET request and return the parsed JSON response.

    Transient network errors and 429 responses are retried up to *max_retries*
    attempts in total. Pass ``max_retries=1`` to leave retry policy to the caller.
    Raises httpx.HTTPStatusError for other non-2xx responses.
    """
    client = await get_client()

    last_exc: Exception | None = None
    for attempt in range(max_retries):
        last_attempt = attempt + 1 >= max_retries
        try:
            response = await client.get(url, params=params, headers=headers)
            response.raise_for_status()
            return response.json()
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            last_exc = exc
            if last_attempt:
                break
            delay = _BACKOFF_DELAYS[min(attempt, len(_BACKOFF_DELAYS) - 1)]
            log.warning(
                "Request to %s failed (attempt %d/%d): %s; retrying in %ds",
                url, attempt + 1, max_retries, exc, delay,
            )
            await asyncio.sleep(delay)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code != 429:
                raise
            last_exc = exc
            if last_attempt:
                break
            retry_after = int(exc.response.headers.get("Retry-After", "5"))
            log.warning("Rate-limited by %s; waiting %ds", url, retry_after)
            await asyncio.sleep(retry_after)

    raise RuntimeError(f"All {max_retries} attempt(s) to GET {url} failed") from last_exc
