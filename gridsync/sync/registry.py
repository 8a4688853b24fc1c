"""
Transport registry — one shared TransportClient per URL.

Passed explicitly to whoever needs a transport, so tests can build an
isolated registry and tear it down between cases.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from gridsync.sync.transport import TransportClient

log = logging.getLogger(__name__)


class TransportRegistry:
    def __init__(self, **defaults: Any) -> None:
        self._defaults = defaults
        self._clients: dict[str, TransportClient] = {}

    def get(self, url: str, **options: Any) -> TransportClient:
        """Return the client for *url*, creating it on first use. *options* apply only at creation."""
        client = self._clients.get(url)
        if client is None:
            client = TransportClient(url, **{**self._defaults, **options})
            self._clients[url] = client
            log.debug("Created transport for %s", url)
        return client

    def __contains__(self, url: str) -> bool:
        return url in self._clients

    def __len__(self) -> int:
        return len(self._clients)

    async def teardown(self) -> None:
        """Close and forget every client."""
        clients, self._clients = list(self._clients.values()), {}
        if clients:
            await asyncio.gather(*(c.close() for c in clients), return_exceptions=True)
            log.debug("Tore down %d transport(s)", len(clients))
