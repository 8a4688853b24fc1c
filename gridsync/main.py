"""
main.py — Entry point. Starts the sync engine and reports on the merged view.

Run with:
    python -m gridsync.main
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from gridsync.config import AppConfig, load_config
from gridsync.sync.engine import PositionSyncEngine, build_engine
from gridsync.sync.registry import TransportRegistry
from gridsync.utils.http_client import close_client
from gridsync.utils.logger import setup_logging

log = logging.getLogger(__name__)


def report(engine: PositionSyncEngine) -> None:
    """Log one summary line for the view, plus the newest few positions."""
    stats = engine.summary()
    channel = "fallback" if stats["fallback"] else "primary"
    log.info(
        "=== %s | %d position(s) on %d page(s) | waiting=%d won=%d lost=%d optimistic=%d | %s %s ===",
        datetime.now(timezone.utc).isoformat(timespec="seconds"),
        stats["positions"], stats["pages"],
        stats["waiting"], stats["won"], stats["lost"], stats["optimistic"],
        channel, "live" if stats["live"] else "offline",
    )
    for position in engine.positions[:5]:
        log.info(
            "  %s  %s  %s  stake %s  payout %s  [%s%s]",
            position.date, position.id, position.price_range, position.amount, position.payout,
            position.settlement.status,
            f" @ {position.settlement.price}" if position.settlement.price else "",
        )
    if engine.last_error:
        log.info("  last error: %s", engine.last_error)


async def run(config: AppConfig) -> None:
    registry = TransportRegistry()
    engine = build_engine(config, registry)
    scope = config.user_address or "all addresses"
    try:
        await engine.start()
        log.info("Sync engine started for %s. Reporting every %ds.", scope, config.report_interval_seconds)
        while True:
            await asyncio.sleep(config.report_interval_seconds)
            report(engine)
    finally:
        await engine.stop()
        await registry.teardown()


async def main() -> None:
    setup_logging()

    log.info("Loading configuration …")
    try:
        config = load_config()
    except ValueError as exc:
        log.critical("Configuration error: %s", exc)
        return

    setup_logging(config.log_level)
    try:
        await run(config)
    except (KeyboardInterrupt, asyncio.CancelledError):
        log.info("Shutting down ...")
    finally:
        await close_client()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
