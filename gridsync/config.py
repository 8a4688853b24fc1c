"""
Config loader — reads .env and config.json into typed config objects.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from gridsync.models import BET_TABLE

# Load .env from the project root (one level above gridsync/)
_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_ROOT / ".env")

CONFIG_PATH = _ROOT / "config.json"

DEFAULT_WS_URL = "ws://localhost:8080"


@dataclass
class SubscriptionSettings:
    tables: list[str] = field(default_factory=lambda: [BET_TABLE])
    events: list[str] = field(default_factory=lambda: ["INSERT"])
    time_window_seconds: int = 300
    price_min: float | None = None
    price_max: float | None = None


@dataclass
class SyncSettings:
    batch_size: int = 50
    fallback_timeout_seconds: float = 5.0
    reconnect_interval_seconds: float = 5.0
    max_reconnect_attempts: int = 10
    heartbeat_interval_seconds: float = 30.0
    heartbeat_timeout_seconds: float | None = 5.0
    snapshot_expiry_seconds: float = 60.0
    proximity_window_seconds: float = 1.0
    settlement_grace_seconds: float = 10.0
    placeholder_multiplier: float = 3.0


@dataclass
class AppConfig:
    supabase_url: str
    supabase_anon_key: str
    ws_url: str
    user_address: str                   # empty string means the global feed
    log_level: str
    snapshot_path: Path
    report_interval_seconds: int
    sync: SyncSettings
    subscription: SubscriptionSettings


def _read_config_file(path: Path) -> dict:
    if not path.exists():
        return {}
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"{path.name} must contain a JSON object.")
    return raw


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from .env and config.json."""
    supabase_url = os.getenv("SUPABASE_URL", "").rstrip("/")
    anon_key = os.getenv("SUPABASE_ANON_KEY", "")

    if not supabase_url:
        raise ValueError("SUPABASE_URL is not set. Copy .env.example to .env and fill in your backend details.")
    if not anon_key:
        raise ValueError("SUPABASE_ANON_KEY is not set. Copy .env.example to .env and fill in your backend details.")

    raw = _read_config_file(path or CONFIG_PATH)

    defaults = SyncSettings()
    heartbeat_timeout = raw.get("heartbeat_timeout_seconds", defaults.heartbeat_timeout_seconds)
    sync = SyncSettings(
        batch_size=int(raw.get("batch_size", defaults.batch_size)),
        fallback_timeout_seconds=float(raw.get("fallback_timeout_seconds", defaults.fallback_timeout_seconds)),
        reconnect_interval_seconds=float(raw.get("reconnect_interval_seconds", defaults.reconnect_interval_seconds)),
        max_reconnect_attempts=int(raw.get("max_reconnect_attempts", defaults.max_reconnect_attempts)),
        heartbeat_interval_seconds=float(raw.get("heartbeat_interval_seconds", defaults.heartbeat_interval_seconds)),
        heartbeat_timeout_seconds=float(heartbeat_timeout) if heartbeat_timeout else None,
        snapshot_expiry_seconds=float(raw.get("snapshot_expiry_seconds", defaults.snapshot_expiry_seconds)),
        proximity_window_seconds=float(raw.get("proximity_window_seconds", defaults.proximity_window_seconds)),
        settlement_grace_seconds=float(raw.get("settlement_grace_seconds", defaults.settlement_grace_seconds)),
        placeholder_multiplier=float(raw.get("placeholder_multiplier", defaults.placeholder_multiplier)),
    )
    if sync.batch_size <= 0:
        raise ValueError("batch_size in config.json must be a positive integer.")

    sub_raw = raw.get("subscription", {})
    subscription = SubscriptionSettings(
        tables=list(sub_raw.get("tables", [BET_TABLE])),
        events=list(sub_raw.get("events", ["INSERT"])),
        time_window_seconds=int(sub_raw.get("time_window_seconds", 300)),
        price_min=sub_raw.get("price_min"),
        price_max=sub_raw.get("price_max"),
    )

    snapshot_path = Path(raw.get("snapshot_path", "data/snapshots.json"))
    if not snapshot_path.is_absolute():
        snapshot_path = _ROOT / snapshot_path

    return AppConfig(
        supabase_url=supabase_url,
        supabase_anon_key=anon_key,
        ws_url=os.getenv("GRIDSYNC_WS_URL", DEFAULT_WS_URL),
        user_address=os.getenv("GRIDSYNC_USER_ADDRESS", "").strip().lower(),
        log_level=os.getenv("GRIDSYNC_LOG_LEVEL", "INFO"),
        snapshot_path=snapshot_path,
        report_interval_seconds=int(raw.get("report_interval_seconds", 30)),
        sync=sync,
        subscription=subscription,
    )
