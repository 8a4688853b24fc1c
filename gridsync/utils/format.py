"""
Display formatting helpers shared by the formatters.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from gridsync.models import AMOUNT_SCALE, PRICE_SCALE, to_cents


def format_usd(amount: Decimal | float | int) -> str:
    """Format a USD value with two decimals, e.g. 39.12345678 → '39.12'."""
    return str(to_cents(amount))


def format_money(amount: Decimal | float | int) -> str:
    return f"${format_usd(amount)}"


def raw_price_to_usd(raw: int | str) -> Decimal:
    return Decimal(str(raw)) / PRICE_SCALE


def raw_amount_to_usd(raw: int | str) -> Decimal:
    return Decimal(str(raw)) / AMOUNT_SCALE


def format_raw_price(raw: int | str | None) -> str | None:
    """Format an 8-decimal raw price, e.g. 3912345678 → '$39.12'."""
    if raw is None:
        return None
    return format_money(raw_price_to_usd(raw))


def format_multiplier(multiplier: float) -> str:
    """Trailing label appended to a payout, e.g. 3 → ' 3.0X'; empty when not positive."""
    if multiplier <= 0:
        return ""
    return f" {multiplier:.1f}X"


def format_payout(payout: Decimal, multiplier: float = 0.0) -> str:
    return f"{format_money(payout)}{format_multiplier(multiplier)}"


def format_price_range(price_min: Decimal, price_max: Decimal) -> str:
    return f"{format_money(price_min)} - {format_money(price_max)}"


def format_date(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def format_expiry(epoch_seconds: int | None) -> str:
    if not epoch_seconds:
        return "N/A"
    return datetime.fromtimestamp(int(epoch_seconds), tz=timezone.utc).strftime("%H:%M:%S")
