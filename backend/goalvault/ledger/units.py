"""Unit scaling between human-facing Decimals and the vault contract's integers."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal

WEI_PER_ETH = Decimal(10) ** 18
# Price and portfolio targets use price-feed precision (8 decimals).
FEED_SCALE = Decimal(10) ** 8


def to_wei(amount: Decimal) -> int:
    return int((Decimal(amount) * WEI_PER_ETH).to_integral_value(rounding=ROUND_FLOOR))


def from_wei(value: int) -> Decimal:
    return Decimal(int(value)) / WEI_PER_ETH


def to_feed_units(value: Decimal) -> int:
    return int((Decimal(value) * FEED_SCALE).to_integral_value(rounding=ROUND_FLOOR))


def from_feed_units(value: int) -> Decimal:
    return Decimal(int(value)) / FEED_SCALE


def to_unix_seconds(value: datetime | None) -> int:
    """Epoch seconds for the ledger; 0 means "no unlock time"."""
    if value is None:
        return 0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def from_unix_seconds(value: int) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)
