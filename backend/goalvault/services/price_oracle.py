"""Cached ETH and BTC price quotes and market sentiment from a CoinGecko-compatible API."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import httpx

from ..clock import Clock, SystemClock
from ..errors import PriceProviderUnavailableError
from ..models import Currency

logger = logging.getLogger(__name__)

QUOTE_CURRENCIES = ("usd", "eur")
FALLBACK_PRICES: dict[str, Decimal] = {"usd": Decimal("2300"), "eur": Decimal("2100")}
BTC_ASSET_ID = "bitcoin"
BTC_FALLBACK_PRICES: dict[str, Decimal] = {"usd": Decimal("35000"), "eur": Decimal("32000")}
NEUTRAL_SENTIMENT = 50
RETRYABLE_STATUS_CODES = {500, 502, 503, 504}


def _to_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    if value in (None, ""):
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


@dataclass(frozen=True)
class PriceQuote:
    """ETH price in each quote currency plus the 24h change."""

    base_unit_price_by_currency: dict[str, Decimal]
    change_24h_by_currency: dict[str, Decimal]
    is_live: bool
    last_updated: datetime
    error: str | None = None

    def price_for(self, currency: Currency | str) -> Decimal:
        key = currency.quote_key if isinstance(currency, Currency) else str(currency).lower()
        return self.base_unit_price_by_currency[key]

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "baseUnitPriceByCurrency": {
                key: str(value) for key, value in self.base_unit_price_by_currency.items()
            },
            "change24hByCurrency": {
                key: str(value) for key, value in self.change_24h_by_currency.items()
            },
            "isLive": self.is_live,
            "lastUpdated": self.last_updated.isoformat(),
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class MarketSentiment:
    value: int
    description: str
    change_24h: Decimal
    market_cap: Decimal
    volume: Decimal
    is_live: bool
    last_updated: datetime
    error: str | None = None


def fallback_quote(
    now: datetime,
    error: str | None = None,
    prices: dict[str, Decimal] = FALLBACK_PRICES,
) -> PriceQuote:
    return PriceQuote(
        base_unit_price_by_currency=dict(prices),
        change_24h_by_currency={key: Decimal("0") for key in QUOTE_CURRENCIES},
        is_live=False,
        last_updated=now,
        error=error,
    )


def sentiment_score(market_cap_change: Decimal) -> int:
    score = NEUTRAL_SENTIMENT
    if market_cap_change > 5:
        score += 20
    elif market_cap_change > 2:
        score += 10
    elif market_cap_change > 0:
        score += 5
    elif market_cap_change < -5:
        score -= 20
    elif market_cap_change < -2:
        score -= 10
    elif market_cap_change < 0:
        score -= 5
    return max(0, min(100, score))


def sentiment_description(score: int) -> str:
    if score >= 80:
        return "Very Bullish"
    if score >= 70:
        return "Bullish"
    if score >= 60:
        return "Slightly Bullish"
    if score >= 40:
        return "Neutral"
    if score >= 30:
        return "Slightly Bearish"
    if score >= 20:
        return "Bearish"
    return "Very Bearish"


def _group(value: Decimal, places: int) -> str:
    quantized = value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    text = f"{quantized:,.{places}f}"
    if places:
        text = text.rstrip("0").rstrip(".")
    return text


def format_price(value: Decimal | float | int | None, currency: Currency | str = Currency.USD) -> str:
    """Display string with magnitude-dependent precision, e.g. `$2,300` or `€0.0512`."""
    key = currency.quote_key if isinstance(currency, Currency) else str(currency).lower()
    symbol = "€" if key == "eur" else "$"

    if value is None:
        return f"{symbol}0.00"
    amount = _to_decimal(value, default=None)
    if amount is None or amount.is_nan():
        return f"{symbol}0.00"

    if amount >= 1000:
        return f"{symbol}{_group(amount, 0)}"
    if amount >= 1:
        return f"{symbol}{_group(amount, 2)}"
    return f"{symbol}{_group(amount, 4)}"


@dataclass(frozen=True)
class GoalPreset:
    label: str
    value: Decimal
    currency: Currency
    description: str


PRICE_TARGET_PRESETS: tuple[GoalPreset, ...] = (
    GoalPreset("Exit at $3000/ETH", Decimal("3000"), Currency.USD, "Moderate ATH"),
    GoalPreset("Exit at $4000/ETH", Decimal("4000"), Currency.USD, "New ATH"),
    GoalPreset("Exit at $5000/ETH", Decimal("5000"), Currency.USD, "Bull run target"),
    GoalPreset("Exit at $10000/ETH", Decimal("10000"), Currency.USD, "Long-term target"),
    GoalPreset("Exit at €2500/ETH", Decimal("2500"), Currency.EUR, "Moderate ATH in EUR"),
    GoalPreset("Exit at €4000/ETH", Decimal("4000"), Currency.EUR, "Bull run target in EUR"),
)

PORTFOLIO_TARGET_PRESETS: tuple[GoalPreset, ...] = (
    GoalPreset("Portfolio $1000", Decimal("1000"), Currency.USD, "First milestone"),
    GoalPreset("Portfolio $5000", Decimal("5000"), Currency.USD, "Intermediate milestone"),
    GoalPreset("Portfolio $10000", Decimal("10000"), Currency.USD, "Ambitious milestone"),
    GoalPreset("Portfolio $25000", Decimal("25000"), Currency.USD, "Long-term target"),
    GoalPreset("Portfolio €1000", Decimal("1000"), Currency.EUR, "First milestone in EUR"),
    GoalPreset("Portfolio €5000", Decimal("5000"), Currency.EUR, "Intermediate milestone in EUR"),
)


def predefined_goals() -> dict[str, list[GoalPreset]]:
    return {
        "price_targets": list(PRICE_TARGET_PRESETS),
        "portfolio_targets": list(PORTFOLIO_TARGET_PRESETS),
    }


@dataclass
class _Entry:
    value: Any = None
    fetched_at: datetime | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class PriceOracleCache:
    """Process-wide quote and sentiment cache.

    Reads are served from memory while younger than their TTL. A stale read
    refreshes under a per-entry lock, re-checking freshness once the lock is
    held, so concurrent callers share one provider request. Provider failures
    never escape: the caller gets the last good value (or the static fallback)
    flagged `is_live=False`, and that substitute is cached for the same TTL.
    """

    def __init__(
        self,
        *,
        base_url: str = "https://api.coingecko.com/api/v3",
        asset_id: str = "ethereum",
        clock: Clock | None = None,
        price_ttl_seconds: float = 300,
        sentiment_ttl_seconds: float = 1800,
        price_timeout_seconds: float = 5.0,
        sentiment_timeout_seconds: float = 8.0,
        max_retries: int = 1,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.asset_id = asset_id
        self.clock = clock or SystemClock()
        self.price_ttl = timedelta(seconds=price_ttl_seconds)
        self.sentiment_ttl = timedelta(seconds=sentiment_ttl_seconds)
        self.price_timeout_seconds = price_timeout_seconds
        self.sentiment_timeout_seconds = sentiment_timeout_seconds
        self.max_retries = max_retries
        self._transport = transport
        self._price = _Entry()
        self._btc_price = _Entry()
        self._sentiment = _Entry()
        self._last_live_quotes: dict[str, PriceQuote] = {}
        self.fetch_count = 0

    def _is_fresh(self, entry: _Entry, ttl: timedelta) -> bool:
        return entry.fetched_at is not None and self.clock.now() - entry.fetched_at < ttl

    async def _fetch_json(self, path: str, params: dict[str, str], timeout_seconds: float) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        self.fetch_count += 1

        for attempt in range(self.max_retries + 1):
            try:
                async with httpx.AsyncClient(timeout=timeout_seconds, transport=self._transport) as client:
                    response = await client.get(url, params=params, headers={"Accept": "application/json"})
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if attempt < self.max_retries:
                    await asyncio.sleep(0.5 * (2**attempt))
                    continue
                raise PriceProviderUnavailableError(f"Price provider unreachable: {exc}") from exc

            if response.status_code == 429:
                raise PriceProviderUnavailableError("Rate limit reached")

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                await asyncio.sleep(0.5 * (2**attempt))
                continue

            if response.status_code >= 400:
                raise PriceProviderUnavailableError(f"HTTP error! status: {response.status_code}")

            try:
                payload = response.json()
            except ValueError as exc:
                raise PriceProviderUnavailableError("Invalid JSON from price provider") from exc

            if not isinstance(payload, dict):
                raise PriceProviderUnavailableError("Unexpected price provider payload")
            return payload

        raise PriceProviderUnavailableError("Price provider request failed")

    async def _fetch_quote(self, asset_id: str, fallback_prices: dict[str, Decimal]) -> PriceQuote:
        payload = await self._fetch_json(
            "/simple/price",
            {
                "ids": asset_id,
                "vs_currencies": ",".join(QUOTE_CURRENCIES),
                "include_24hr_change": "true",
            },
            self.price_timeout_seconds,
        )
        data = payload.get(asset_id)
        if not data:
            raise PriceProviderUnavailableError(f"{asset_id} price data not found")

        return PriceQuote(
            base_unit_price_by_currency={
                key: _to_decimal(data.get(key), fallback_prices[key]) or fallback_prices[key]
                for key in QUOTE_CURRENCIES
            },
            change_24h_by_currency={
                key: _to_decimal(data.get(f"{key}_24h_change")) for key in QUOTE_CURRENCIES
            },
            is_live=True,
            last_updated=self.clock.now(),
        )

    async def _fetch_sentiment(self) -> MarketSentiment:
        payload = await self._fetch_json("/global", {}, self.sentiment_timeout_seconds)
        data = payload.get("data") or {}
        change = _to_decimal(data.get("market_cap_change_percentage_24h_usd"))
        score = sentiment_score(change)
        return MarketSentiment(
            value=score,
            description=sentiment_description(score),
            change_24h=change,
            market_cap=_to_decimal((data.get("total_market_cap") or {}).get("usd")),
            volume=_to_decimal((data.get("total_volume") or {}).get("usd")),
            is_live=True,
            last_updated=self.clock.now(),
        )

    async def _cached_quote(self, entry: _Entry, asset_id: str, fallback_prices: dict[str, Decimal]) -> PriceQuote:
        if self._is_fresh(entry, self.price_ttl):
            return entry.value

        async with entry.lock:
            if self._is_fresh(entry, self.price_ttl):
                return entry.value

            try:
                quote = await self._fetch_quote(asset_id, fallback_prices)
                self._last_live_quotes[asset_id] = quote
            except PriceProviderUnavailableError as exc:
                logger.warning("Price provider unavailable for %s, using fallback quote: %s", asset_id, exc)
                last_live = self._last_live_quotes.get(asset_id)
                if last_live is not None:
                    quote = replace(last_live, is_live=False, error=str(exc))
                else:
                    quote = fallback_quote(self.clock.now(), error=str(exc), prices=fallback_prices)

            entry.value = quote
            entry.fetched_at = self.clock.now()
            return quote

    async def get_quote(self) -> PriceQuote:
        return await self._cached_quote(self._price, self.asset_id, FALLBACK_PRICES)

    async def get_btc_quote(self) -> PriceQuote:
        """BTC reference quote, shown beside the ETH quote; never used for goal progress."""
        return await self._cached_quote(self._btc_price, BTC_ASSET_ID, BTC_FALLBACK_PRICES)

    async def get_sentiment(self) -> MarketSentiment:
        entry = self._sentiment
        if self._is_fresh(entry, self.sentiment_ttl):
            return entry.value

        async with entry.lock:
            if self._is_fresh(entry, self.sentiment_ttl):
                return entry.value

            try:
                sentiment = await self._fetch_sentiment()
            except PriceProviderUnavailableError as exc:
                logger.warning("Sentiment provider unavailable, using neutral fallback: %s", exc)
                sentiment = MarketSentiment(
                    value=NEUTRAL_SENTIMENT,
                    description=sentiment_description(NEUTRAL_SENTIMENT),
                    change_24h=Decimal("0"),
                    market_cap=Decimal("0"),
                    volume=Decimal("0"),
                    is_live=False,
                    last_updated=self.clock.now(),
                    error=str(exc),
                )

            entry.value = sentiment
            entry.fetched_at = self.clock.now()
            return sentiment

    async def run_refresh_loop(
        self,
        refresh: Callable[[], Awaitable[Any]],
        interval_seconds: float,
    ) -> None:
        """Call `refresh` every `interval_seconds` until cancelled."""
        while True:
            try:
                await refresh()
            except Exception:
                logger.exception("Price cache refresh failed")
            await asyncio.sleep(interval_seconds)
