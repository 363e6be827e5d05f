from __future__ import annotations

import asyncio
from decimal import Decimal

import httpx
import pytest

from goalvault.models import Currency
from goalvault.services.price_oracle import (
    BTC_FALLBACK_PRICES,
    FALLBACK_PRICES,
    PriceOracleCache,
    format_price,
    predefined_goals,
    sentiment_description,
    sentiment_score,
)

PRICE_BODY = {
    "ethereum": {
        "usd": 3000.5,
        "eur": 2750,
        "usd_24h_change": 1.25,
        "eur_24h_change": -0.5,
    }
}
BTC_BODY = {"bitcoin": {"usd": 64000, "eur": 59000.5, "usd_24h_change": -2.5, "eur_24h_change": -2.25}}
GLOBAL_BODY = {
    "data": {
        "market_cap_change_percentage_24h_usd": 2.5,
        "total_market_cap": {"usd": 2500000000000},
        "total_volume": {"usd": 90000000000},
    }
}


def _run(coro):
    return asyncio.run(coro)


class ProviderStub:
    """Scripted CoinGecko responses behind an httpx.MockTransport."""

    def __init__(self, *, price_status=200, global_status=200):
        self.price_status = price_status
        self.global_status = global_status
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/simple/price"):
            if self.price_status != 200:
                return httpx.Response(self.price_status, json={"error": "nope"})
            body = BTC_BODY if request.url.params["ids"] == "bitcoin" else PRICE_BODY
            return httpx.Response(200, json=body)
        if request.url.path.endswith("/global"):
            if self.global_status != 200:
                return httpx.Response(self.global_status)
            return httpx.Response(200, json=GLOBAL_BODY)
        return httpx.Response(404)

    def cache(self, clock, **kwargs) -> PriceOracleCache:
        return PriceOracleCache(
            base_url="https://prices.test/api/v3",
            clock=clock,
            max_retries=0,
            transport=httpx.MockTransport(self.handler),
            **kwargs,
        )


def test_live_quote_is_parsed_as_decimals(clock) -> None:
    provider = ProviderStub()
    cache = provider.cache(clock)

    quote = _run(cache.get_quote())

    assert quote.is_live is True
    assert quote.price_for(Currency.USD) == Decimal("3000.5")
    assert quote.price_for("EUR") == Decimal("2750")
    assert quote.change_24h_by_currency["eur"] == Decimal("-0.5")
    request = provider.requests[0]
    assert request.url.params["ids"] == "ethereum"
    assert request.url.params["vs_currencies"] == "usd,eur"


def test_quote_is_cached_until_ttl_expires(clock) -> None:
    provider = ProviderStub()
    cache = provider.cache(clock, price_ttl_seconds=300)

    _run(cache.get_quote())
    clock.advance(299)
    _run(cache.get_quote())
    assert cache.fetch_count == 1

    clock.advance(1)
    _run(cache.get_quote())
    assert cache.fetch_count == 2


def test_concurrent_refreshes_share_one_fetch(clock) -> None:
    provider = ProviderStub()
    cache = provider.cache(clock)

    async def scenario():
        return await asyncio.gather(*(cache.get_quote() for _ in range(5)))

    quotes = _run(scenario())

    assert cache.fetch_count == 1
    assert len(provider.requests) == 1
    assert all(quote is quotes[0] for quote in quotes)


def test_rate_limit_without_history_serves_static_fallback(clock, caplog) -> None:
    provider = ProviderStub(price_status=429)
    cache = provider.cache(clock)

    with caplog.at_level("WARNING", logger="goalvault.services.price_oracle"):
        quote = _run(cache.get_quote())

    assert quote.is_live is False
    assert quote.base_unit_price_by_currency == FALLBACK_PRICES
    assert quote.change_24h_by_currency == {"usd": Decimal("0"), "eur": Decimal("0")}
    assert quote.error == "Rate limit reached"
    assert "fallback" in caplog.text


def test_outage_after_success_serves_last_prices_not_live(clock) -> None:
    provider = ProviderStub()
    cache = provider.cache(clock, price_ttl_seconds=30)

    live = _run(cache.get_quote())
    provider.price_status = 503
    clock.advance(31)
    stale = _run(cache.get_quote())

    assert stale.is_live is False
    assert stale.base_unit_price_by_currency == live.base_unit_price_by_currency
    assert "503" in stale.error


def test_fallback_is_cached_for_the_ttl(clock) -> None:
    provider = ProviderStub(price_status=500)
    cache = provider.cache(clock)

    _run(cache.get_quote())
    _run(cache.get_quote())

    assert cache.fetch_count == 1


def test_transport_errors_are_retried_then_fall_back(clock) -> None:
    attempts = []

    def handler(request):
        attempts.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    cache = PriceOracleCache(
        base_url="https://prices.test/api/v3",
        clock=clock,
        max_retries=1,
        transport=httpx.MockTransport(handler),
    )

    quote = _run(cache.get_quote())

    assert len(attempts) == 2
    assert quote.is_live is False
    assert "unreachable" in quote.error


def test_btc_quote_is_cached_separately_from_eth(clock) -> None:
    provider = ProviderStub()
    cache = provider.cache(clock)

    eth = _run(cache.get_quote())
    btc = _run(cache.get_btc_quote())
    _run(cache.get_btc_quote())

    assert eth.price_for(Currency.USD) == Decimal("3000.5")
    assert btc.is_live is True
    assert btc.price_for(Currency.USD) == Decimal("64000")
    assert btc.price_for(Currency.EUR) == Decimal("59000.5")
    assert btc.change_24h_by_currency["usd"] == Decimal("-2.5")
    assert [request.url.params["ids"] for request in provider.requests] == ["ethereum", "bitcoin"]


def test_btc_outage_serves_btc_fallback_not_eth(clock) -> None:
    provider = ProviderStub(price_status=429)
    cache = provider.cache(clock)

    btc = _run(cache.get_btc_quote())

    assert btc.is_live is False
    assert btc.base_unit_price_by_currency == BTC_FALLBACK_PRICES
    assert btc.error == "Rate limit reached"



def test_quote_payload_shape(clock) -> None:
    cache = ProviderStub().cache(clock)

    payload = _run(cache.get_quote()).to_payload()

    assert payload["baseUnitPriceByCurrency"] == {"usd": "3000.5", "eur": "2750"}
    assert payload["change24hByCurrency"]["usd"] == "1.25"
    assert payload["isLive"] is True
    assert "error" not in payload


def test_sentiment_from_market_cap_change(clock) -> None:
    provider = ProviderStub()
    cache = provider.cache(clock)

    sentiment = _run(cache.get_sentiment())

    assert sentiment.value == 60
    assert sentiment.description == "Slightly Bullish"
    assert sentiment.market_cap == Decimal("2500000000000")
    assert sentiment.is_live is True


def test_sentiment_falls_back_to_neutral(clock) -> None:
    cache = ProviderStub(global_status=429).cache(clock)

    sentiment = _run(cache.get_sentiment())

    assert sentiment.value == 50
    assert sentiment.description == "Neutral"
    assert sentiment.is_live is False


@pytest.mark.parametrize(
    "change, score",
    [
        (Decimal("6"), 70),
        (Decimal("3"), 60),
        (Decimal("0.1"), 55),
        (Decimal("0"), 50),
        (Decimal("-1"), 45),
        (Decimal("-3"), 40),
        (Decimal("-7"), 30),
    ],
)
def test_sentiment_score_bands(change, score) -> None:
    assert sentiment_score(change) == score


def test_sentiment_descriptions() -> None:
    assert [sentiment_description(score) for score in (85, 70, 65, 50, 35, 25, 10)] == [
        "Very Bullish",
        "Bullish",
        "Slightly Bullish",
        "Neutral",
        "Slightly Bearish",
        "Bearish",
        "Very Bearish",
    ]


def test_format_price_precision_bands() -> None:
    assert format_price(Decimal("2300")) == "$2,300"
    assert format_price(Decimal("12345.678")) == "$12,346"
    assert format_price(Decimal("2.5"), Currency.EUR) == "€2.5"
    assert format_price(Decimal("0.05123"), "eur") == "€0.0512"
    assert format_price(None) == "$0.00"
    assert format_price("not a number") == "$0.00"


def test_predefined_goals_cover_both_currencies() -> None:
    presets = predefined_goals()

    assert {preset.currency for preset in presets["price_targets"]} == {Currency.USD, Currency.EUR}
    assert presets["portfolio_targets"][0].value == Decimal("1000")
