"""Market data router: ETH and BTC quotes, sentiment and goal presets."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from .dependencies import get_price_cache
from .models import Currency
from .services.price_oracle import GoalPreset, PriceOracleCache, PriceQuote, format_price, predefined_goals

router = APIRouter(prefix="/market", tags=["market"])


class SentimentResponse(BaseModel):
    value: int
    description: str
    change_24h: Decimal
    market_cap: Decimal
    volume: Decimal
    is_live: bool
    last_updated: datetime
    error: str | None = None


class GoalPresetResponse(BaseModel):
    label: str
    value: Decimal
    currency: Currency
    description: str
    display_value: str


class PredefinedGoalsResponse(BaseModel):
    price_targets: list[GoalPresetResponse]
    portfolio_targets: list[GoalPresetResponse]


def _preset_response(preset: GoalPreset) -> GoalPresetResponse:
    return GoalPresetResponse(
        label=preset.label,
        value=preset.value,
        currency=preset.currency,
        description=preset.description,
        display_value=format_price(preset.value, preset.currency),
    )


def _quote_payload(quote: PriceQuote) -> dict[str, Any]:
    payload = quote.to_payload()
    payload["display"] = {
        currency.quote_key: format_price(quote.price_for(currency), currency) for currency in Currency
    }
    return payload


@router.get("/quote")
async def quote_endpoint(
    price_cache: PriceOracleCache = Depends(get_price_cache),
) -> dict[str, Any]:
    """
    Current ETH quote in USD and EUR.

    `isLive` is false when the provider is down and cached or fallback prices are served.
    """
    return _quote_payload(await price_cache.get_quote())


@router.get("/btc")
async def btc_quote_endpoint(
    price_cache: PriceOracleCache = Depends(get_price_cache),
) -> dict[str, Any]:
    """Current BTC quote, same shape as `/market/quote`."""
    return _quote_payload(await price_cache.get_btc_quote())


@router.get("/sentiment", response_model=SentimentResponse)
async def sentiment_endpoint(
    price_cache: PriceOracleCache = Depends(get_price_cache),
) -> SentimentResponse:
    sentiment = await price_cache.get_sentiment()
    return SentimentResponse(
        value=sentiment.value,
        description=sentiment.description,
        change_24h=sentiment.change_24h,
        market_cap=sentiment.market_cap,
        volume=sentiment.volume,
        is_live=sentiment.is_live,
        last_updated=sentiment.last_updated,
        error=sentiment.error,
    )


@router.get("/predefined-goals", response_model=PredefinedGoalsResponse)
async def predefined_goals_endpoint() -> PredefinedGoalsResponse:
    presets = predefined_goals()
    return PredefinedGoalsResponse(
        price_targets=[_preset_response(preset) for preset in presets["price_targets"]],
        portfolio_targets=[_preset_response(preset) for preset in presets["portfolio_targets"]],
    )
