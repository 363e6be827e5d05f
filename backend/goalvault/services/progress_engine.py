"""Goal progress for the three goal semantics."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from uuid import UUID

from ..models import Goal, GoalType
from .price_oracle import PriceOracleCache, PriceQuote

HUNDRED = Decimal("100")
PROGRESS_QUANT = Decimal("0.1")
NEAR_GOAL_PERCENT = Decimal("80")


@dataclass(frozen=True)
class GoalProgress:
    goal_id: UUID
    progress: Decimal
    reached: bool
    current_value: Decimal
    target_value: Decimal
    is_live: bool = True


@dataclass(frozen=True)
class PortfolioSummary:
    total_balance: Decimal
    total_value_by_currency: dict[str, Decimal]
    goals_reached: int
    near_goals: int
    is_live: bool


def _ratio_percent(current: Decimal, target: Decimal) -> Decimal:
    if target <= 0:
        return Decimal("0.0")
    ratio = min(current / target, Decimal("1"))
    percent = (ratio * HUNDRED).quantize(PROGRESS_QUANT, rounding=ROUND_FLOOR)
    return max(Decimal("0.0"), min(percent, Decimal("100.0")))


def compute_progress(goal: Goal, quote: PriceQuote | None = None) -> GoalProgress:
    """Progress percentage in [0, 100], truncated to one decimal.

    - AmountTarget: balance against the target amount.
    - PriceTarget: current quote price against the target price.
    - PortfolioValueTarget: balance times quote price against the target value.

    Price and portfolio goals need a quote; amount goals ignore it.
    """
    if goal.goal_type is GoalType.AMOUNT_TARGET:
        current = goal.current_balance
    else:
        if quote is None:
            raise ValueError(f"{goal.goal_type.value} progress needs a price quote")
        price = quote.price_for(goal.currency)
        if goal.goal_type is GoalType.PRICE_TARGET:
            current = price
        else:
            current = goal.current_balance * price

    return GoalProgress(
        goal_id=goal.id,
        progress=_ratio_percent(current, goal.target_value),
        reached=current >= goal.target_value,
        current_value=current,
        target_value=goal.target_value,
        is_live=True if quote is None else quote.is_live,
    )


class ProgressEngine:
    def __init__(self, price_cache: PriceOracleCache) -> None:
        self.price_cache = price_cache

    async def evaluate(self, goal: Goal) -> GoalProgress:
        if goal.goal_type is GoalType.AMOUNT_TARGET:
            return compute_progress(goal)
        return compute_progress(goal, await self.price_cache.get_quote())

    async def evaluate_many(self, goals: list[Goal]) -> dict[UUID, GoalProgress]:
        """Evaluate goals against a single quote so a listing is internally consistent."""
        quote = None
        if any(goal.goal_type is not GoalType.AMOUNT_TARGET for goal in goals):
            quote = await self.price_cache.get_quote()

        results: dict[UUID, GoalProgress] = {}
        for goal in goals:
            if goal.goal_type is GoalType.AMOUNT_TARGET:
                results[goal.id] = compute_progress(goal)
            else:
                results[goal.id] = compute_progress(goal, quote)
        return results

    async def summarize(self, goals: list[Goal]) -> PortfolioSummary:
        """Totals across `goals`: ETH held, its value per quote currency, reached and near counts.

        A goal is near when its progress is at least `NEAR_GOAL_PERCENT` but it is not reached.
        """
        quote = await self.price_cache.get_quote()
        total_balance = sum((goal.current_balance for goal in goals), Decimal("0"))

        goals_reached = 0
        near_goals = 0
        for goal in goals:
            progress = compute_progress(goal, quote)
            if progress.reached:
                goals_reached += 1
            elif progress.progress >= NEAR_GOAL_PERCENT:
                near_goals += 1

        return PortfolioSummary(
            total_balance=total_balance,
            total_value_by_currency={
                key: total_balance * price for key, price in quote.base_unit_price_by_currency.items()
            },
            goals_reached=goals_reached,
            near_goals=near_goals,
            is_live=quote.is_live,
        )
