"""Withdrawal planning: regular, early (penalised) or blocked."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Union

from ..errors import ValidationError
from ..models import Eligibility, Goal, GoalType

EARLY_WITHDRAWAL_PENALTY_RATE = Decimal("0.10")
AVAILABLE_TEXT = "Available to withdraw"


@dataclass(frozen=True)
class Blocked:
    reason: str


@dataclass(frozen=True)
class RegularWithdrawal:
    amount: Decimal


@dataclass(frozen=True)
class EarlyWithdrawal:
    requested_amount: Decimal
    penalty: Decimal
    payout: Decimal


WithdrawalPlan = Union[Blocked, RegularWithdrawal, EarlyWithdrawal]


def early_withdrawal_terms(requested_amount: Decimal, balance: Decimal) -> EarlyWithdrawal:
    requested = Decimal(str(requested_amount))
    if requested <= 0:
        raise ValidationError("Early withdrawal amount must be greater than 0")
    if requested > balance:
        raise ValidationError("Early withdrawal amount exceeds the goal balance")

    penalty = requested * EARLY_WITHDRAWAL_PENALTY_RATE
    return EarlyWithdrawal(requested_amount=requested, penalty=penalty, payout=requested - penalty)


def evaluate(goal: Goal, eligibility: Eligibility, early_amount: Decimal | None = None) -> WithdrawalPlan:
    """Decide how `goal` may be withdrawn given the ledger's eligibility answer.

    The plan only describes amounts; submitting it is the orchestrator's job.
    """
    if goal.current_balance <= 0:
        return Blocked(reason="Goal has no balance to withdraw")

    if eligibility.eligible:
        return RegularWithdrawal(amount=goal.current_balance)

    if early_amount is None:
        return Blocked(reason=eligibility.reason or "Goal is not yet withdrawable")

    return early_withdrawal_terms(early_amount, goal.current_balance)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def local_unlock_eligibility(goal: Goal, now: datetime) -> Eligibility:
    """Time-lock check for AmountTarget goals, mirroring the contract's `now >= unlock`."""
    if goal.goal_type is not GoalType.AMOUNT_TARGET:
        return Eligibility(eligible=False, reason="Only the ledger can evaluate price-based unlocks")
    if goal.unlock_timestamp is None:
        return Eligibility(eligible=False, reason="Unlock time not set")

    if _as_utc(now) >= _as_utc(goal.unlock_timestamp):
        return Eligibility(eligible=True)
    return Eligibility(eligible=False, reason="Goal has not reached its unlock date yet")


def time_remaining(goal: Goal, now: datetime) -> str | None:
    """Countdown text such as `3 days, 4 hours remaining`."""
    if goal.unlock_timestamp is None:
        return None

    seconds = int((_as_utc(goal.unlock_timestamp) - _as_utc(now)).total_seconds())
    if seconds <= 0:
        return AVAILABLE_TEXT

    days, rest = divmod(seconds, 86400)
    hours = rest // 3600
    return f"{days} days, {hours} hours remaining"
