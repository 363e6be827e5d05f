"""Goal and ledger-transaction records plus the canonical ledger enum mapping."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class GoalType(str, Enum):
    AMOUNT_TARGET = "AmountTarget"
    PRICE_TARGET = "PriceTarget"
    PORTFOLIO_VALUE_TARGET = "PortfolioValueTarget"

    @property
    def ledger_code(self) -> int:
        return _GOAL_TYPE_CODES[self]

    @classmethod
    def from_ledger_code(cls, code: int) -> GoalType:
        for goal_type, value in _GOAL_TYPE_CODES.items():
            if value == int(code):
                return goal_type
        raise ValueError(f"Unknown goal type code: {code}")

    @property
    def uses_unlock_timestamp(self) -> bool:
        return self is GoalType.AMOUNT_TARGET

    @property
    def requires_currency(self) -> bool:
        return self is not GoalType.AMOUNT_TARGET


class Currency(str, Enum):
    USD = "USD"
    EUR = "EUR"

    @property
    def ledger_code(self) -> int:
        return _CURRENCY_CODES[self]

    @classmethod
    def from_ledger_code(cls, code: int) -> Currency:
        for currency, value in _CURRENCY_CODES.items():
            if value == int(code):
                return currency
        raise ValueError(f"Unknown currency code: {code}")

    @property
    def quote_key(self) -> str:
        """Lower-case key used by the price provider payload."""
        return self.value.lower()


_GOAL_TYPE_CODES: dict[GoalType, int] = {
    GoalType.AMOUNT_TARGET: 0,
    GoalType.PRICE_TARGET: 1,
    GoalType.PORTFOLIO_VALUE_TARGET: 2,
}

_CURRENCY_CODES: dict[Currency, int] = {
    Currency.USD: 0,
    Currency.EUR: 1,
}


class ConfirmationState(str, Enum):
    DRAFT = "Draft"
    PENDING_CHAIN_CONFIRMATION = "PendingChainConfirmation"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ConfirmationState.CONFIRMED, ConfirmationState.FAILED)


CONFIRMATION_TRANSITIONS: dict[ConfirmationState, set[ConfirmationState]] = {
    ConfirmationState.DRAFT: {
        ConfirmationState.PENDING_CHAIN_CONFIRMATION,
        ConfirmationState.FAILED,
    },
    ConfirmationState.PENDING_CHAIN_CONFIRMATION: {
        ConfirmationState.CONFIRMED,
        ConfirmationState.FAILED,
    },
    ConfirmationState.CONFIRMED: set(),
    ConfirmationState.FAILED: set(),
}


class TransactionKind(str, Enum):
    GOAL_CREATION = "GoalCreation"
    DEPOSIT = "Deposit"
    WITHDRAWAL = "Withdrawal"
    EARLY_WITHDRAWAL = "EarlyWithdrawal"


class TransactionStatus(str, Enum):
    SUBMITTED = "Submitted"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.SUBMITTED


@dataclass(frozen=True)
class Goal:
    id: UUID
    owner_id: UUID
    wallet_address: str
    goal_type: GoalType
    target_value: Decimal
    currency: Currency | None
    unlock_timestamp: datetime | None
    description: str
    current_balance: Decimal
    deposit_count: int
    confirmation_state: ConfirmationState
    is_active: bool
    is_completed: bool
    on_chain_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_bound(self) -> bool:
        return self.on_chain_id is not None


@dataclass(frozen=True)
class LedgerTransaction:
    id: UUID
    kind: TransactionKind
    goal_id: UUID
    status: TransactionStatus
    on_chain_goal_id: int | None = None
    amount: Decimal | None = None
    tx_hash: str | None = None
    created_at: datetime | None = None


GOAL_COLUMNS = (
    "id",
    "on_chain_id",
    "owner_id",
    "wallet_address",
    "goal_type",
    "target_value",
    "currency",
    "unlock_timestamp",
    "description",
    "current_balance",
    "deposit_count",
    "confirmation_state",
    "is_active",
    "is_completed",
    "created_at",
    "updated_at",
)

TRANSACTION_COLUMNS = (
    "id",
    "kind",
    "goal_id",
    "on_chain_goal_id",
    "amount",
    "tx_hash",
    "status",
    "created_at",
)


def _decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def goal_to_record(goal: Goal) -> dict[str, Any]:
    """Serialize a goal into the persisted `goals` row shape."""
    return {
        "id": goal.id,
        "on_chain_id": goal.on_chain_id,
        "owner_id": goal.owner_id,
        "wallet_address": goal.wallet_address,
        "goal_type": goal.goal_type.value,
        "target_value": goal.target_value,
        "currency": goal.currency.value if goal.currency is not None else None,
        "unlock_timestamp": goal.unlock_timestamp,
        "description": goal.description,
        "current_balance": goal.current_balance,
        "deposit_count": goal.deposit_count,
        "confirmation_state": goal.confirmation_state.value,
        "is_active": goal.is_active,
        "is_completed": goal.is_completed,
        "created_at": goal.created_at,
        "updated_at": goal.updated_at,
    }


def goal_from_record(row: dict[str, Any]) -> Goal:
    """Rebuild a goal from a `goals` row (dict_row)."""
    currency = row.get("currency")
    on_chain_id = row.get("on_chain_id")
    return Goal(
        id=row["id"],
        on_chain_id=int(on_chain_id) if on_chain_id is not None else None,
        owner_id=row["owner_id"],
        wallet_address=str(row["wallet_address"]),
        goal_type=GoalType(row["goal_type"]),
        target_value=_decimal(row["target_value"]),
        currency=Currency(currency) if currency else None,
        unlock_timestamp=row.get("unlock_timestamp"),
        description=str(row.get("description") or ""),
        current_balance=_decimal(row.get("current_balance")),
        deposit_count=int(row.get("deposit_count") or 0),
        confirmation_state=ConfirmationState(row["confirmation_state"]),
        is_active=bool(row.get("is_active", True)),
        is_completed=bool(row.get("is_completed", False)),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def transaction_to_record(transaction: LedgerTransaction) -> dict[str, Any]:
    return {
        "id": transaction.id,
        "kind": transaction.kind.value,
        "goal_id": transaction.goal_id,
        "on_chain_goal_id": transaction.on_chain_goal_id,
        "amount": transaction.amount,
        "tx_hash": transaction.tx_hash,
        "status": transaction.status.value,
        "created_at": transaction.created_at,
    }


def transaction_from_record(row: dict[str, Any]) -> LedgerTransaction:
    amount = row.get("amount")
    on_chain_goal_id = row.get("on_chain_goal_id")
    return LedgerTransaction(
        id=row["id"],
        kind=TransactionKind(row["kind"]),
        goal_id=row["goal_id"],
        on_chain_goal_id=int(on_chain_goal_id) if on_chain_goal_id is not None else None,
        amount=_decimal(amount) if amount is not None else None,
        tx_hash=row.get("tx_hash"),
        status=TransactionStatus(row["status"]),
        created_at=row.get("created_at"),
    )


@dataclass(frozen=True)
class Eligibility:
    """Ledger answer to "may this goal be withdrawn on the regular path?"."""

    eligible: bool
    reason: str = ""
