"""The four operations the bridge can submit to the vault contract."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Union
from uuid import UUID

from ..models import Currency, GoalType, TransactionKind

# Native ETH is addressed as the zero address by the vault.
ETH_ASSET_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class GoalCreationOp:
    goal_id: UUID
    goal_type: GoalType
    target_value: Decimal
    currency: Currency | None
    unlock_timestamp: datetime | None
    description: str
    legacy: bool = False
    kind: TransactionKind = TransactionKind.GOAL_CREATION

    @property
    def amount(self) -> Decimal | None:
        return None


@dataclass(frozen=True)
class DepositOp:
    goal_id: UUID
    on_chain_goal_id: int
    amount: Decimal
    asset_address: str = ETH_ASSET_ADDRESS
    kind: TransactionKind = TransactionKind.DEPOSIT


@dataclass(frozen=True)
class WithdrawalOp:
    goal_id: UUID
    on_chain_goal_id: int
    amount: Decimal
    kind: TransactionKind = TransactionKind.WITHDRAWAL


@dataclass(frozen=True)
class EarlyWithdrawalOp:
    goal_id: UUID
    on_chain_goal_id: int
    amount: Decimal
    kind: TransactionKind = TransactionKind.EARLY_WITHDRAWAL


LedgerOperation = Union[GoalCreationOp, DepositOp, WithdrawalOp, EarlyWithdrawalOp]
