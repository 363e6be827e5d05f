"""Error taxonomy shared by the registry, the ledger bridge and the orchestrator."""

from __future__ import annotations

from typing import Any
from uuid import UUID


class GoalVaultError(Exception):
    """Base exception for goal reconciliation errors."""


class ValidationError(GoalVaultError, ValueError):
    """Raised before any write when input is invalid. Never retried."""


class GoalNotFoundError(GoalVaultError, LookupError):
    """Raised when a goal does not exist or is not owned by the caller."""


class AlreadyBoundError(GoalVaultError):
    """Raised when a goal already carries a ledger identifier."""

    def __init__(self, goal_id: UUID, existing_on_chain_id: int, attempted_on_chain_id: int):
        super().__init__(
            f"Goal {goal_id} is already bound to on-chain id {existing_on_chain_id}"
            f" (attempted {attempted_on_chain_id})"
        )
        self.goal_id = goal_id
        self.existing_on_chain_id = existing_on_chain_id
        self.attempted_on_chain_id = attempted_on_chain_id


class InvalidStateTransitionError(GoalVaultError):
    """Raised when a one-way lifecycle state would move backwards."""


class StoreUnavailableError(GoalVaultError):
    """Raised when the off-chain store times out or rejects an operation."""


class LedgerRejectedError(GoalVaultError):
    """Raised on wallet-side rejection or on-chain revert. Message is the ledger's own."""

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class IdentifierExtractionFailure(GoalVaultError):
    """Raised when a mined creation receipt carries no recognised GoalCreated event."""

    def __init__(self, goal_id: UUID, tx_hash: str):
        super().__init__(
            f"Creation transaction {tx_hash} for goal {goal_id} was mined but no "
            "GoalCreated event could be decoded; the goal is an orphan draft"
        )
        self.goal_id = goal_id
        self.tx_hash = tx_hash


class PriceProviderUnavailableError(GoalVaultError):
    """Raised inside the price cache only; callers always get a fallback quote."""


class PartialReconciliationFailure(GoalVaultError):
    """A ledger operation confirmed but the off-chain patch did not apply."""

    def __init__(self, message: str, *, goal_id: UUID, transaction_id: UUID | None = None, cause: Any = None):
        super().__init__(message)
        self.goal_id = goal_id
        self.transaction_id = transaction_id
        self.cause = cause


class WithdrawalBlockedError(GoalVaultError):
    """Raised when the ledger reports the goal is not yet withdrawable."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class WalletLinkConflictError(GoalVaultError):
    """Raised when a wallet is already linked to another owner."""


class TransactionNotFoundError(GoalVaultError, LookupError):
    """Raised when a ledger transaction record does not exist."""
