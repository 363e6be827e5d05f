"""Drives goals and fund movements through both stores.

Every ledger-backed operation has two phases: submit to the ledger, then,
once the receipt confirms, patch the off-chain record. The off-chain record
never changes optimistically. When the ledger confirms but the patch cannot
be written, the patch is queued in the `ReconciliationLog` and retried by
`sweep()`; nothing is rolled back.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

import psycopg

from ..clock import Clock, SystemClock
from ..errors import (
    AlreadyBoundError,
    GoalVaultError,
    IdentifierExtractionFailure,
    LedgerRejectedError,
    PartialReconciliationFailure,
    StoreUnavailableError,
    ValidationError,
    WithdrawalBlockedError,
)
from ..ledger.bridge import LedgerBridge, PendingTransaction
from ..ledger.operations import DepositOp, EarlyWithdrawalOp, GoalCreationOp, WithdrawalOp
from ..models import (
    ConfirmationState,
    Currency,
    Goal,
    GoalType,
    LedgerTransaction,
    TransactionKind,
    TransactionStatus,
)
from . import withdrawal_policy
from .goal_registry import GoalRegistry
from .withdrawal_policy import Blocked, EarlyWithdrawal, RegularWithdrawal, WithdrawalPlan

logger = logging.getLogger(__name__)


class CreationPhase(str, Enum):
    IDLE = "Idle"
    DRAFT_PERSISTED = "DraftPersisted"
    CHAIN_SUBMITTED = "ChainSubmitted"
    CHAIN_CONFIRMED = "ChainConfirmed"
    CHAIN_FAILED = "ChainFailed"


class PatchKind(str, Enum):
    BIND = "bind"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


@dataclass
class PendingPatch:
    """A ledger-confirmed operation whose off-chain patch has not been applied."""

    kind: PatchKind
    goal_id: UUID
    transaction_id: UUID
    on_chain_id: int | None = None
    amount: Decimal | None = None
    closes_goal: bool = False
    attempts: int = 0
    last_error: str = ""
    queued_at: datetime | None = None


class ReconciliationLog:
    """In-process queue of pending patches, keyed by ledger transaction id."""

    def __init__(self) -> None:
        self._entries: dict[UUID, PendingPatch] = {}

    def add(self, patch: PendingPatch) -> None:
        self._entries[patch.transaction_id] = patch

    def discard(self, transaction_id: UUID) -> None:
        self._entries.pop(transaction_id, None)

    def pending(self) -> list[PendingPatch]:
        return list(self._entries.values())

    def for_goal(self, goal_id: UUID) -> list[PendingPatch]:
        return [patch for patch in self._entries.values() if patch.goal_id == goal_id]

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class GoalCreationFlow:
    goal: Goal
    phase: CreationPhase = CreationPhase.IDLE
    transaction: LedgerTransaction | None = None
    handle: PendingTransaction | None = None
    completion: asyncio.Task | None = None
    warning: str | None = None
    error: Exception | None = None


@dataclass(frozen=True)
class OperationResult:
    goal: Goal | None
    transaction: LedgerTransaction
    warning: str | None = None
    plan: WithdrawalPlan | None = None


@dataclass
class _Submission:
    transaction: LedgerTransaction
    handle: PendingTransaction
    warnings: list[str] = field(default_factory=list)


class ReconciliationOrchestrator:
    def __init__(
        self,
        registry: GoalRegistry,
        bridge: LedgerBridge,
        *,
        clock: Clock | None = None,
        reconciliation_log: ReconciliationLog | None = None,
        legacy_amount_goal_creation: bool = False,
    ) -> None:
        self.registry = registry
        self.bridge = bridge
        self.clock = clock or SystemClock()
        self.reconciliation_log = reconciliation_log or ReconciliationLog()
        self.legacy_amount_goal_creation = legacy_amount_goal_creation
        # Entries vanish once no coroutine holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = weakref.WeakValueDictionary()
        self._background: set[asyncio.Task] = set()

    def _lock_for(self, goal_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(goal_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[goal_id] = lock
        return lock

    def _queue_patch(self, patch: PendingPatch, cause: Exception) -> str:
        patch.attempts += 1
        patch.last_error = str(cause)
        patch.queued_at = patch.queued_at or self.clock.now()
        failure = PartialReconciliationFailure(
            f"Ledger confirmed {patch.kind.value} for goal {patch.goal_id} but the record store "
            f"could not be updated; queued for retry ({cause})",
            goal_id=patch.goal_id,
            transaction_id=patch.transaction_id,
            cause=cause,
        )
        logger.warning("%s", failure)
        self.reconciliation_log.add(patch)
        return str(failure)

    async def _mark_failed(self, transaction_id: UUID, goal_id: UUID | None = None) -> None:
        """Best-effort failure bookkeeping after a ledger rejection."""
        try:
            await self.registry.set_transaction_status(transaction_id, TransactionStatus.FAILED)
            if goal_id is not None:
                await self.registry.set_confirmation_state(goal_id, ConfirmationState.FAILED)
        except StoreUnavailableError as exc:
            logger.warning("Could not record failure of transaction %s: %s", transaction_id, exc)

    async def _submit(self, goal_id: UUID, operation, transaction: LedgerTransaction) -> _Submission:
        try:
            handle = await self.bridge.submit(operation)
        except LedgerRejectedError:
            await self._mark_failed(transaction.id)
            raise

        submission = _Submission(transaction=transaction, handle=handle)
        try:
            submission.transaction = await self.registry.attach_tx_hash(transaction.id, handle.tx_hash)
        except StoreUnavailableError as exc:
            logger.warning("Could not store tx hash %s for goal %s: %s", handle.tx_hash, goal_id, exc)
            submission.warnings.append(f"Transaction hash {handle.tx_hash} not recorded: {exc}")
        return submission

    # Goal creation

    async def begin_goal_creation(
        self,
        owner_id: UUID,
        wallet_address: str,
        goal_type: GoalType | str,
        target_value: Decimal | str | int,
        currency: Currency | str | None = None,
        unlock_timestamp: datetime | None = None,
        description: str = "",
        *,
        background: bool = True,
    ) -> GoalCreationFlow:
        """Persist the draft and submit it; returns once the ledger has a tx hash.

        With `background=True` the completion (confirmation and binding) runs
        as a task stored on `flow.completion`.
        """
        goal = await self.registry.create_draft(
            owner_id,
            wallet_address,
            goal_type,
            target_value,
            currency,
            unlock_timestamp,
            description,
        )
        flow = GoalCreationFlow(goal=goal, phase=CreationPhase.DRAFT_PERSISTED)

        transaction = await self.registry.record_transaction(goal.id, TransactionKind.GOAL_CREATION)
        operation = GoalCreationOp(
            goal_id=goal.id,
            goal_type=goal.goal_type,
            target_value=goal.target_value,
            currency=goal.currency,
            unlock_timestamp=goal.unlock_timestamp,
            description=goal.description,
            legacy=self.legacy_amount_goal_creation and goal.goal_type is GoalType.AMOUNT_TARGET,
        )

        try:
            submission = await self._submit(goal.id, operation, transaction)
        except LedgerRejectedError as exc:
            await self._mark_failed(transaction.id, goal.id)
            flow.phase = CreationPhase.CHAIN_FAILED
            flow.error = exc
            raise

        flow.transaction = submission.transaction
        flow.handle = submission.handle
        flow.phase = CreationPhase.CHAIN_SUBMITTED
        if submission.warnings:
            flow.warning = "; ".join(submission.warnings)

        try:
            flow.goal = await self.registry.set_confirmation_state(
                goal.id, ConfirmationState.PENDING_CHAIN_CONFIRMATION
            )
        except StoreUnavailableError as exc:
            logger.warning("Goal %s submitted but not marked pending: %s", goal.id, exc)

        logger.info("Goal %s creation submitted as %s", goal.id, submission.handle.tx_hash)

        if background:
            flow.completion = self._spawn(self.complete_goal_creation(flow), name=f"goal-creation:{goal.id}")
        return flow

    def _spawn(self, coro, *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, (LedgerRejectedError, IdentifierExtractionFailure)):
            logger.warning("Background task %s ended with %s: %s", task.get_name(), type(exc).__name__, exc)
        else:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    async def complete_goal_creation(self, flow: GoalCreationFlow) -> OperationResult:
        """Wait for the creation receipt and bind the ledger id to the draft."""
        if flow.handle is None or flow.transaction is None:
            raise ValidationError("Goal creation was never submitted")

        goal_id = flow.goal.id
        async with self._lock_for(goal_id):
            try:
                receipt = await self.bridge.await_confirmation(flow.handle)
            except LedgerRejectedError as exc:
                await self._mark_failed(flow.transaction.id, goal_id)
                flow.phase = CreationPhase.CHAIN_FAILED
                flow.error = exc
                raise

            on_chain_id = self.bridge.extract_identifier(receipt)
            if on_chain_id is None:
                failure = IdentifierExtractionFailure(goal_id, receipt.tx_hash)
                logger.error("%s", failure)
                try:
                    await self.registry.set_transaction_status(flow.transaction.id, TransactionStatus.CONFIRMED)
                    flow.goal = await self.registry.set_confirmation_state(goal_id, ConfirmationState.FAILED)
                except StoreUnavailableError as exc:
                    logger.warning("Could not mark orphan goal %s as failed: %s", goal_id, exc)
                flow.phase = CreationPhase.CHAIN_FAILED
                flow.error = failure
                raise failure

            flow.phase = CreationPhase.CHAIN_CONFIRMED
            try:
                goal, transaction = await self.registry.confirm_binding(goal_id, flow.transaction.id, on_chain_id)
            except AlreadyBoundError as exc:
                if exc.existing_on_chain_id != on_chain_id:
                    flow.error = exc
                    raise
                goal = await self.registry.get_goal(goal_id)
                transaction = await self.registry.set_transaction_status(
                    flow.transaction.id, TransactionStatus.CONFIRMED, on_chain_goal_id=on_chain_id
                )
            except StoreUnavailableError as exc:
                flow.warning = self._queue_patch(
                    PendingPatch(
                        kind=PatchKind.BIND,
                        goal_id=goal_id,
                        transaction_id=flow.transaction.id,
                        on_chain_id=on_chain_id,
                    ),
                    exc,
                )
                return OperationResult(goal=flow.goal, transaction=flow.transaction, warning=flow.warning)

            flow.goal = goal
            flow.transaction = transaction
            logger.info("Goal %s confirmed on-chain as %s", goal_id, on_chain_id)
            return OperationResult(goal=goal, transaction=transaction, warning=flow.warning)

    async def create_goal(
        self,
        owner_id: UUID,
        wallet_address: str,
        goal_type: GoalType | str,
        target_value: Decimal | str | int,
        currency: Currency | str | None = None,
        unlock_timestamp: datetime | None = None,
        description: str = "",
    ) -> OperationResult:
        flow = await self.begin_goal_creation(
            owner_id,
            wallet_address,
            goal_type,
            target_value,
            currency,
            unlock_timestamp,
            description,
            background=False,
        )
        return await self.complete_goal_creation(flow)

    # Deposits and withdrawals

    async def _confirmed_goal(self, goal_id: UUID, owner_id: UUID) -> Goal:
        goal = await self.registry.get_goal(goal_id, owner_id)
        if not goal.is_bound or goal.confirmation_state is not ConfirmationState.CONFIRMED:
            raise ValidationError("Goal is not confirmed on-chain yet")
        if not goal.is_active:
            raise ValidationError("Goal is no longer active")
        return goal

    async def _settle(self, submission: _Submission, patch: PendingPatch) -> OperationResult:
        try:
            await self.bridge.await_confirmation(submission.handle)
        except LedgerRejectedError:
            await self._mark_failed(submission.transaction.id)
            raise

        warnings = list(submission.warnings)
        try:
            if patch.kind is PatchKind.DEPOSIT:
                goal, transaction = await self.registry.confirm_deposit(
                    patch.goal_id, patch.transaction_id, patch.amount
                )
            else:
                goal, transaction = await self.registry.confirm_withdrawal(
                    patch.goal_id, patch.transaction_id, patch.amount, closes_goal=patch.closes_goal
                )
        except StoreUnavailableError as exc:
            warnings.append(self._queue_patch(patch, exc))
            goal = await self._last_known_goal(patch.goal_id)
            transaction = submission.transaction

        return OperationResult(
            goal=goal,
            transaction=transaction,
            warning="; ".join(warnings) or None,
        )

    async def _last_known_goal(self, goal_id: UUID) -> Goal | None:
        try:
            return await self.registry.get_goal(goal_id)
        except StoreUnavailableError:
            return None

    async def deposit(self, goal_id: UUID, owner_id: UUID, amount: Decimal) -> OperationResult:
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValidationError("Deposit amount must be greater than 0")

        async with self._lock_for(goal_id):
            goal = await self._confirmed_goal(goal_id, owner_id)
            transaction = await self.registry.record_transaction(
                goal.id,
                TransactionKind.DEPOSIT,
                on_chain_goal_id=goal.on_chain_id,
                amount=amount,
            )
            submission = await self._submit(
                goal.id,
                DepositOp(goal_id=goal.id, on_chain_goal_id=goal.on_chain_id, amount=amount),
                transaction,
            )
            return await self._settle(
                submission,
                PendingPatch(
                    kind=PatchKind.DEPOSIT,
                    goal_id=goal.id,
                    transaction_id=transaction.id,
                    on_chain_id=goal.on_chain_id,
                    amount=amount,
                ),
            )

    async def plan_withdrawal(
        self,
        goal_id: UUID,
        owner_id: UUID,
        early_amount: Decimal | None = None,
    ) -> WithdrawalPlan:
        goal = await self.registry.get_goal(goal_id, owner_id)
        if not goal.is_bound:
            return Blocked(reason="Goal is not confirmed on-chain yet")
        if not goal.is_active:
            return Blocked(reason="Goal is no longer active")
        eligibility = await self.bridge.check_withdrawal_eligibility(goal.on_chain_id)
        return withdrawal_policy.evaluate(goal, eligibility, early_amount)

    async def withdraw(
        self,
        goal_id: UUID,
        owner_id: UUID,
        early_amount: Decimal | None = None,
    ) -> OperationResult:
        """Withdraw the full balance when eligible, or `early_amount` with the penalty."""
        async with self._lock_for(goal_id):
            goal = await self._confirmed_goal(goal_id, owner_id)
            eligibility = await self.bridge.check_withdrawal_eligibility(goal.on_chain_id)
            plan = withdrawal_policy.evaluate(goal, eligibility, early_amount)

            if isinstance(plan, Blocked):
                raise WithdrawalBlockedError(plan.reason)

            if isinstance(plan, RegularWithdrawal):
                kind = TransactionKind.WITHDRAWAL
                amount = plan.amount
                operation = WithdrawalOp(goal_id=goal.id, on_chain_goal_id=goal.on_chain_id, amount=amount)
                closes_goal = True
            elif isinstance(plan, EarlyWithdrawal):
                kind = TransactionKind.EARLY_WITHDRAWAL
                amount = plan.requested_amount
                operation = EarlyWithdrawalOp(goal_id=goal.id, on_chain_goal_id=goal.on_chain_id, amount=amount)
                closes_goal = False
            else:
                raise TypeError(f"Unsupported withdrawal plan: {plan!r}")

            transaction = await self.registry.record_transaction(
                goal.id,
                kind,
                on_chain_goal_id=goal.on_chain_id,
                amount=amount,
            )
            submission = await self._submit(goal.id, operation, transaction)
            result = await self._settle(
                submission,
                PendingPatch(
                    kind=PatchKind.WITHDRAWAL,
                    goal_id=goal.id,
                    transaction_id=transaction.id,
                    on_chain_id=goal.on_chain_id,
                    amount=amount,
                    closes_goal=closes_goal,
                ),
            )
            return OperationResult(
                goal=result.goal,
                transaction=result.transaction,
                warning=result.warning,
                plan=plan,
            )

    # Reconciliation queue

    async def _apply_patch(self, patch: PendingPatch) -> None:
        if patch.kind is PatchKind.BIND:
            try:
                await self.registry.confirm_binding(patch.goal_id, patch.transaction_id, patch.on_chain_id)
            except AlreadyBoundError as exc:
                if exc.existing_on_chain_id != patch.on_chain_id:
                    raise
                await self.registry.set_transaction_status(
                    patch.transaction_id, TransactionStatus.CONFIRMED, on_chain_goal_id=patch.on_chain_id
                )
        elif patch.kind is PatchKind.DEPOSIT:
            await self.registry.confirm_deposit(patch.goal_id, patch.transaction_id, patch.amount)
        else:
            await self.registry.confirm_withdrawal(
                patch.goal_id, patch.transaction_id, patch.amount, closes_goal=patch.closes_goal
            )

    async def sweep(self) -> int:
        """Retry queued patches; returns how many were resolved.

        A patch that fails for any store or domain reason stays queued with
        its attempt count bumped; the remaining patches are still tried.
        """
        resolved = 0
        for patch in self.reconciliation_log.pending():
            async with self._lock_for(patch.goal_id):
                try:
                    transaction = await self.registry.get_transaction(patch.transaction_id)
                    if transaction.status is not TransactionStatus.CONFIRMED:
                        await self._apply_patch(patch)
                except (GoalVaultError, psycopg.Error) as exc:
                    patch.attempts += 1
                    patch.last_error = str(exc)
                    if isinstance(exc, StoreUnavailableError):
                        logger.warning(
                            "Patch %s for goal %s still pending after %s attempts: %s",
                            patch.kind.value,
                            patch.goal_id,
                            patch.attempts,
                            exc,
                        )
                    else:
                        logger.error(
                            "Patch %s for goal %s conflicts with stored state: %s",
                            patch.kind.value,
                            patch.goal_id,
                            exc,
                        )
                    continue

            self.reconciliation_log.discard(patch.transaction_id)
            resolved += 1
            logger.info("Applied queued %s patch for goal %s", patch.kind.value, patch.goal_id)
        return resolved

    async def run_sweeper(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            if not len(self.reconciliation_log):
                continue
            try:
                await self.sweep()
            except Exception:
                logger.exception("Reconciliation sweep failed")
