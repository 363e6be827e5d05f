"""Submission and confirmation tracking for vault operations."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from ..clock import Clock, SystemClock
from ..errors import LedgerRejectedError, ValidationError
from ..models import Eligibility, GoalType, TransactionStatus
from .client import GoalDetails, LedgerClient
from .events import Receipt, extract_goal_id
from .operations import (
    DepositOp,
    EarlyWithdrawalOp,
    GoalCreationOp,
    LedgerOperation,
    WithdrawalOp,
)
from .units import to_feed_units, to_unix_seconds, to_wei

logger = logging.getLogger(__name__)


class PendingTransaction:
    """Handle for one submitted operation.

    The receipt wait runs in `task` from the moment of submission. Dropping
    the handle or cancelling an awaiter stops watching; it never cancels the
    operation on the ledger.
    """

    def __init__(
        self,
        operation: LedgerOperation,
        tx_hash: str,
        submitted_at: datetime,
        task: asyncio.Task,
    ) -> None:
        self.operation = operation
        self.tx_hash = tx_hash
        self.submitted_at = submitted_at
        self.task = task

    @property
    def status(self) -> TransactionStatus:
        if not self.task.done():
            return TransactionStatus.SUBMITTED
        if self.task.cancelled() or self.task.exception() is not None:
            return TransactionStatus.FAILED
        receipt: Receipt = self.task.result()
        return TransactionStatus.CONFIRMED if receipt.succeeded else TransactionStatus.FAILED

    def __repr__(self) -> str:
        return f"<PendingTransaction kind={self.operation.kind.value} tx={self.tx_hash} status={self.status.value}>"


def _log_unobserved_failure(tx_hash: str):
    def _callback(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Receipt wait for %s failed: %s", tx_hash, exc)

    return _callback


class LedgerBridge:
    def __init__(self, client: LedgerClient, *, clock: Clock | None = None) -> None:
        self.client = client
        self.clock = clock or SystemClock()

    async def _send(self, operation: LedgerOperation) -> str:
        if isinstance(operation, GoalCreationOp):
            if operation.legacy:
                if operation.goal_type is not GoalType.AMOUNT_TARGET:
                    raise ValidationError("Legacy goal creation only supports AmountTarget goals")
                return await self.client.create_goal_legacy(
                    to_wei(operation.target_value),
                    to_unix_seconds(operation.unlock_timestamp),
                    operation.description,
                )

            if operation.goal_type is GoalType.AMOUNT_TARGET:
                target = to_wei(operation.target_value)
            else:
                target = to_feed_units(operation.target_value)
            currency_code = operation.currency.ledger_code if operation.currency is not None else 0
            return await self.client.create_goal(
                operation.goal_type.ledger_code,
                target,
                currency_code,
                to_unix_seconds(operation.unlock_timestamp),
                operation.description,
            )

        if isinstance(operation, DepositOp):
            return await self.client.deposit(
                operation.asset_address,
                operation.on_chain_goal_id,
                to_wei(operation.amount),
            )

        if isinstance(operation, WithdrawalOp):
            return await self.client.withdraw(operation.on_chain_goal_id)

        if isinstance(operation, EarlyWithdrawalOp):
            return await self.client.withdraw_early(
                operation.on_chain_goal_id,
                to_wei(operation.amount),
            )

        raise TypeError(f"Unsupported ledger operation: {operation!r}")

    async def submit(self, operation: LedgerOperation) -> PendingTransaction:
        """Send `operation` and return once the ledger has issued a tx hash."""
        tx_hash = await self._send(operation)
        task = asyncio.create_task(
            self.client.wait_for_receipt(tx_hash),
            name=f"receipt:{tx_hash}",
        )
        task.add_done_callback(_log_unobserved_failure(tx_hash))
        logger.info(
            "Submitted %s for goal %s as %s",
            operation.kind.value,
            operation.goal_id,
            tx_hash,
        )
        return PendingTransaction(operation, tx_hash, self.clock.now(), task)

    async def await_confirmation(self, handle: PendingTransaction) -> Receipt:
        """Wait, without timeout, for the receipt of a submitted operation."""
        receipt = await asyncio.shield(handle.task)
        if not receipt.succeeded:
            logger.warning("Transaction %s reverted on-chain", handle.tx_hash)
            raise LedgerRejectedError("Transaction reverted on-chain", tx_hash=handle.tx_hash)
        return receipt

    def extract_identifier(self, receipt: Receipt) -> int | None:
        return extract_goal_id(receipt.logs, contract_address=self.client.contract_address)

    async def check_withdrawal_eligibility(self, on_chain_id: int) -> Eligibility:
        eligible, reason = await self.client.can_withdraw(on_chain_id)
        return Eligibility(eligible=eligible, reason=reason)

    async def get_goal_details(self, on_chain_id: int) -> GoalDetails:
        return await self.client.get_goal_details(on_chain_id)

    async def get_goal_progress(self, on_chain_id: int) -> int:
        return await self.client.get_goal_progress(on_chain_id)

    async def is_goal_reached(self, on_chain_id: int) -> bool:
        return await self.client.is_goal_reached(on_chain_id)

    async def get_user_goals(self, owner: str) -> list[int]:
        return await self.client.get_user_goals(owner)
