"""RPC-style capability for the vault contract, plus the web3 JSON-RPC adapter."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound, Web3Exception

from ..errors import LedgerRejectedError
from ..models import Currency, GoalType
from .abi import VAULT_ABI
from .events import Receipt, ReceiptLog, normalize_hex
from .units import from_feed_units, from_unix_seconds, from_wei

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GoalDetails:
    """Ledger-side view of one goal, already scaled to human units."""

    on_chain_id: int
    owner: str
    balance: Decimal
    goal_type: GoalType
    target_value: Decimal
    currency: Currency
    unlock_timestamp: datetime | None
    is_active: bool
    description: str


class LedgerClient(ABC):
    """Call surface of the vault contract.

    Write methods return the transaction hash as soon as the ledger accepts the
    submission and raise `LedgerRejectedError` when the wallet or a pre-flight
    check refuses it. `wait_for_receipt` has no timeout.
    """

    @abstractmethod
    async def create_goal(
        self,
        goal_type_code: int,
        target_value: int,
        currency_code: int,
        unlock_timestamp: int,
        description: str,
    ) -> str: ...

    @abstractmethod
    async def create_goal_legacy(self, amount: int, unlock_timestamp: int, description: str) -> str: ...

    @abstractmethod
    async def deposit(self, asset_address: str, goal_id: int, value: int) -> str: ...

    @abstractmethod
    async def withdraw(self, goal_id: int) -> str: ...

    @abstractmethod
    async def withdraw_early(self, goal_id: int, amount: int) -> str: ...

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str) -> Receipt: ...

    @abstractmethod
    async def get_goal_details(self, goal_id: int) -> GoalDetails: ...

    @abstractmethod
    async def get_goal_progress(self, goal_id: int) -> int: ...

    @abstractmethod
    async def can_withdraw(self, goal_id: int) -> tuple[bool, str]: ...

    @abstractmethod
    async def is_goal_reached(self, goal_id: int) -> bool: ...

    @abstractmethod
    async def get_user_goals(self, owner: str) -> list[int]: ...

    @property
    def contract_address(self) -> str | None:
        return None


def _details_from_call(goal_id: int, raw: Any) -> GoalDetails:
    owner, balance, goal_type_code, target_value, currency_code, unlock, is_active, description = raw
    goal_type = GoalType.from_ledger_code(goal_type_code)
    if goal_type is GoalType.AMOUNT_TARGET:
        target = from_wei(target_value)
    else:
        target = from_feed_units(target_value)
    return GoalDetails(
        on_chain_id=goal_id,
        owner=str(owner).lower(),
        balance=from_wei(balance),
        goal_type=goal_type,
        target_value=target,
        currency=Currency.from_ledger_code(currency_code),
        unlock_timestamp=from_unix_seconds(unlock),
        is_active=bool(is_active),
        description=str(description),
    )


def _receipt_from_raw(tx_hash: str, raw: Any) -> Receipt:
    logs = tuple(
        ReceiptLog(
            address=str(entry["address"]).lower(),
            topics=tuple(normalize_hex(topic) for topic in entry["topics"]),
            data=normalize_hex(entry.get("data") or b""),
        )
        for entry in raw.get("logs", [])
    )
    return Receipt(
        tx_hash=tx_hash,
        succeeded=int(raw.get("status", 0)) == 1,
        block_number=raw.get("blockNumber"),
        logs=logs,
    )


class Web3LedgerClient(LedgerClient):
    """`LedgerClient` over JSON-RPC using web3's async API."""

    def __init__(
        self,
        *,
        rpc_url: str,
        contract_address: str,
        sender_address: str = "",
        poll_interval_seconds: float = 2.0,
        web3: AsyncWeb3 | None = None,
    ) -> None:
        self._w3 = web3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self._address = AsyncWeb3.to_checksum_address(contract_address)
        self._contract = self._w3.eth.contract(address=self._address, abi=VAULT_ABI)
        self._sender = AsyncWeb3.to_checksum_address(sender_address) if sender_address else None
        self.poll_interval_seconds = poll_interval_seconds

    @property
    def contract_address(self) -> str | None:
        return self._address.lower()

    async def _transact(self, call: Any, value: int = 0) -> str:
        params: dict[str, Any] = {}
        if self._sender:
            params["from"] = self._sender
        if value:
            params["value"] = value

        try:
            tx_hash = await call.transact(params)
        except (Web3Exception, ValueError) as exc:
            raise LedgerRejectedError(str(exc)) from exc

        return normalize_hex(tx_hash)

    async def _call(self, call: Any) -> Any:
        try:
            return await call.call()
        except (Web3Exception, ValueError) as exc:
            raise LedgerRejectedError(str(exc)) from exc

    async def create_goal(
        self,
        goal_type_code: int,
        target_value: int,
        currency_code: int,
        unlock_timestamp: int,
        description: str,
    ) -> str:
        return await self._transact(
            self._contract.functions.createGoal(
                goal_type_code, target_value, currency_code, unlock_timestamp, description
            )
        )

    async def create_goal_legacy(self, amount: int, unlock_timestamp: int, description: str) -> str:
        return await self._transact(
            self._contract.functions.createGoalLegacy(amount, unlock_timestamp, description)
        )

    async def deposit(self, asset_address: str, goal_id: int, value: int) -> str:
        return await self._transact(
            self._contract.functions.deposit(AsyncWeb3.to_checksum_address(asset_address), goal_id),
            value=value,
        )

    async def withdraw(self, goal_id: int) -> str:
        return await self._transact(self._contract.functions.withdraw(goal_id))

    async def withdraw_early(self, goal_id: int, amount: int) -> str:
        return await self._transact(self._contract.functions.withdrawEarly(goal_id, amount))

    async def wait_for_receipt(self, tx_hash: str) -> Receipt:
        while True:
            try:
                raw = await self._w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                await asyncio.sleep(self.poll_interval_seconds)
                continue
            except (OSError, asyncio.TimeoutError) as exc:
                logger.warning("Receipt poll for %s failed, retrying: %s", tx_hash, exc)
                await asyncio.sleep(self.poll_interval_seconds)
                continue
            return _receipt_from_raw(tx_hash, raw)

    async def get_goal_details(self, goal_id: int) -> GoalDetails:
        raw = await self._call(self._contract.functions.getGoalDetails(goal_id))
        return _details_from_call(goal_id, raw)

    async def get_goal_progress(self, goal_id: int) -> int:
        return int(await self._call(self._contract.functions.getGoalProgress(goal_id)))

    async def can_withdraw(self, goal_id: int) -> tuple[bool, str]:
        allowed, reason = await self._call(self._contract.functions.canWithdraw(goal_id))
        return bool(allowed), str(reason)

    async def is_goal_reached(self, goal_id: int) -> bool:
        return bool(await self._call(self._contract.functions.isGoalReached(goal_id)))

    async def get_user_goals(self, owner: str) -> list[int]:
        goal_ids = await self._call(
            self._contract.functions.getUserGoals(AsyncWeb3.to_checksum_address(owner))
        )
        return [int(goal_id) for goal_id in goal_ids]
