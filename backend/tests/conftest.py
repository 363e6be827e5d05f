from __future__ import annotations

import asyncio
import copy
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

import psycopg
import pytest
from psycopg.errors import UniqueViolation

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_ALGORITHM", "HS256")

from goalvault.clock import FixedClock  # noqa: E402
from goalvault.errors import LedgerRejectedError  # noqa: E402
from goalvault.ledger.client import GoalDetails, LedgerClient  # noqa: E402
from goalvault.ledger.events import (  # noqa: E402
    CURRENT_GOAL_CREATED,
    LEGACY_GOAL_CREATED,
    Receipt,
    ReceiptLog,
)
from goalvault.models import GOAL_COLUMNS, TRANSACTION_COLUMNS, Currency, GoalType  # noqa: E402

CONTRACT_ADDRESS = "0x00000000000000000000000000000000000000aa"
OWNER_TOPIC = "0x" + "00" * 12 + "11" * 20
START_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def goal_created_log(on_chain_id: int, decoder=CURRENT_GOAL_CREATED, address: str = CONTRACT_ADDRESS) -> ReceiptLog:
    return ReceiptLog(
        address=address,
        topics=(decoder.topic, OWNER_TOPIC, "0x" + format(on_chain_id, "064x")),
    )


def _newest_first(rows):
    return sorted(rows, key=lambda row: row["created_at"], reverse=True)


class FakeStoreCursor:
    """Answers the registry's SQL against the dicts held by `FakeStore`."""

    def __init__(self, store: "FakeStore"):
        self.store = store
        self._rows = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def execute(self, query, params=None):
        params = tuple(params or ())
        normalized = " ".join(query.split())
        store = self.store
        store.executed.append(normalized)
        self._rows = []

        for fragment in store.failing:
            if fragment in normalized:
                raise psycopg.OperationalError("server closed the connection unexpectedly")

        if "ORDER BY" in normalized and not store.order_by_supported:
            raise psycopg.ProgrammingError("ORDER BY on this index is not supported")

        if normalized.startswith("INSERT INTO goals"):
            row = dict(zip(GOAL_COLUMNS, params))
            store.goals[row["id"]] = row
            self._rows = [dict(row)]
            return

        if normalized.startswith("INSERT INTO ledger_transactions"):
            row = dict(zip(TRANSACTION_COLUMNS, params))
            if row["kind"] == "GoalCreation" and row["status"] == "Submitted":
                for existing in store.transactions.values():
                    if (
                        existing["goal_id"] == row["goal_id"]
                        and existing["kind"] == "GoalCreation"
                        and existing["status"] == "Submitted"
                    ):
                        raise UniqueViolation("duplicate key value violates unique constraint")
            store.transactions[row["id"]] = row
            self._rows = [dict(row)]
            return

        if normalized.startswith("SELECT"):
            self._rows = [dict(row) for row in self._select(normalized, params)]
            return

        if normalized.startswith("UPDATE goals"):
            row = self._update_goal(normalized, params)
            self._rows = [dict(row)] if row is not None else []
            return

        if normalized.startswith("UPDATE ledger_transactions"):
            row = self._update_transaction(normalized, params)
            self._rows = [dict(row)] if row is not None else []
            return

        raise AssertionError(f"Unhandled query: {normalized}")

    def _select(self, normalized, params):
        store = self.store
        ordered = "ORDER BY" in normalized

        if "FROM goals WHERE id = %s AND owner_id = %s" in normalized:
            goal_id, owner_id = params
            row = store.goals.get(goal_id)
            return [row] if row and row["owner_id"] == owner_id else []

        if normalized.endswith("FROM goals WHERE id = %s"):
            row = store.goals.get(params[0])
            return [row] if row else []

        if "FROM goals WHERE owner_id = %s AND is_active = TRUE" in normalized:
            rows = [row for row in store.goals.values() if row["owner_id"] == params[0] and row["is_active"]]
            return _newest_first(rows) if ordered else rows

        if "FROM goals WHERE wallet_address = %s AND is_active = TRUE" in normalized:
            rows = [row for row in store.goals.values() if row["wallet_address"] == params[0] and row["is_active"]]
            return _newest_first(rows) if ordered else rows

        if "WHERE g.owner_id = %s AND g.confirmation_state = %s AND t.kind = %s AND t.status = %s" in normalized:
            owner_id, goal_state, kind, status = params
            return [
                row
                for row in store.transactions.values()
                if store.goals[row["goal_id"]]["owner_id"] == owner_id
                and store.goals[row["goal_id"]]["confirmation_state"] == goal_state
                and row["kind"] == kind
                and row["status"] == status
            ]

        if "FROM ledger_transactions t JOIN goals g" in normalized:
            owner_id = params[0]
            rows = [
                row
                for row in store.transactions.values()
                if store.goals[row["goal_id"]]["owner_id"] == owner_id
            ]
            if ordered:
                return _newest_first(rows)[: params[1]]
            return rows

        if normalized.endswith("FROM ledger_transactions WHERE id = %s"):
            row = store.transactions.get(params[0])
            return [row] if row else []

        if "FROM ledger_transactions WHERE goal_id = %s AND kind = %s AND status = %s" in normalized:
            goal_id, kind, status = params
            return [
                row
                for row in store.transactions.values()
                if row["goal_id"] == goal_id and row["kind"] == kind and row["status"] == status
            ]

        if "FROM ledger_transactions WHERE goal_id = %s" in normalized:
            rows = [row for row in store.transactions.values() if row["goal_id"] == params[0]]
            return _newest_first(rows) if ordered else rows

        raise AssertionError(f"Unhandled query: {normalized}")

    def _update_goal(self, normalized, params):
        goals = self.store.goals

        if normalized.startswith("UPDATE goals SET on_chain_id = %s"):
            on_chain_id, state, now, goal_id, draft, pending = params
            row = goals.get(goal_id)
            if row is None or row["on_chain_id"] is not None or row["confirmation_state"] not in (draft, pending):
                return None
            row.update({"on_chain_id": on_chain_id, "confirmation_state": state, "updated_at": now})
            return row

        if normalized.startswith("UPDATE goals SET current_balance = current_balance + %s"):
            delta, amount_type, _, now, goal_id = params
            row = goals.get(goal_id)
            if row is None:
                return None
            balance = Decimal(row["current_balance"]) + delta
            if row["goal_type"] == amount_type:
                row["is_completed"] = balance >= Decimal(row["target_value"])
            row.update(
                {
                    "current_balance": balance,
                    "deposit_count": row["deposit_count"] + 1,
                    "updated_at": now,
                }
            )
            return row

        if normalized.startswith("UPDATE goals SET current_balance = GREATEST"):
            amount, closes_goal, _, now, goal_id = params
            row = goals.get(goal_id)
            if row is None:
                return None
            row["current_balance"] = max(Decimal(row["current_balance"]) - amount, Decimal("0"))
            if closes_goal:
                row["is_completed"] = True
                row["is_active"] = False
            row["updated_at"] = now
            return row

        if normalized.startswith("UPDATE goals SET confirmation_state = %s"):
            state, now, goal_id, expected = params
            row = goals.get(goal_id)
            if row is None or row["confirmation_state"] != expected:
                return None
            row.update({"confirmation_state": state, "updated_at": now})
            return row

        if normalized.startswith("UPDATE goals SET description = %s"):
            description, now, goal_id, owner_id = params
            row = goals.get(goal_id)
            if row is None or row["owner_id"] != owner_id:
                return None
            row.update({"description": description, "updated_at": now})
            return row

        if normalized.startswith("UPDATE goals SET is_active = FALSE"):
            now, goal_id, owner_id = params
            row = goals.get(goal_id)
            if row is None or row["owner_id"] != owner_id:
                return None
            row.update({"is_active": False, "updated_at": now})
            return row

        raise AssertionError(f"Unhandled query: {normalized}")

    def _update_transaction(self, normalized, params):
        transactions = self.store.transactions

        if normalized.startswith("UPDATE ledger_transactions SET tx_hash = %s"):
            tx_hash, transaction_id = params
            row = transactions.get(transaction_id)
            if row is None:
                return None
            row["tx_hash"] = tx_hash
            return row

        if normalized.startswith("UPDATE ledger_transactions SET status = %s"):
            status, on_chain_goal_id, transaction_id, expected = params
            row = transactions.get(transaction_id)
            if row is None or row["status"] != expected:
                return None
            row["status"] = status
            if on_chain_goal_id is not None:
                row["on_chain_goal_id"] = on_chain_goal_id
            return row

        raise AssertionError(f"Unhandled query: {normalized}")

    async def fetchone(self):
        if not self._rows:
            return None
        return self._rows[0]

    async def fetchall(self):
        return list(self._rows)


class FakeStoreConnection:
    def __init__(self, store: "FakeStore"):
        self.store = store

    def cursor(self):
        return FakeStoreCursor(self.store)

    @asynccontextmanager
    async def transaction(self):
        store = self.store
        snapshot = (copy.deepcopy(store.goals), copy.deepcopy(store.transactions))
        store.transactions_opened += 1
        try:
            yield self
        except BaseException:
            store.goals, store.transactions = snapshot
            raise


class FakeStore:
    """In-memory stand-in for the `goals` and `ledger_transactions` tables."""

    def __init__(self):
        self.goals: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        # Query fragments that fail as if the connection dropped.
        self.failing: set[str] = set()
        self.order_by_supported = True
        self.executed: list[str] = []
        self.transactions_opened = 0

    @asynccontextmanager
    async def connect(self):
        yield FakeStoreConnection(self)


class FakeLedgerClient(LedgerClient):
    """Vault contract double; every write is mined immediately unless `hold` is set."""

    def __init__(self, *, next_goal_id: int = 1):
        self.calls: list[tuple] = []
        self.receipts: dict[str, Receipt] = {}
        # One of: confirmed, legacy, orphan, reverted.
        self.outcome = "confirmed"
        self.reject_with: str | None = None
        self.eligibility: tuple[bool, str] = (True, "")
        self.hold = False
        self.gates: dict[str, asyncio.Event] = {}
        self.next_goal_id = next_goal_id
        self.details: dict[int, GoalDetails] = {}
        self._counter = 0

    @property
    def contract_address(self) -> str | None:
        return CONTRACT_ADDRESS

    def _issue(self, name, *args, creates_goal=False) -> str:
        self.calls.append((name, *args))
        if self.reject_with:
            raise LedgerRejectedError(self.reject_with)

        self._counter += 1
        tx_hash = "0x" + format(self._counter, "064x")
        logs = ()
        if creates_goal and self.outcome in ("confirmed", "legacy"):
            decoder = LEGACY_GOAL_CREATED if self.outcome == "legacy" else CURRENT_GOAL_CREATED
            logs = (goal_created_log(self.next_goal_id, decoder),)
            self.next_goal_id += 1
        self.receipts[tx_hash] = Receipt(
            tx_hash=tx_hash,
            succeeded=self.outcome != "reverted",
            block_number=self._counter,
            logs=logs,
        )
        return tx_hash

    def release(self, tx_hash: str) -> None:
        self.gates.setdefault(tx_hash, asyncio.Event()).set()

    async def create_goal(self, goal_type_code, target_value, currency_code, unlock_timestamp, description):
        return self._issue(
            "create_goal",
            goal_type_code,
            target_value,
            currency_code,
            unlock_timestamp,
            description,
            creates_goal=True,
        )

    async def create_goal_legacy(self, amount, unlock_timestamp, description):
        return self._issue("create_goal_legacy", amount, unlock_timestamp, description, creates_goal=True)

    async def deposit(self, asset_address, goal_id, value):
        return self._issue("deposit", asset_address, goal_id, value)

    async def withdraw(self, goal_id):
        return self._issue("withdraw", goal_id)

    async def withdraw_early(self, goal_id, amount):
        return self._issue("withdraw_early", goal_id, amount)

    async def wait_for_receipt(self, tx_hash):
        if self.hold:
            await self.gates.setdefault(tx_hash, asyncio.Event()).wait()
        await asyncio.sleep(0)
        return self.receipts[tx_hash]

    async def get_goal_details(self, goal_id):
        return self.details[goal_id]

    async def get_goal_progress(self, goal_id):
        return 0

    async def can_withdraw(self, goal_id):
        return self.eligibility

    async def is_goal_reached(self, goal_id):
        return False

    async def get_user_goals(self, owner):
        return sorted(self.details)


@pytest.fixture
def clock():
    return FixedClock(START_TIME)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def ledger():
    return FakeLedgerClient()


@pytest.fixture
def sample_details():
    return GoalDetails(
        on_chain_id=7,
        owner="0x" + "11" * 20,
        balance=Decimal("1.5"),
        goal_type=GoalType.PRICE_TARGET,
        target_value=Decimal("4000"),
        currency=Currency.USD,
        unlock_timestamp=None,
        is_active=True,
        description="Exit at 4000 USD/ETH",
    )
