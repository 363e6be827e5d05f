"""Off-chain record store for goals and their ledger transactions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import UUID, uuid4

import psycopg
from psycopg.errors import UniqueViolation

from ..clock import Clock, SystemClock
from ..errors import (
    AlreadyBoundError,
    GoalNotFoundError,
    InvalidStateTransitionError,
    StoreUnavailableError,
    TransactionNotFoundError,
    ValidationError,
)
from ..models import (
    CONFIRMATION_TRANSITIONS,
    GOAL_COLUMNS,
    TRANSACTION_COLUMNS,
    ConfirmationState,
    Currency,
    Goal,
    GoalType,
    LedgerTransaction,
    TransactionKind,
    TransactionStatus,
    goal_from_record,
    goal_to_record,
    transaction_from_record,
    transaction_to_record,
)
from .wallet_links import normalize_wallet

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

logger = logging.getLogger(__name__)

T = TypeVar("T")
ConnectionFactory = Callable[[], AbstractAsyncContextManager[AsyncConnection]]
Row = dict[str, Any]

OWNER_TRANSACTION_LIMIT = 50

_GOAL_SELECT = ", ".join(GOAL_COLUMNS)
_GOAL_PLACEHOLDERS = ", ".join(["%s"] * len(GOAL_COLUMNS))
_TRANSACTION_SELECT = ", ".join(TRANSACTION_COLUMNS)
_TRANSACTION_SELECT_JOINED = ", ".join(f"t.{column}" for column in TRANSACTION_COLUMNS)
_TRANSACTION_PLACEHOLDERS = ", ".join(["%s"] * len(TRANSACTION_COLUMNS))
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _format_target(value: Decimal) -> str:
    return format(value.normalize(), "f")


def default_description(goal_type: GoalType, target_value: Decimal, currency: Currency | None) -> str:
    target = _format_target(target_value)
    if goal_type is GoalType.AMOUNT_TARGET:
        return f"{target} ETH Goal"
    if goal_type is GoalType.PRICE_TARGET:
        return f"Exit at {target} {currency.value}/ETH"
    return f"Portfolio {target} {currency.value}"


def _as_decimal(value: Any, field: str) -> Decimal:
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be a number") from exc


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _created_sort_key(row: Row) -> datetime:
    created_at = row.get("created_at")
    if created_at is None:
        return _EPOCH
    return _as_utc(created_at)


async def _query(connection: AsyncConnection, sql: str, params: tuple[Any, ...], *, many: bool = False) -> Any:
    async with connection.cursor() as cursor:
        await cursor.execute(sql, params)
        if many:
            return list(await cursor.fetchall())
        return await cursor.fetchone()


class GoalRegistry:
    """Goal and transaction persistence over raw SQL.

    `connect` returns an async context manager yielding one psycopg
    connection (normally `database.connection_scope`). Every store call is
    bounded by `timeout_seconds`; a timeout or a lost connection is raised as
    `StoreUnavailableError`.

    The `confirm_*` methods apply a confirmed ledger operation in a single
    database transaction: the ledger transaction moves Submitted -> Confirmed
    and the goal is patched together, or not at all. A transaction that is
    already Confirmed makes them a no-op, so they are safe to retry.
    """

    def __init__(
        self,
        connect: ConnectionFactory,
        *,
        clock: Clock | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._connect = connect
        self.clock = clock or SystemClock()
        self.timeout_seconds = timeout_seconds

    async def _run(self, work: Callable[[AsyncConnection], Awaitable[T]]) -> T:
        async def _execute() -> T:
            async with self._connect() as connection:
                return await work(connection)

        try:
            return await asyncio.wait_for(_execute(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailableError("Record store did not answer in time") from exc
        except psycopg.OperationalError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    async def _run_atomic(self, work: Callable[[AsyncConnection], Awaitable[T]]) -> T:
        async def _transactional(connection: AsyncConnection) -> T:
            async with connection.transaction():
                return await work(connection)

        return await self._run(_transactional)

    async def _fetchone(self, sql: str, params: tuple[Any, ...]) -> Row | None:
        return await self._run(lambda connection: _query(connection, sql, params))

    async def _fetchall(self, sql: str, params: tuple[Any, ...]) -> list[Row]:
        return await self._run(lambda connection: _query(connection, sql, params, many=True))

    async def _fetch_newest_first(
        self,
        ordered_sql: str,
        unordered_sql: str,
        params: tuple[Any, ...],
        *,
        limit: int | None = None,
    ) -> list[Row]:
        ordered_params = params if limit is None else (*params, limit)
        try:
            return await self._fetchall(ordered_sql, ordered_params)
        except psycopg.Error as exc:
            logger.warning("Ordered query unsupported, sorting in memory instead: %s", exc)

        rows = await self._fetchall(unordered_sql, params)
        rows.sort(key=_created_sort_key, reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return rows

    # Statements shared by single calls and atomic confirmations.

    async def _goal_row(self, connection: AsyncConnection, goal_id: UUID) -> Row:
        row = await _query(
            connection,
            f"""
            SELECT {_GOAL_SELECT}
            FROM goals
            WHERE id = %s
            """,
            (goal_id,),
        )
        if row is None:
            raise GoalNotFoundError("Goal not found")
        return row

    async def _transaction_row(self, connection: AsyncConnection, transaction_id: UUID) -> Row:
        row = await _query(
            connection,
            f"""
            SELECT {_TRANSACTION_SELECT}
            FROM ledger_transactions
            WHERE id = %s
            """,
            (transaction_id,),
        )
        if row is None:
            raise TransactionNotFoundError("Transaction not found")
        return row

    async def _bind(self, connection: AsyncConnection, goal_id: UUID, on_chain_id: int) -> Row:
        row = await _query(
            connection,
            f"""
            UPDATE goals
            SET on_chain_id = %s,
                confirmation_state = %s,
                updated_at = %s
            WHERE id = %s
              AND on_chain_id IS NULL
              AND confirmation_state IN (%s, %s)
            RETURNING {_GOAL_SELECT}
            """,
            (
                int(on_chain_id),
                ConfirmationState.CONFIRMED.value,
                self.clock.now(),
                goal_id,
                ConfirmationState.DRAFT.value,
                ConfirmationState.PENDING_CHAIN_CONFIRMATION.value,
            ),
        )
        if row is not None:
            logger.info("Bound goal %s to on-chain id %s", goal_id, on_chain_id)
            return row

        existing = goal_from_record(await self._goal_row(connection, goal_id))
        if existing.on_chain_id is not None:
            raise AlreadyBoundError(goal_id, existing.on_chain_id, int(on_chain_id))
        raise InvalidStateTransitionError(
            f"Goal {goal_id} is {existing.confirmation_state.value} and can no longer be bound"
        )

    async def _add_deposit(self, connection: AsyncConnection, goal_id: UUID, delta: Decimal) -> Row:
        row = await _query(
            connection,
            f"""
            UPDATE goals
            SET current_balance = current_balance + %s,
                deposit_count = deposit_count + 1,
                is_completed = CASE
                    WHEN goal_type = %s THEN current_balance + %s >= target_value
                    ELSE is_completed
                END,
                updated_at = %s
            WHERE id = %s
            RETURNING {_GOAL_SELECT}
            """,
            (delta, GoalType.AMOUNT_TARGET.value, delta, self.clock.now(), goal_id),
        )
        if row is None:
            raise GoalNotFoundError("Goal not found")
        return row

    async def _subtract_withdrawal(
        self,
        connection: AsyncConnection,
        goal_id: UUID,
        amount: Decimal,
        closes_goal: bool,
    ) -> Row:
        row = await _query(
            connection,
            f"""
            UPDATE goals
            SET current_balance = GREATEST(current_balance - %s, 0),
                is_completed = CASE WHEN %s THEN TRUE ELSE is_completed END,
                is_active = CASE WHEN %s THEN FALSE ELSE is_active END,
                updated_at = %s
            WHERE id = %s
            RETURNING {_GOAL_SELECT}
            """,
            (amount, closes_goal, closes_goal, self.clock.now(), goal_id),
        )
        if row is None:
            raise GoalNotFoundError("Goal not found")
        return row

    async def _finish_transaction(
        self,
        connection: AsyncConnection,
        transaction_id: UUID,
        status: TransactionStatus,
        on_chain_goal_id: int | None = None,
    ) -> Row | None:
        """Move a Submitted transaction to `status`; None when it was not Submitted."""
        return await _query(
            connection,
            f"""
            UPDATE ledger_transactions
            SET status = %s,
                on_chain_goal_id = COALESCE(%s, on_chain_goal_id)
            WHERE id = %s
              AND status = %s
            RETURNING {_TRANSACTION_SELECT}
            """,
            (status.value, on_chain_goal_id, transaction_id, TransactionStatus.SUBMITTED.value),
        )

    # Goals

    async def create_draft(
        self,
        owner_id: UUID,
        wallet_address: str,
        goal_type: GoalType | str,
        target_value: Decimal | str | int,
        currency: Currency | str | None = None,
        unlock_timestamp: datetime | None = None,
        description: str = "",
    ) -> Goal:
        """Validate and persist a new goal in the Draft state."""
        try:
            goal_type = GoalType(goal_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown goal type: {goal_type}") from exc

        target = _as_decimal(target_value, "target_value")
        if target <= 0:
            raise ValidationError("target_value must be greater than 0")

        wallet = normalize_wallet(wallet_address)

        now = self.clock.now()

        if goal_type.requires_currency:
            if not currency:
                raise ValidationError(f"currency is required for {goal_type.value} goals")
            try:
                currency = Currency(str(getattr(currency, "value", currency)).upper())
            except ValueError as exc:
                raise ValidationError(f"Unsupported currency: {currency}") from exc
            unlock_timestamp = None
        else:
            currency = None
            if unlock_timestamp is None:
                raise ValidationError("unlock_timestamp is required for AmountTarget goals")
            unlock_timestamp = _as_utc(unlock_timestamp)
            if unlock_timestamp <= now:
                raise ValidationError("unlock_timestamp must be in the future")

        description = (description or "").strip() or default_description(goal_type, target, currency)

        goal = Goal(
            id=uuid4(),
            owner_id=owner_id,
            wallet_address=wallet,
            goal_type=goal_type,
            target_value=target,
            currency=currency,
            unlock_timestamp=unlock_timestamp,
            description=description,
            current_balance=Decimal("0"),
            deposit_count=0,
            confirmation_state=ConfirmationState.DRAFT,
            is_active=True,
            is_completed=False,
            on_chain_id=None,
            created_at=now,
            updated_at=now,
        )
        record = goal_to_record(goal)

        row = await self._fetchone(
            f"""
            INSERT INTO goals ({_GOAL_SELECT})
            VALUES ({_GOAL_PLACEHOLDERS})
            RETURNING {_GOAL_SELECT}
            """,
            tuple(record[column] for column in GOAL_COLUMNS),
        )
        logger.info("Persisted draft goal %s (%s)", goal.id, goal_type.value)
        return goal_from_record(row)

    async def get_goal(self, goal_id: UUID, owner_id: UUID | None = None) -> Goal:
        if owner_id is None:
            row = await self._run(lambda connection: self._goal_row(connection, goal_id))
            return goal_from_record(row)

        row = await self._fetchone(
            f"""
            SELECT {_GOAL_SELECT}
            FROM goals
            WHERE id = %s
              AND owner_id = %s
            """,
            (goal_id, owner_id),
        )
        if row is None:
            raise GoalNotFoundError("Goal not found")
        return goal_from_record(row)

    async def bind_on_chain_id(self, goal_id: UUID, on_chain_id: int) -> Goal:
        """Attach the ledger id and confirm the goal in one conditional update.

        Raises `AlreadyBoundError` when the goal already carries an id, even
        the same one; callers decide whether a repeat is harmless.
        """
        row = await self._run(lambda connection: self._bind(connection, goal_id, on_chain_id))
        return goal_from_record(row)

    async def set_confirmation_state(self, goal_id: UUID, state: ConfirmationState) -> Goal:
        existing = await self.get_goal(goal_id)
        if existing.confirmation_state is state:
            return existing
        if state not in CONFIRMATION_TRANSITIONS[existing.confirmation_state]:
            raise InvalidStateTransitionError(
                f"Goal {goal_id} cannot move from {existing.confirmation_state.value} to {state.value}"
            )

        row = await self._fetchone(
            f"""
            UPDATE goals
            SET confirmation_state = %s,
                updated_at = %s
            WHERE id = %s
              AND confirmation_state = %s
            RETURNING {_GOAL_SELECT}
            """,
            (state.value, self.clock.now(), goal_id, existing.confirmation_state.value),
        )
        if row is None:
            raise InvalidStateTransitionError(f"Goal {goal_id} changed state concurrently")

        logger.info(
            "Goal %s confirmation state %s -> %s",
            goal_id,
            existing.confirmation_state.value,
            state.value,
        )
        return goal_from_record(row)

    async def record_deposit(self, goal_id: UUID, delta: Decimal) -> Goal:
        delta = _as_decimal(delta, "amount")
        if delta <= 0:
            raise ValidationError("Deposit amount must be greater than 0")

        row = await self._run(lambda connection: self._add_deposit(connection, goal_id, delta))
        return goal_from_record(row)

    async def record_withdrawal(self, goal_id: UUID, amount: Decimal, *, closes_goal: bool) -> Goal:
        """Subtract a confirmed withdrawal; a closing withdrawal retires the goal."""
        amount = _as_decimal(amount, "amount")
        if amount <= 0:
            raise ValidationError("Withdrawal amount must be greater than 0")

        row = await self._run(
            lambda connection: self._subtract_withdrawal(connection, goal_id, amount, closes_goal)
        )
        return goal_from_record(row)

    async def update_goal(self, goal_id: UUID, owner_id: UUID, *, description: str) -> Goal:
        description = (description or "").strip()
        if not description:
            raise ValidationError("description must not be empty")

        row = await self._fetchone(
            f"""
            UPDATE goals
            SET description = %s,
                updated_at = %s
            WHERE id = %s
              AND owner_id = %s
            RETURNING {_GOAL_SELECT}
            """,
            (description, self.clock.now(), goal_id, owner_id),
        )
        if row is None:
            raise GoalNotFoundError("Goal not found")
        return goal_from_record(row)

    async def deactivate_goal(self, goal_id: UUID, owner_id: UUID) -> Goal:
        row = await self._fetchone(
            f"""
            UPDATE goals
            SET is_active = FALSE,
                updated_at = %s
            WHERE id = %s
              AND owner_id = %s
            RETURNING {_GOAL_SELECT}
            """,
            (self.clock.now(), goal_id, owner_id),
        )
        if row is None:
            raise GoalNotFoundError("Goal not found")
        logger.info("Deactivated goal %s", goal_id)
        return goal_from_record(row)

    async def list_active_goals_for_owner(self, owner_id: UUID) -> list[Goal]:
        """Active goals for the owner, newest first."""
        base_sql = f"""
            SELECT {_GOAL_SELECT}
            FROM goals
            WHERE owner_id = %s
              AND is_active = TRUE
            """
        rows = await self._fetch_newest_first(
            base_sql + " ORDER BY created_at DESC",
            base_sql,
            (owner_id,),
        )
        return [goal_from_record(row) for row in rows]

    async def list_active_goals_for_wallet(self, wallet_address: str) -> list[Goal]:
        base_sql = f"""
            SELECT {_GOAL_SELECT}
            FROM goals
            WHERE wallet_address = %s
              AND is_active = TRUE
            """
        rows = await self._fetch_newest_first(
            base_sql + " ORDER BY created_at DESC",
            base_sql,
            (normalize_wallet(wallet_address),),
        )
        return [goal_from_record(row) for row in rows]

    # Ledger transactions

    async def record_transaction(
        self,
        goal_id: UUID,
        kind: TransactionKind,
        *,
        tx_hash: str | None = None,
        on_chain_goal_id: int | None = None,
        amount: Decimal | None = None,
        status: TransactionStatus = TransactionStatus.SUBMITTED,
    ) -> LedgerTransaction:
        transaction = LedgerTransaction(
            id=uuid4(),
            kind=kind,
            goal_id=goal_id,
            status=status,
            on_chain_goal_id=on_chain_goal_id,
            amount=amount,
            tx_hash=tx_hash,
            created_at=self.clock.now(),
        )
        record = transaction_to_record(transaction)

        try:
            row = await self._fetchone(
                f"""
                INSERT INTO ledger_transactions ({_TRANSACTION_SELECT})
                VALUES ({_TRANSACTION_PLACEHOLDERS})
                RETURNING {_TRANSACTION_SELECT}
                """,
                tuple(record[column] for column in TRANSACTION_COLUMNS),
            )
        except UniqueViolation as exc:
            raise InvalidStateTransitionError(
                f"Goal {goal_id} already has an outstanding creation transaction"
            ) from exc

        return transaction_from_record(row)

    async def attach_tx_hash(self, transaction_id: UUID, tx_hash: str) -> LedgerTransaction:
        row = await self._fetchone(
            f"""
            UPDATE ledger_transactions
            SET tx_hash = %s
            WHERE id = %s
            RETURNING {_TRANSACTION_SELECT}
            """,
            (tx_hash, transaction_id),
        )
        if row is None:
            raise TransactionNotFoundError("Transaction not found")
        return transaction_from_record(row)

    async def get_transaction(self, transaction_id: UUID) -> LedgerTransaction:
        row = await self._run(lambda connection: self._transaction_row(connection, transaction_id))
        return transaction_from_record(row)

    async def set_transaction_status(
        self,
        transaction_id: UUID,
        status: TransactionStatus,
        *,
        on_chain_goal_id: int | None = None,
    ) -> LedgerTransaction:
        """Move a Submitted transaction to a terminal status, once."""
        row = await self._run(
            lambda connection: self._finish_transaction(connection, transaction_id, status, on_chain_goal_id)
        )
        if row is not None:
            return transaction_from_record(row)

        existing = await self.get_transaction(transaction_id)
        if existing.status is status:
            return existing
        raise InvalidStateTransitionError(
            f"Transaction {transaction_id} is already {existing.status.value}"
        )

    async def find_outstanding_creation(self, goal_id: UUID) -> LedgerTransaction | None:
        row = await self._fetchone(
            f"""
            SELECT {_TRANSACTION_SELECT}
            FROM ledger_transactions
            WHERE goal_id = %s
              AND kind = %s
              AND status = %s
            """,
            (goal_id, TransactionKind.GOAL_CREATION.value, TransactionStatus.SUBMITTED.value),
        )
        return transaction_from_record(row) if row is not None else None

    async def list_goal_transactions(self, goal_id: UUID) -> list[LedgerTransaction]:
        base_sql = f"""
            SELECT {_TRANSACTION_SELECT}
            FROM ledger_transactions
            WHERE goal_id = %s
            """
        rows = await self._fetch_newest_first(
            base_sql + " ORDER BY created_at DESC",
            base_sql,
            (goal_id,),
        )
        return [transaction_from_record(row) for row in rows]

    async def list_owner_transactions(
        self,
        owner_id: UUID,
        limit: int = OWNER_TRANSACTION_LIMIT,
    ) -> list[LedgerTransaction]:
        base_sql = f"""
            SELECT {_TRANSACTION_SELECT_JOINED}
            FROM ledger_transactions t
            JOIN goals g ON g.id = t.goal_id
            WHERE g.owner_id = %s
            """
        rows = await self._fetch_newest_first(
            base_sql + " ORDER BY t.created_at DESC LIMIT %s",
            base_sql,
            (owner_id,),
            limit=limit,
        )
        return [transaction_from_record(row) for row in rows]

    async def list_orphaned_creations(self, owner_id: UUID) -> list[LedgerTransaction]:
        """Creation transactions the ledger confirmed without a recoverable goal id.

        The goal is Failed while its creation transaction is Confirmed, so the
        vault may hold a goal the record store cannot address.
        """
        rows = await self._fetchall(
            f"""
            SELECT {_TRANSACTION_SELECT_JOINED}
            FROM ledger_transactions t
            JOIN goals g ON g.id = t.goal_id
            WHERE g.owner_id = %s
              AND g.confirmation_state = %s
              AND t.kind = %s
              AND t.status = %s
            """,
            (
                owner_id,
                ConfirmationState.FAILED.value,
                TransactionKind.GOAL_CREATION.value,
                TransactionStatus.CONFIRMED.value,
            ),
        )
        return [transaction_from_record(row) for row in rows]

    # Confirmed ledger operations

    async def _confirm(
        self,
        transaction_id: UUID,
        goal_id: UUID,
        patch: Callable[[AsyncConnection], Awaitable[Row]],
        on_chain_goal_id: int | None = None,
    ) -> tuple[Goal, LedgerTransaction]:
        async def _work(connection: AsyncConnection) -> tuple[Row, Row]:
            transaction_row = await self._finish_transaction(
                connection,
                transaction_id,
                TransactionStatus.CONFIRMED,
                on_chain_goal_id,
            )
            if transaction_row is None:
                transaction_row = await self._transaction_row(connection, transaction_id)
                if transaction_row["status"] != TransactionStatus.CONFIRMED.value:
                    raise InvalidStateTransitionError(
                        f"Transaction {transaction_id} is {transaction_row['status']} and cannot be confirmed"
                    )
                return await self._goal_row(connection, goal_id), transaction_row
            return await patch(connection), transaction_row

        goal_row, transaction_row = await self._run_atomic(_work)
        return goal_from_record(goal_row), transaction_from_record(transaction_row)

    async def confirm_binding(
        self,
        goal_id: UUID,
        transaction_id: UUID,
        on_chain_id: int,
    ) -> tuple[Goal, LedgerTransaction]:
        return await self._confirm(
            transaction_id,
            goal_id,
            lambda connection: self._bind(connection, goal_id, on_chain_id),
            on_chain_goal_id=on_chain_id,
        )

    async def confirm_deposit(
        self,
        goal_id: UUID,
        transaction_id: UUID,
        delta: Decimal,
    ) -> tuple[Goal, LedgerTransaction]:
        delta = _as_decimal(delta, "amount")
        return await self._confirm(
            transaction_id,
            goal_id,
            lambda connection: self._add_deposit(connection, goal_id, delta),
        )

    async def confirm_withdrawal(
        self,
        goal_id: UUID,
        transaction_id: UUID,
        amount: Decimal,
        *,
        closes_goal: bool,
    ) -> tuple[Goal, LedgerTransaction]:
        amount = _as_decimal(amount, "amount")
        return await self._confirm(
            transaction_id,
            goal_id,
            lambda connection: self._subtract_withdrawal(connection, goal_id, amount, closes_goal),
        )
