"""Goals router: creation, reads with progress, deposits and withdrawals."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from .auth import get_current_user_id
from .dependencies import domain_http_error, get_orchestrator, get_progress_engine
from .errors import GoalVaultError
from .models import (
    ConfirmationState,
    Currency,
    Goal,
    GoalType,
    LedgerTransaction,
    TransactionKind,
    TransactionStatus,
)
from .services.progress_engine import GoalProgress, ProgressEngine
from .services.reconciliation import OperationResult, ReconciliationOrchestrator
from .services.withdrawal_policy import (
    Blocked,
    EarlyWithdrawal,
    RegularWithdrawal,
    WithdrawalPlan,
    time_remaining,
)

router = APIRouter(prefix="/goals", tags=["goals"])


class GoalCreateRequest(BaseModel):
    wallet_address: str = Field(min_length=1, max_length=64)
    goal_type: GoalType
    target_value: Decimal = Field(gt=Decimal("0"))
    currency: Currency | None = None
    unlock_timestamp: datetime | None = None
    description: str = Field(default="", max_length=280)


class GoalUpdateRequest(BaseModel):
    description: str = Field(min_length=1, max_length=280)


class DepositRequest(BaseModel):
    amount: Decimal = Field(gt=Decimal("0"))


class WithdrawalRequest(BaseModel):
    early_amount: Decimal | None = Field(default=None, gt=Decimal("0"))


class GoalResponse(BaseModel):
    id: UUID
    on_chain_id: int | None
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
    created_at: datetime | None
    updated_at: datetime | None
    progress: Decimal | None = None
    reached: bool | None = None
    is_live: bool = True
    time_remaining: str | None = None
    pending_reconciliation: bool = False
    needs_attention: bool = False


class TransactionResponse(BaseModel):
    id: UUID
    kind: TransactionKind
    goal_id: UUID
    on_chain_goal_id: int | None
    amount: Decimal | None
    tx_hash: str | None
    status: TransactionStatus
    created_at: datetime | None


class GoalCreationResponse(BaseModel):
    goal: GoalResponse
    tx_hash: str | None
    phase: str
    warning: str | None = None


class WithdrawalPlanResponse(BaseModel):
    kind: Literal["blocked", "regular", "early"]
    reason: str | None = None
    amount: Decimal | None = None
    requested_amount: Decimal | None = None
    penalty: Decimal | None = None
    payout: Decimal | None = None


class PortfolioSummaryResponse(BaseModel):
    total_balance: Decimal
    total_value_usd: Decimal
    total_value_eur: Decimal
    goals_reached: int
    near_goals: int
    is_live: bool


class OperationResponse(BaseModel):
    goal: GoalResponse | None
    transaction: TransactionResponse
    warning: str | None = None
    plan: WithdrawalPlanResponse | None = None


def _goal_response(
    goal: Goal,
    *,
    progress: GoalProgress | None = None,
    now: datetime | None = None,
    pending_reconciliation: bool = False,
    needs_attention: bool = False,
) -> GoalResponse:
    return GoalResponse(
        id=goal.id,
        on_chain_id=goal.on_chain_id,
        owner_id=goal.owner_id,
        wallet_address=goal.wallet_address,
        goal_type=goal.goal_type,
        target_value=goal.target_value,
        currency=goal.currency,
        unlock_timestamp=goal.unlock_timestamp,
        description=goal.description,
        current_balance=goal.current_balance,
        deposit_count=goal.deposit_count,
        confirmation_state=goal.confirmation_state,
        is_active=goal.is_active,
        is_completed=goal.is_completed,
        created_at=goal.created_at,
        updated_at=goal.updated_at,
        progress=progress.progress if progress else None,
        reached=progress.reached if progress else None,
        is_live=progress.is_live if progress else True,
        time_remaining=time_remaining(goal, now) if now and goal.goal_type is GoalType.AMOUNT_TARGET else None,
        pending_reconciliation=pending_reconciliation,
        needs_attention=needs_attention,
    )


def _transaction_response(transaction: LedgerTransaction) -> TransactionResponse:
    return TransactionResponse(
        id=transaction.id,
        kind=transaction.kind,
        goal_id=transaction.goal_id,
        on_chain_goal_id=transaction.on_chain_goal_id,
        amount=transaction.amount,
        tx_hash=transaction.tx_hash,
        status=transaction.status,
        created_at=transaction.created_at,
    )


def _plan_response(plan: WithdrawalPlan) -> WithdrawalPlanResponse:
    if isinstance(plan, Blocked):
        return WithdrawalPlanResponse(kind="blocked", reason=plan.reason)
    if isinstance(plan, RegularWithdrawal):
        return WithdrawalPlanResponse(kind="regular", amount=plan.amount)
    if isinstance(plan, EarlyWithdrawal):
        return WithdrawalPlanResponse(
            kind="early",
            requested_amount=plan.requested_amount,
            penalty=plan.penalty,
            payout=plan.payout,
        )
    raise TypeError(f"Unsupported withdrawal plan: {plan!r}")


def _operation_response(orchestrator: ReconciliationOrchestrator, result: OperationResult) -> OperationResponse:
    goal = None
    if result.goal is not None:
        goal = _goal_response(
            result.goal,
            now=orchestrator.clock.now(),
            pending_reconciliation=bool(orchestrator.reconciliation_log.for_goal(result.goal.id)),
        )
    return OperationResponse(
        goal=goal,
        transaction=_transaction_response(result.transaction),
        warning=result.warning,
        plan=_plan_response(result.plan) if result.plan is not None else None,
    )


async def _with_progress(
    orchestrator: ReconciliationOrchestrator,
    engine: ProgressEngine,
    goals: list[Goal],
    owner_id: UUID,
) -> list[GoalResponse]:
    orphaned: set[UUID] = set()
    if any(goal.confirmation_state is ConfirmationState.FAILED for goal in goals):
        orphaned = {
            transaction.goal_id
            for transaction in await orchestrator.registry.list_orphaned_creations(owner_id)
        }

    progress_by_goal = await engine.evaluate_many(goals)
    now = orchestrator.clock.now()
    return [
        _goal_response(
            goal,
            progress=progress_by_goal.get(goal.id),
            now=now,
            pending_reconciliation=bool(orchestrator.reconciliation_log.for_goal(goal.id)),
            needs_attention=goal.id in orphaned,
        )
        for goal in goals
    ]


@router.post("", response_model=GoalCreationResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_goal_endpoint(
    payload: GoalCreateRequest,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> GoalCreationResponse:
    """
    Persist a draft goal and submit its creation to the ledger.

    Returns as soon as the ledger accepts the transaction; binding the
    on-chain id happens in the background.
    """
    try:
        flow = await orchestrator.begin_goal_creation(
            user_id,
            payload.wallet_address,
            payload.goal_type,
            payload.target_value,
            payload.currency,
            payload.unlock_timestamp,
            payload.description,
        )
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc

    return GoalCreationResponse(
        goal=_goal_response(flow.goal, now=orchestrator.clock.now()),
        tx_hash=flow.handle.tx_hash if flow.handle else None,
        phase=flow.phase.value,
        warning=flow.warning,
    )


@router.get("", response_model=list[GoalResponse])
async def list_goals_endpoint(
    wallet: str | None = Query(default=None),
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
    engine: ProgressEngine = Depends(get_progress_engine),
) -> list[GoalResponse]:
    """List active goals, newest first, optionally narrowed to one wallet."""
    try:
        if wallet:
            goals = await orchestrator.registry.list_active_goals_for_wallet(wallet)
            goals = [goal for goal in goals if goal.owner_id == user_id]
        else:
            goals = await orchestrator.registry.list_active_goals_for_owner(user_id)
        return await _with_progress(orchestrator, engine, goals, user_id)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc


@router.get("/transactions", response_model=list[TransactionResponse])
async def list_owner_transactions_endpoint(
    limit: int = Query(default=50, ge=1, le=50),
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> list[TransactionResponse]:
    try:
        transactions = await orchestrator.registry.list_owner_transactions(user_id, limit=limit)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc
    return [_transaction_response(transaction) for transaction in transactions]


@router.get("/summary", response_model=PortfolioSummaryResponse)
async def portfolio_summary_endpoint(
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
    engine: ProgressEngine = Depends(get_progress_engine),
) -> PortfolioSummaryResponse:
    """Totals over the caller's active goals, valued at the current ETH quote."""
    try:
        goals = await orchestrator.registry.list_active_goals_for_owner(user_id)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc

    summary = await engine.summarize(goals)
    return PortfolioSummaryResponse(
        total_balance=summary.total_balance,
        total_value_usd=summary.total_value_by_currency[Currency.USD.quote_key],
        total_value_eur=summary.total_value_by_currency[Currency.EUR.quote_key],
        goals_reached=summary.goals_reached,
        near_goals=summary.near_goals,
        is_live=summary.is_live,
    )


@router.get("/{goal_id}", response_model=GoalResponse)
async def get_goal_endpoint(
    goal_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
    engine: ProgressEngine = Depends(get_progress_engine),
) -> GoalResponse:
    try:
        goal = await orchestrator.registry.get_goal(goal_id, user_id)
        responses = await _with_progress(orchestrator, engine, [goal], user_id)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc
    return responses[0]


@router.patch("/{goal_id}", response_model=GoalResponse)
async def update_goal_endpoint(
    goal_id: UUID,
    payload: GoalUpdateRequest,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> GoalResponse:
    """Edit off-chain metadata. Ledger-backed fields are immutable."""
    try:
        goal = await orchestrator.registry.update_goal(goal_id, user_id, description=payload.description)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc
    return _goal_response(goal, now=orchestrator.clock.now())


@router.delete("/{goal_id}", response_model=GoalResponse)
async def deactivate_goal_endpoint(
    goal_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> GoalResponse:
    """Deactivate one goal. Goals are never hard-deleted."""
    try:
        goal = await orchestrator.registry.deactivate_goal(goal_id, user_id)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc
    return _goal_response(goal, now=orchestrator.clock.now())


@router.post("/{goal_id}/deposits", response_model=OperationResponse)
async def deposit_endpoint(
    goal_id: UUID,
    payload: DepositRequest,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> OperationResponse:
    try:
        result = await orchestrator.deposit(goal_id, user_id, payload.amount)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc
    return _operation_response(orchestrator, result)


@router.get("/{goal_id}/withdrawal-plan", response_model=WithdrawalPlanResponse)
async def withdrawal_plan_endpoint(
    goal_id: UUID,
    early_amount: Decimal | None = Query(default=None, gt=Decimal("0")),
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> WithdrawalPlanResponse:
    """Preview the withdrawal the goal currently allows, including any penalty."""
    try:
        plan = await orchestrator.plan_withdrawal(goal_id, user_id, early_amount)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc
    return _plan_response(plan)


@router.post("/{goal_id}/withdrawals", response_model=OperationResponse)
async def withdraw_endpoint(
    goal_id: UUID,
    payload: WithdrawalRequest,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> OperationResponse:
    try:
        result = await orchestrator.withdraw(goal_id, user_id, payload.early_amount)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc
    return _operation_response(orchestrator, result)


@router.get("/{goal_id}/transactions", response_model=list[TransactionResponse])
async def list_goal_transactions_endpoint(
    goal_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> list[TransactionResponse]:
    try:
        await orchestrator.registry.get_goal(goal_id, user_id)
        transactions = await orchestrator.registry.list_goal_transactions(goal_id)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc
    return [_transaction_response(transaction) for transaction in transactions]
