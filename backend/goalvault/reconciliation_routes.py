"""Visibility into ledger-confirmed operations still waiting for their off-chain patch."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from .auth import get_current_user_id
from .dependencies import domain_http_error, get_orchestrator
from .errors import GoalVaultError, IdentifierExtractionFailure
from .models import LedgerTransaction
from .services.reconciliation import PendingPatch, ReconciliationOrchestrator

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


class PendingPatchResponse(BaseModel):
    # "orphan": the ledger mined the creation but the goal id was never recovered.
    kind: Literal["bind", "deposit", "withdrawal", "orphan"]
    goal_id: UUID
    transaction_id: UUID
    on_chain_id: int | None
    amount: Decimal | None
    closes_goal: bool
    attempts: int
    last_error: str
    queued_at: datetime | None
    tx_hash: str | None = None


class SweepResponse(BaseModel):
    resolved: int
    remaining: int


def _patch_response(patch: PendingPatch) -> PendingPatchResponse:
    return PendingPatchResponse(
        kind=patch.kind.value,
        goal_id=patch.goal_id,
        transaction_id=patch.transaction_id,
        on_chain_id=patch.on_chain_id,
        amount=patch.amount,
        closes_goal=patch.closes_goal,
        attempts=patch.attempts,
        last_error=patch.last_error,
        queued_at=patch.queued_at,
    )


def _orphan_response(transaction: LedgerTransaction) -> PendingPatchResponse:
    return PendingPatchResponse(
        kind="orphan",
        goal_id=transaction.goal_id,
        transaction_id=transaction.id,
        on_chain_id=None,
        amount=transaction.amount,
        closes_goal=False,
        attempts=0,
        last_error=str(IdentifierExtractionFailure(transaction.goal_id, transaction.tx_hash or "")),
        queued_at=transaction.created_at,
        tx_hash=transaction.tx_hash,
    )


async def _owned_patches(orchestrator: ReconciliationOrchestrator, user_id: UUID) -> list[PendingPatch]:
    owned = []
    for patch in orchestrator.reconciliation_log.pending():
        try:
            await orchestrator.registry.get_goal(patch.goal_id, user_id)
        except LookupError:
            continue
        owned.append(patch)
    return owned


@router.get("/pending", response_model=list[PendingPatchResponse])
async def pending_patches_endpoint(
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> list[PendingPatchResponse]:
    """
    Work that needs reconciling for the caller's goals.

    Queued patches (money confirmed on-chain, record not yet updated) come
    first, then orphaned creations that need manual recovery.
    """
    try:
        patches = await _owned_patches(orchestrator, user_id)
        orphans = await orchestrator.registry.list_orphaned_creations(user_id)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc
    return [_patch_response(patch) for patch in patches] + [_orphan_response(orphan) for orphan in orphans]


@router.post("/sweep", response_model=SweepResponse)
async def sweep_endpoint(
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> SweepResponse:
    """Retry queued patches now instead of waiting for the background sweeper."""
    try:
        resolved = await orchestrator.sweep()
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc
    return SweepResponse(resolved=resolved, remaining=len(orchestrator.reconciliation_log))
