"""FastAPI dependencies for the process-wide services built in the app lifespan."""

from __future__ import annotations

from fastapi import HTTPException, Request

from .errors import (
    AlreadyBoundError,
    GoalVaultError,
    IdentifierExtractionFailure,
    InvalidStateTransitionError,
    LedgerRejectedError,
    StoreUnavailableError,
    ValidationError,
    WalletLinkConflictError,
    WithdrawalBlockedError,
)
from .services.price_oracle import PriceOracleCache
from .services.progress_engine import ProgressEngine
from .services.reconciliation import ReconciliationOrchestrator


def _state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} is not configured")
    return service


def get_orchestrator(request: Request) -> ReconciliationOrchestrator:
    return _state(request, "orchestrator")


def get_price_cache(request: Request) -> PriceOracleCache:
    return _state(request, "price_cache")


def get_progress_engine(request: Request) -> ProgressEngine:
    return _state(request, "progress_engine")


def domain_http_error(exc: GoalVaultError) -> HTTPException:
    """Map a domain error to the HTTP status the API reports for it."""
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, LookupError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, WithdrawalBlockedError):
        return HTTPException(status_code=409, detail={"code": "withdrawal_blocked", "message": exc.reason})
    if isinstance(exc, (AlreadyBoundError, WalletLinkConflictError, InvalidStateTransitionError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StoreUnavailableError):
        return HTTPException(status_code=503, detail="Record store unavailable, try again shortly")
    if isinstance(exc, IdentifierExtractionFailure):
        return HTTPException(
            status_code=502,
            detail={
                "code": "identifier_extraction_failure",
                "message": str(exc),
                "goal_id": str(exc.goal_id),
                "tx_hash": exc.tx_hash,
            },
        )
    if isinstance(exc, LedgerRejectedError):
        return HTTPException(
            status_code=502,
            detail={"code": "ledger_rejected", "message": str(exc), "tx_hash": exc.tx_hash},
        )
    return HTTPException(status_code=500, detail=str(exc))
