"""Wallet link router."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from .auth import get_current_user_id
from .database import get_db_connection
from .dependencies import domain_http_error
from .errors import GoalVaultError
from .services.wallet_links import (
    WalletProfile,
    link_wallet,
    list_wallets,
    set_primary_wallet,
    unlink_wallet,
)

router = APIRouter(prefix="/wallets", tags=["wallets"])


class WalletRequest(BaseModel):
    wallet_address: str = Field(min_length=1, max_length=64)


class WalletProfileResponse(BaseModel):
    owner_id: UUID
    linked_wallets: list[str]
    primary_wallet: str | None


def _profile_response(profile: WalletProfile) -> WalletProfileResponse:
    return WalletProfileResponse(
        owner_id=profile.owner_id,
        linked_wallets=list(profile.linked_wallets),
        primary_wallet=profile.primary_wallet,
    )


@router.get("", response_model=WalletProfileResponse)
async def list_wallets_endpoint(
    user_id: UUID = Depends(get_current_user_id),
    connection: Any = Depends(get_db_connection),
) -> WalletProfileResponse:
    return _profile_response(await list_wallets(connection, user_id))


@router.post("/link", response_model=WalletProfileResponse)
async def link_wallet_endpoint(
    payload: WalletRequest,
    user_id: UUID = Depends(get_current_user_id),
    connection: Any = Depends(get_db_connection),
) -> WalletProfileResponse:
    """Link a wallet; linking one already owned by another account is a 409."""
    try:
        profile = await link_wallet(connection, user_id, payload.wallet_address)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc
    return _profile_response(profile)


@router.delete("/{wallet_address}", response_model=WalletProfileResponse)
async def unlink_wallet_endpoint(
    wallet_address: str,
    user_id: UUID = Depends(get_current_user_id),
    connection: Any = Depends(get_db_connection),
) -> WalletProfileResponse:
    try:
        profile = await unlink_wallet(connection, user_id, wallet_address)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc
    return _profile_response(profile)


@router.put("/primary", response_model=WalletProfileResponse)
async def set_primary_wallet_endpoint(
    payload: WalletRequest,
    user_id: UUID = Depends(get_current_user_id),
    connection: Any = Depends(get_db_connection),
) -> WalletProfileResponse:
    try:
        profile = await set_primary_wallet(connection, user_id, payload.wallet_address)
    except GoalVaultError as exc:
        raise domain_http_error(exc) from exc
    return _profile_response(profile)
