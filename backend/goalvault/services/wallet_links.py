"""Service layer for linking ledger wallets to an account."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from uuid import UUID

from ..errors import ValidationError, WalletLinkConflictError

if TYPE_CHECKING:
    from psycopg import AsyncConnection
else:
    AsyncConnection = Any

WALLET_PATTERN = re.compile(r"^0x[0-9a-f]{40}$")


@dataclass(frozen=True)
class WalletProfile:
    owner_id: UUID
    linked_wallets: tuple[str, ...]
    primary_wallet: str | None


def _now() -> datetime:
    """Wrapper for deterministic tests."""
    return datetime.now(timezone.utc)


def normalize_wallet(address: str) -> str:
    wallet = str(address or "").strip().lower()
    if not WALLET_PATTERN.match(wallet):
        raise ValidationError("wallet_address must be a 0x-prefixed 20-byte hex address")
    return wallet


def union_wallets(linked: tuple[str, ...], wallet: str) -> tuple[str, ...]:
    """Set union preserving link order; an already-linked wallet returns `linked` itself."""
    if wallet in linked:
        return linked
    return (*linked, wallet)


async def _load_profile(connection: AsyncConnection, owner_id: UUID) -> WalletProfile:
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT wallet_address, is_primary
            FROM wallet_links
            WHERE owner_id = %s
              AND is_active = TRUE
            ORDER BY linked_at ASC
            """,
            (owner_id,),
        )
        rows = await cursor.fetchall()

    linked = tuple(row["wallet_address"] for row in rows)
    primary = next((row["wallet_address"] for row in rows if row["is_primary"]), None)
    return WalletProfile(owner_id=owner_id, linked_wallets=linked, primary_wallet=primary)


async def find_owner_by_wallet(connection: AsyncConnection, wallet_address: str) -> UUID | None:
    wallet = normalize_wallet(wallet_address)
    async with connection.cursor() as cursor:
        await cursor.execute(
            """
            SELECT owner_id
            FROM wallet_links
            WHERE wallet_address = %s
              AND is_active = TRUE
            """,
            (wallet,),
        )
        row = await cursor.fetchone()
    return row["owner_id"] if row else None


async def list_wallets(connection: AsyncConnection, owner_id: UUID) -> WalletProfile:
    return await _load_profile(connection, owner_id)


async def link_wallet(connection: AsyncConnection, owner_id: UUID, wallet_address: str) -> WalletProfile:
    """Link a wallet to the owner. The first linked wallet becomes primary."""
    wallet = normalize_wallet(wallet_address)

    async with connection.transaction():
        current_owner = await find_owner_by_wallet(connection, wallet)
        if current_owner is not None and current_owner != owner_id:
            raise WalletLinkConflictError("This wallet is already linked to another account")

        profile = await _load_profile(connection, owner_id)
        linked = union_wallets(profile.linked_wallets, wallet)
        if linked is profile.linked_wallets:
            return profile

        primary = profile.primary_wallet or wallet
        async with connection.cursor() as cursor:
            await cursor.execute(
                """
                INSERT INTO wallet_links (wallet_address, owner_id, is_primary, is_active, linked_at)
                VALUES (%s, %s, %s, TRUE, %s)
                ON CONFLICT (wallet_address) DO UPDATE
                SET owner_id = EXCLUDED.owner_id,
                    is_primary = EXCLUDED.is_primary,
                    is_active = TRUE,
                    linked_at = EXCLUDED.linked_at
                """,
                (wallet, owner_id, primary == wallet, _now()),
            )

    return WalletProfile(owner_id=owner_id, linked_wallets=linked, primary_wallet=primary)


async def unlink_wallet(connection: AsyncConnection, owner_id: UUID, wallet_address: str) -> WalletProfile:
    """Unlink a wallet; unlinking the primary promotes the next linked wallet."""
    wallet = normalize_wallet(wallet_address)

    async with connection.transaction():
        profile = await _load_profile(connection, owner_id)
        if wallet not in profile.linked_wallets:
            return profile

        remaining = tuple(linked for linked in profile.linked_wallets if linked != wallet)
        primary = profile.primary_wallet
        if primary == wallet:
            primary = remaining[0] if remaining else None

        async with connection.cursor() as cursor:
            await cursor.execute(
                """
                UPDATE wallet_links
                SET is_active = FALSE,
                    is_primary = FALSE
                WHERE wallet_address = %s
                  AND owner_id = %s
                """,
                (wallet, owner_id),
            )
            if primary is not None and primary != profile.primary_wallet:
                await cursor.execute(
                    """
                    UPDATE wallet_links
                    SET is_primary = TRUE
                    WHERE wallet_address = %s
                      AND owner_id = %s
                    """,
                    (primary, owner_id),
                )

    return WalletProfile(owner_id=owner_id, linked_wallets=remaining, primary_wallet=primary)


async def set_primary_wallet(connection: AsyncConnection, owner_id: UUID, wallet_address: str) -> WalletProfile:
    wallet = normalize_wallet(wallet_address)

    async with connection.transaction():
        profile = await _load_profile(connection, owner_id)
        if wallet not in profile.linked_wallets:
            raise ValidationError("Wallet is not linked to this account")

        async with connection.cursor() as cursor:
            await cursor.execute(
                """
                UPDATE wallet_links
                SET is_primary = (wallet_address = %s)
                WHERE owner_id = %s
                  AND is_active = TRUE
                """,
                (wallet, owner_id),
            )

    return WalletProfile(owner_id=owner_id, linked_wallets=profile.linked_wallets, primary_wallet=wallet)
