from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from fastapi import FastAPI
from fastapi.testclient import TestClient

import goalvault.market as market_router
import goalvault.reconciliation_routes as reconciliation_router
import goalvault.wallets as wallets_router
from goalvault.errors import GoalNotFoundError, StoreUnavailableError, WalletLinkConflictError
from goalvault.models import LedgerTransaction, TransactionKind, TransactionStatus
from goalvault.services.price_oracle import BTC_FALLBACK_PRICES, MarketSentiment, fallback_quote
from goalvault.services.reconciliation import PatchKind, PendingPatch, ReconciliationLog
from goalvault.services.wallet_links import WalletProfile

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
WALLET = "0x" + "ab" * 20


class FakePriceCache:
    def __init__(self):
        self.quote = fallback_quote(NOW, error="Rate limit reached")
        self.btc_quote = fallback_quote(NOW, error="Rate limit reached", prices=BTC_FALLBACK_PRICES)
        self.sentiment = MarketSentiment(
            value=60,
            description="Slightly Bullish",
            change_24h=Decimal("2.5"),
            market_cap=Decimal("2500000000000"),
            volume=Decimal("90000000000"),
            is_live=True,
            last_updated=NOW,
        )

    async def get_quote(self):
        return self.quote

    async def get_btc_quote(self):
        return self.btc_quote

    async def get_sentiment(self):
        return self.sentiment


def _market_app():
    app = FastAPI()
    app.include_router(market_router.router)
    app.dependency_overrides[market_router.get_price_cache] = FakePriceCache
    return app


def test_quote_includes_display_strings_and_fallback_flag() -> None:
    with TestClient(_market_app()) as client:
        response = client.get("/market/quote")

    assert response.status_code == 200
    payload = response.json()
    assert payload["isLive"] is False
    assert payload["error"] == "Rate limit reached"
    assert set(payload["display"]) == {"usd", "eur"}
    assert payload["display"]["usd"].startswith("$")
    assert payload["display"]["eur"].startswith("€")


def test_btc_quote_uses_its_own_fallback_prices() -> None:
    with TestClient(_market_app()) as client:
        response = client.get("/market/btc")

    assert response.status_code == 200
    payload = response.json()
    assert payload["isLive"] is False
    assert payload["baseUnitPriceByCurrency"] == {"usd": "35000", "eur": "32000"}
    assert payload["display"] == {"usd": "$35,000", "eur": "€32,000"}



def test_sentiment_endpoint() -> None:
    with TestClient(_market_app()) as client:
        response = client.get("/market/sentiment")

    assert response.status_code == 200
    assert response.json()["value"] == 60
    assert response.json()["description"] == "Slightly Bullish"


def test_predefined_goals_are_public() -> None:
    with TestClient(_market_app()) as client:
        response = client.get("/market/predefined-goals")

    assert response.status_code == 200
    payload = response.json()
    assert payload["price_targets"]
    assert payload["portfolio_targets"][0]["display_value"] == "$1,000"


def _wallets_app(user_id):
    app = FastAPI()
    app.include_router(wallets_router.router)

    async def override_db():
        yield object()

    app.dependency_overrides[wallets_router.get_db_connection] = override_db
    app.dependency_overrides[wallets_router.get_current_user_id] = lambda: user_id
    return app


def test_link_wallet_success(monkeypatch) -> None:
    user_id = uuid4()

    async def fake_link(connection, uid, wallet_address):
        assert uid == user_id
        return WalletProfile(owner_id=uid, linked_wallets=(wallet_address,), primary_wallet=wallet_address)

    monkeypatch.setattr(wallets_router, "link_wallet", fake_link)

    with TestClient(_wallets_app(user_id)) as client:
        response = client.post("/wallets/link", json={"wallet_address": WALLET})

    assert response.status_code == 200
    assert response.json() == {
        "owner_id": str(user_id),
        "linked_wallets": [WALLET],
        "primary_wallet": WALLET,
    }


def test_link_wallet_conflict_maps_to_409(monkeypatch) -> None:
    async def fake_link(connection, uid, wallet_address):
        raise WalletLinkConflictError("Wallet is already linked to another account")

    monkeypatch.setattr(wallets_router, "link_wallet", fake_link)

    with TestClient(_wallets_app(uuid4())) as client:
        response = client.post("/wallets/link", json={"wallet_address": WALLET})

    assert response.status_code == 409
    assert "another account" in response.json()["detail"]


def test_wallets_auth_required() -> None:
    app = FastAPI()
    app.include_router(wallets_router.router)

    async def override_db():
        yield object()

    app.dependency_overrides[wallets_router.get_db_connection] = override_db

    with TestClient(app) as client:
        response = client.get("/wallets")

    assert response.status_code == 401


class FakeRegistry:
    def __init__(self, owners):
        self.owners = owners
        self.orphaned: list[LedgerTransaction] = []

    async def get_goal(self, goal_id, owner_id):
        if self.owners.get(goal_id) != owner_id:
            raise GoalNotFoundError(f"Goal {goal_id} not found")
        return object()

    async def list_orphaned_creations(self, owner_id):
        return [transaction for transaction in self.orphaned if self.owners.get(transaction.goal_id) == owner_id]


class FakeOrchestrator:
    def __init__(self, owners):
        self.registry = FakeRegistry(owners)
        self.reconciliation_log = ReconciliationLog()
        self.sweeps = 0
        self.error: Exception | None = None

    async def sweep(self):
        self.sweeps += 1
        if self.error is not None:
            raise self.error

        resolved = len(self.reconciliation_log)
        for patch in self.reconciliation_log.pending():
            self.reconciliation_log.discard(patch.transaction_id)
        return resolved


def _reconciliation_app(orchestrator, user_id):
    app = FastAPI()
    app.include_router(reconciliation_router.router)
    app.dependency_overrides[reconciliation_router.get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[reconciliation_router.get_current_user_id] = lambda: user_id
    return app


def test_pending_patches_are_scoped_to_the_caller() -> None:
    user_id = uuid4()
    own_goal, other_goal = uuid4(), uuid4()
    orchestrator = FakeOrchestrator({own_goal: user_id, other_goal: uuid4()})
    orchestrator.reconciliation_log.add(
        PendingPatch(
            kind=PatchKind.DEPOSIT,
            goal_id=own_goal,
            transaction_id=uuid4(),
            amount=Decimal("0.5"),
            attempts=1,
            last_error="connection lost",
            queued_at=NOW,
        )
    )
    orchestrator.reconciliation_log.add(
        PendingPatch(kind=PatchKind.BIND, goal_id=other_goal, transaction_id=uuid4(), on_chain_id=9)
    )

    with TestClient(_reconciliation_app(orchestrator, user_id)) as client:
        response = client.get("/reconciliation/pending")

    assert response.status_code == 200
    payload = response.json()
    assert [item["goal_id"] for item in payload] == [str(own_goal)]
    assert payload[0]["kind"] == "deposit"
    assert payload[0]["attempts"] == 1


def test_sweep_reports_resolved_and_remaining() -> None:
    user_id = uuid4()
    goal_id = uuid4()
    orchestrator = FakeOrchestrator({goal_id: user_id})
    orchestrator.reconciliation_log.add(
        PendingPatch(kind=PatchKind.DEPOSIT, goal_id=goal_id, transaction_id=uuid4(), amount=Decimal("1"))
    )

    with TestClient(_reconciliation_app(orchestrator, user_id)) as client:
        response = client.post("/reconciliation/sweep")

    assert response.status_code == 200
    assert response.json() == {"resolved": 1, "remaining": 0}
    assert orchestrator.sweeps == 1


def test_orphaned_creations_are_listed_after_queued_patches() -> None:
    user_id = uuid4()
    queued_goal, orphan_goal, foreign_goal = uuid4(), uuid4(), uuid4()
    orchestrator = FakeOrchestrator({queued_goal: user_id, orphan_goal: user_id, foreign_goal: uuid4()})
    orchestrator.reconciliation_log.add(
        PendingPatch(kind=PatchKind.BIND, goal_id=queued_goal, transaction_id=uuid4(), on_chain_id=3)
    )
    tx_hash = "0x" + "0f" * 32
    for goal_id in (orphan_goal, foreign_goal):
        orchestrator.registry.orphaned.append(
            LedgerTransaction(
                id=uuid4(),
                kind=TransactionKind.GOAL_CREATION,
                goal_id=goal_id,
                status=TransactionStatus.CONFIRMED,
                tx_hash=tx_hash,
                created_at=NOW,
            )
        )

    with TestClient(_reconciliation_app(orchestrator, user_id)) as client:
        response = client.get("/reconciliation/pending")

    assert response.status_code == 200
    payload = response.json()
    assert [item["kind"] for item in payload] == ["bind", "orphan"]
    orphan = payload[1]
    assert orphan["goal_id"] == str(orphan_goal)
    assert orphan["tx_hash"] == tx_hash
    assert orphan["on_chain_id"] is None
    assert "no GoalCreated event" in orphan["last_error"]


def test_sweep_store_outage_maps_to_503() -> None:
    orchestrator = FakeOrchestrator({})
    orchestrator.error = StoreUnavailableError("pool exhausted")

    with TestClient(_reconciliation_app(orchestrator, uuid4())) as client:
        response = client.post("/reconciliation/sweep")

    assert response.status_code == 503
