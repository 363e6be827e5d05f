import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .clock import SystemClock
from .config import settings
from .database import close_db_pool, connection_scope, init_db_pool
from .goals import router as goals_router
from .ledger.bridge import LedgerBridge
from .ledger.client import Web3LedgerClient
from .logging_config import configure_logging
from .market import router as market_router
from .reconciliation_routes import router as reconciliation_router
from .services.goal_registry import GoalRegistry
from .services.price_oracle import PriceOracleCache
from .services.progress_engine import ProgressEngine
from .services.reconciliation import ReconciliationLog, ReconciliationOrchestrator
from .wallets import router as wallets_router

logger = logging.getLogger(__name__)


def build_services(app: FastAPI) -> None:
    """Create the process-wide services and hang them on `app.state`."""
    clock = SystemClock()
    price_cache = PriceOracleCache(
        base_url=settings.price_api_base,
        asset_id=settings.price_asset_id,
        clock=clock,
        price_ttl_seconds=settings.price_cache_ttl_seconds,
        sentiment_ttl_seconds=settings.sentiment_cache_ttl_seconds,
        price_timeout_seconds=settings.price_timeout_seconds,
        sentiment_timeout_seconds=settings.sentiment_timeout_seconds,
    )
    ledger_client = Web3LedgerClient(
        rpc_url=settings.ledger_rpc_url,
        contract_address=settings.vault_contract_address,
        sender_address=settings.ledger_sender_address,
        poll_interval_seconds=settings.ledger_poll_interval_seconds,
    )
    registry = GoalRegistry(connection_scope, clock=clock, timeout_seconds=settings.store_timeout_seconds)

    app.state.price_cache = price_cache
    app.state.progress_engine = ProgressEngine(price_cache)
    app.state.orchestrator = ReconciliationOrchestrator(
        registry,
        LedgerBridge(ledger_client, clock=clock),
        clock=clock,
        reconciliation_log=ReconciliationLog(),
        legacy_amount_goal_creation=settings.legacy_amount_goal_creation,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    await init_db_pool()
    build_services(app)

    price_cache = app.state.price_cache
    background = [
        asyncio.create_task(
            price_cache.run_refresh_loop(price_cache.get_quote, settings.price_refresh_seconds),
            name="price-refresh",
        ),
        asyncio.create_task(
            price_cache.run_refresh_loop(price_cache.get_sentiment, settings.sentiment_refresh_seconds),
            name="sentiment-refresh",
        ),
        asyncio.create_task(
            app.state.orchestrator.run_sweeper(settings.reconciliation_sweep_seconds),
            name="reconciliation-sweeper",
        ),
    ]
    logger.info("Goal Vault API started")
    yield

    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)
    await close_db_pool()


def _cors_origins() -> list[str]:
    return [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(goals_router)
app.include_router(market_router)
app.include_router(wallets_router)
app.include_router(reconciliation_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
